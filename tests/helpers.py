from datetime import date
from decimal import Decimal
from agrotrade.extensions import db
from agrotrade.models.stock import Stock, InventoryLot
from agrotrade.models.trade import TradeLine

D1 = date(2024, 1, 1)
D2 = date(2024, 1, 2)
D3 = date(2024, 1, 3)


def stock_of(product):
    stock = Stock.query.filter_by(product_id=product.id).first()
    return stock.quantity if stock else Decimal('0')


def get_line(line_id):
    return db.session.get(TradeLine, line_id)


def lot_of(line_id):
    return InventoryLot.query.filter_by(trade_line_id=line_id).first()
