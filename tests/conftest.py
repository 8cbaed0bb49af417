"""
测试配置与公共夹具
每个测试使用独立的内存 SQLite 数据库
"""
import pytest
from decimal import Decimal

from agrotrade import create_app
from agrotrade.extensions import db as _db
from agrotrade.models.biz import Product, Partner
from agrotrade.models.stock import Warehouse
from agrotrade.models.trade import TradeDocument
from agrotrade.services.trade_service import TradeService

from tests.helpers import D1, D2


@pytest.fixture(scope="function")
def app():
    """Create a fresh application and schema for each test"""
    app = create_app('testing')
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def warehouses(app):
    main = Warehouse(name='主仓库', is_default=True)
    cold = Warehouse(name='冷库')
    _db.session.add_all([main, cold])
    _db.session.commit()
    return main, cold


@pytest.fixture
def warehouse(warehouses):
    return warehouses[0]


@pytest.fixture
def products(app):
    tomato = Product(name='番茄', grade='特级', unit_weight=Decimal('10'))
    cucumber = Product(name='黄瓜', grade='一级', unit_weight=Decimal('5'))
    _db.session.add_all([tomato, cucumber])
    _db.session.commit()
    return tomato, cucumber


@pytest.fixture
def product(products):
    return products[0]


@pytest.fixture
def supplier(app):
    partner = Partner(name='寿光蔬菜基地', type=Partner.TYPE_SUPPLIER)
    _db.session.add(partner)
    _db.session.commit()
    return partner


@pytest.fixture
def customer(app):
    partner = Partner(name='城东生鲜配送', type=Partner.TYPE_CUSTOMER)
    _db.session.add(partner)
    _db.session.commit()
    return partner


@pytest.fixture
def purchase(warehouse, supplier):
    """采购一条明细，返回明细编号"""
    def _purchase(product, quantity, unit_price, trade_date=D1, **extra):
        doc = TradeService.create_document(
            TradeDocument.TYPE_PURCHASE, trade_date=trade_date, partner_id=supplier.id,
            lines=[dict(product_id=product.id, quantity=quantity, unit_price=unit_price, **extra)])
        return doc.lines[0].id
    return _purchase


@pytest.fixture
def sell(warehouse, customer):
    """销售一条明细，返回明细编号"""
    def _sell(product, quantity, unit_price=0, trade_date=D2, **extra):
        doc = TradeService.create_document(
            TradeDocument.TYPE_SALE, trade_date=trade_date, partner_id=customer.id,
            lines=[dict(product_id=product.id, quantity=quantity, unit_price=unit_price, **extra)])
        return doc.lines[0].id
    return _sell

