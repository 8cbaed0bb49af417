"""外部协作方接口：基础资料查询、现金流水汇总"""
from sqlalchemy import func
from agrotrade.extensions import db
from agrotrade.exceptions import NotFound
from agrotrade.models.biz import Product
from agrotrade.models.stock import Warehouse
from agrotrade.models.finance import CashTransaction
from agrotrade.utils.validators import to_decimal, quantize


class ReferenceData:
    """基础资料只读查询 (产品单位重量、仓库)"""

    @staticmethod
    def get_product(product_id):
        product = db.session.get(Product, product_id)
        if product is None:
            raise NotFound(f"产品不存在: {product_id}")
        return product

    @staticmethod
    def unit_weight(product_id):
        return to_decimal(ReferenceData.get_product(product_id).unit_weight)

    @staticmethod
    def effective_weight(product_id, quantity, total_weight=None):
        """明细总重：优先使用填写值，否则按单位重量 * |数量| 推算 (始终为正)"""
        if total_weight is not None:
            return quantize(abs(to_decimal(total_weight)))
        return quantize(ReferenceData.unit_weight(product_id) * abs(to_decimal(quantity)))

    @staticmethod
    def get_warehouse(warehouse_id):
        warehouse = db.session.get(Warehouse, warehouse_id)
        if warehouse is None:
            raise NotFound(f"仓库不存在: {warehouse_id}")
        return warehouse

    @staticmethod
    def default_warehouse_id():
        warehouse = Warehouse.query.filter_by(is_default=True).order_by(Warehouse.id.asc()).first()
        if warehouse is None:
            warehouse = Warehouse.query.order_by(Warehouse.id.asc()).first()
        return warehouse.id if warehouse else None


class CashLedger:
    """现金流水汇总 (结算时只读使用)"""

    def totals(self, start_date, end_date):
        rows = db.session.query(
            CashTransaction.transaction_type,
            func.coalesce(func.sum(CashTransaction.amount), 0)
        ).filter(
            CashTransaction.transaction_date >= start_date,
            CashTransaction.transaction_date <= end_date
        ).group_by(CashTransaction.transaction_type).all()
        sums = {t: quantize(total) for t, total in rows}
        return {
            'inflow': sums.get(CashTransaction.TYPE_RECEIPT, quantize(0)),
            'outflow': sums.get(CashTransaction.TYPE_PAYMENT, quantize(0)),
            'expense': sums.get(CashTransaction.TYPE_EXPENSE, quantize(0)),
        }
