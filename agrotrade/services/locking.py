"""
行级锁服务

统一加锁顺序：先按产品编号升序锁定库存汇总行，再按批次编号升序锁定批次行。
所有修改库存的入口都必须遵循这个顺序，避免死锁。
"""
from agrotrade.extensions import db
from agrotrade.models.stock import Stock, InventoryLot
from agrotrade.models.sys import LedgerLock
from agrotrade.utils.validators import ZERO


class LockService:
    """行级锁服务"""

    @staticmethod
    def lock_products(product_ids):
        """
        锁定产品汇总行 (SELECT ... FOR UPDATE)
        不存在的汇总行会先创建，返回 {product_id: Stock}
        """
        locked = {}
        for product_id in sorted({pid for pid in product_ids if pid is not None}):
            stock = Stock.query.filter_by(product_id=product_id) \
                .populate_existing().with_for_update().first()
            if stock is None:
                stock = Stock(product_id=product_id, quantity=ZERO, weight=ZERO)
                db.session.add(stock)
                db.session.flush()
            locked[product_id] = stock
        return locked

    @staticmethod
    def lock_lots(lot_ids):
        """按编号升序锁定批次行，返回 {lot_id: InventoryLot}"""
        ids = sorted({lid for lid in lot_ids if lid is not None})
        if not ids:
            return {}
        lots = InventoryLot.query.filter(InventoryLot.id.in_(ids)) \
            .order_by(InventoryLot.id.asc()) \
            .populate_existing().with_for_update().all()
        return {lot.id: lot for lot in lots}

    @staticmethod
    def lock_lot(lot_id):
        return LockService.lock_lots([lot_id]).get(lot_id)

    @staticmethod
    def lock_named(name):
        """锁定命名锁行 (如 'settlement')，不存在时创建"""
        row = LedgerLock.query.filter_by(name=name).populate_existing().with_for_update().first()
        if row is None:
            row = LedgerLock(name=name)
            db.session.add(row)
            db.session.flush()
        return row
