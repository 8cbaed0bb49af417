from datetime import date
from agrotrade.extensions import db
from .base import BaseModel


class Warehouse(BaseModel):
    """仓库"""
    __tablename__ = 'stock_warehouses'
    name = db.Column(db.String(64))
    location = db.Column(db.String(128))
    is_default = db.Column(db.Boolean, default=False)


class Stock(BaseModel):
    """
    实时库存汇总表 (每个产品一行)
    由每一次库存变动同步更新，是按产品加锁的最小单元。
    """
    __tablename__ = 'stock_quantities'

    product_id = db.Column(db.Integer, db.ForeignKey('biz_products.id'), unique=True, nullable=False)
    quantity = db.Column(db.Numeric(15, 2), default=0, nullable=False)
    weight = db.Column(db.Numeric(18, 2), default=0, nullable=False)
    last_unit_price = db.Column(db.Numeric(15, 2))  # 最近一次入库单价

    product = db.relationship('Product')


class InventoryLot(BaseModel):
    """
    库存批次 (按入库记录跟踪，用于先进先出匹配)
    0 <= remaining_quantity <= original_quantity
    """
    __tablename__ = 'stock_lots'

    STATUS_AVAILABLE = 'AVAILABLE'
    STATUS_DEPLETED = 'DEPLETED'
    STATUS_CANCELLED = 'CANCELLED'

    SOURCE_PURCHASE = 'PURCHASE'
    SOURCE_PRODUCTION = 'PRODUCTION'
    SOURCE_TRANSFER = 'TRANSFER'
    SOURCE_ADJUSTMENT = 'ADJUSTMENT'

    source_kind = db.Column(db.String(20), default=SOURCE_PURCHASE, nullable=False)
    # 来源引用：采购/生产明细行、调拨来源批次、库存调整单
    trade_line_id = db.Column(db.Integer, db.ForeignKey('trade_lines.id'), index=True)
    source_lot_id = db.Column(db.Integer, db.ForeignKey('stock_lots.id'), index=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey('stock_transfers.id'), index=True)
    adjustment_id = db.Column(db.Integer, db.ForeignKey('stock_adjustments.id'), index=True)

    product_id = db.Column(db.Integer, db.ForeignKey('biz_products.id'), nullable=False, index=True)
    partner_id = db.Column(db.Integer, db.ForeignKey('biz_partners.id'))
    warehouse_id = db.Column(db.Integer, db.ForeignKey('stock_warehouses.id'), index=True)

    receipt_date = db.Column(db.Date, default=date.today, nullable=False, index=True)
    original_quantity = db.Column(db.Numeric(15, 2), nullable=False)
    remaining_quantity = db.Column(db.Numeric(15, 2), nullable=False)
    unit_cost = db.Column(db.Numeric(15, 2), default=0, nullable=False)
    total_weight = db.Column(db.Numeric(18, 2), default=0)
    weight_unit = db.Column(db.String(8), default='kg')

    sender = db.Column(db.String(64))  # 出荷主
    origin = db.Column(db.String(64))  # 产地
    status = db.Column(db.String(20), default=STATUS_AVAILABLE, nullable=False, index=True)
    remark = db.Column(db.String(255))
    # 作废日期与作废时的剩余数量，结算按日期扣减价值
    cancelled_on = db.Column(db.Date, index=True)
    cancelled_quantity = db.Column(db.Numeric(15, 2), default=0, nullable=False)

    product = db.relationship('Product')
    warehouse = db.relationship('Warehouse')

    @property
    def consumed_quantity(self):
        return self.original_quantity - self.remaining_quantity

    @property
    def remaining_value(self):
        return self.remaining_quantity * self.unit_cost

    def refresh_status(self):
        """根据剩余数量切换 AVAILABLE / DEPLETED (已作废批次不变)"""
        if self.status == self.STATUS_CANCELLED:
            return
        self.status = self.STATUS_DEPLETED if self.remaining_quantity <= 0 else self.STATUS_AVAILABLE


class LotMatch(BaseModel):
    """
    出库明细与批次的匹配记录
    matched_quantity 为负数时表示销售退货释放回批次的数量。
    """
    __tablename__ = 'stock_lot_matches'

    TYPE_FIFO = 'FIFO'
    TYPE_MANUAL = 'MANUAL'
    TYPE_RETURN = 'RETURN'    # 采购退货直接扣减原批次
    TYPE_RELEASE = 'RELEASE'  # 销售退货释放

    trade_line_id = db.Column(db.Integer, db.ForeignKey('trade_lines.id'), nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey('stock_lots.id'), nullable=False, index=True)
    matched_quantity = db.Column(db.Numeric(15, 2), nullable=False)
    unit_cost = db.Column(db.Numeric(15, 2), default=0)  # 匹配时批次成本快照
    matched_date = db.Column(db.Date, index=True)  # 出库单据日期
    match_type = db.Column(db.String(16), default=TYPE_FIFO)

    lot = db.relationship('InventoryLot')

    @property
    def matched_cost(self):
        return self.matched_quantity * self.unit_cost


class InventoryLog(BaseModel):
    """
    库存审计流水 (核心表，只追加)
    记录每一次库存变动前后的汇总数量，用于还原任意历史结余。
    """
    __tablename__ = 'stock_logs'

    TYPE_IN = 'IN'
    TYPE_OUT = 'OUT'
    TYPE_ADJUST = 'ADJUST'

    EVENT_APPLY = 'APPLY'
    EVENT_UPDATE_REVERSE = 'UPDATE_REVERSE'
    EVENT_UPDATE_APPLY = 'UPDATE_APPLY'
    EVENT_DELETE_REVERSE = 'DELETE_REVERSE'
    EVENT_TRANSFER = 'TRANSFER'
    EVENT_TRANSFER_CANCEL = 'TRANSFER_CANCEL'
    EVENT_ADJUSTMENT = 'ADJUSTMENT'
    EVENT_ADJUSTMENT_CANCEL = 'ADJUSTMENT_CANCEL'
    EVENT_LOT_CANCEL = 'LOT_CANCEL'

    transaction_date = db.Column(db.Date, default=date.today, nullable=False, index=True)
    transaction_code = db.Column(db.String(32), index=True)  # 关联的单据号
    move_type = db.Column(db.String(20), nullable=False)
    event = db.Column(db.String(20), default=EVENT_APPLY, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey('biz_products.id'), index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey('stock_warehouses.id'), index=True)
    # 明细行/批次仅保存编号：明细删除后流水仍然保留
    trade_line_id = db.Column(db.Integer, index=True)
    lot_id = db.Column(db.Integer, index=True)

    qty_change = db.Column(db.Numeric(15, 2), nullable=False)  # 变动数量 (+10, -5)
    weight_change = db.Column(db.Numeric(18, 2), default=0)
    unit_price = db.Column(db.Numeric(15, 2))
    balance_before = db.Column(db.Numeric(15, 2))
    balance_after = db.Column(db.Numeric(15, 2))  # 变动后结余 (快照)

    sender = db.Column(db.String(64))
    origin = db.Column(db.String(64))
    remark = db.Column(db.String(255))
    created_by = db.Column(db.String(64), default='system')

    product = db.relationship('Product')
    warehouse = db.relationship('Warehouse')


class InventoryAdjustment(BaseModel):
    """产品级库存数量修正 (盘点工具提交)，可整体撤销"""
    __tablename__ = 'stock_adjustments'

    STATUS_ACTIVE = 'ACTIVE'
    STATUS_CANCELLED = 'CANCELLED'

    product_id = db.Column(db.Integer, db.ForeignKey('biz_products.id'), nullable=False, index=True)
    adjusted_on = db.Column(db.Date, default=date.today, nullable=False)
    before_quantity = db.Column(db.Numeric(15, 2), nullable=False)
    new_quantity = db.Column(db.Numeric(15, 2), nullable=False)
    delta = db.Column(db.Numeric(15, 2), nullable=False)
    weight_delta = db.Column(db.Numeric(18, 2), default=0)
    # 负向修正时批次不足以分摊的部分
    unallocated_quantity = db.Column(db.Numeric(15, 2), default=0)
    reason = db.Column(db.String(255))
    status = db.Column(db.String(20), default=STATUS_ACTIVE, nullable=False)
    cancelled_at = db.Column(db.DateTime)

    product = db.relationship('Product')


class LotAdjustment(BaseModel):
    """批次级调整 (报废/损耗/数量更正/实盘)"""
    __tablename__ = 'stock_lot_adjustments'

    TYPE_DISCARD = 'DISCARD'
    TYPE_LOSS = 'LOSS'
    TYPE_CORRECTION = 'CORRECTION'
    TYPE_AUDIT = 'AUDIT'
    TYPE_BULK = 'BULK'  # 由产品级修正分摊而来

    lot_id = db.Column(db.Integer, db.ForeignKey('stock_lots.id'), nullable=False, index=True)
    adjustment_id = db.Column(db.Integer, db.ForeignKey('stock_adjustments.id'), index=True)
    adjustment_type = db.Column(db.String(20), default=TYPE_CORRECTION, nullable=False)
    quantity_change = db.Column(db.Numeric(15, 2), nullable=False)
    unit_cost = db.Column(db.Numeric(15, 2), default=0)
    adjusted_on = db.Column(db.Date, default=date.today, nullable=False, index=True)
    reason = db.Column(db.String(255))
    is_cancelled = db.Column(db.Boolean, default=False, nullable=False)

    lot = db.relationship('InventoryLot')

    @property
    def value_change(self):
        return self.quantity_change * self.unit_cost
