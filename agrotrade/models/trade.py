from datetime import date
from agrotrade.extensions import db
from .base import BaseModel


class TradeDocument(BaseModel):
    """交易单据头 (采购/销售/生产)"""
    __tablename__ = 'trade_documents'

    TYPE_PURCHASE = 'PURCHASE'
    TYPE_SALE = 'SALE'
    TYPE_PRODUCTION = 'PRODUCTION'

    STATUS_ACTIVE = 'ACTIVE'
    STATUS_CANCELLED = 'CANCELLED'

    trade_no = db.Column(db.String(32), unique=True, index=True)
    trade_type = db.Column(db.String(20), nullable=False, index=True)
    trade_date = db.Column(db.Date, default=date.today, nullable=False, index=True)
    partner_id = db.Column(db.Integer, db.ForeignKey('biz_partners.id'))
    warehouse_id = db.Column(db.Integer, db.ForeignKey('stock_warehouses.id'))
    status = db.Column(db.String(20), default=STATUS_ACTIVE, index=True)
    remark = db.Column(db.Text)

    partner = db.relationship('Partner')
    warehouse = db.relationship('Warehouse')
    lines = db.relationship('TradeLine', backref='document', order_by='TradeLine.seq_no',
                            cascade='all, delete-orphan')

    @property
    def total_amount(self):
        return sum((line.amount for line in self.lines), 0)


class TradeLine(BaseModel):
    """
    交易明细行：对一个产品的一次带符号数量变动
    退货行为负数量并引用原明细；生产行使用 direction 区分投入/产出。
    """
    __tablename__ = 'trade_lines'

    KIND_PURCHASE = 'PURCHASE'
    KIND_PURCHASE_RETURN = 'PURCHASE_RETURN'
    KIND_SALE = 'SALE'
    KIND_SALE_RETURN = 'SALE_RETURN'
    KIND_PRODUCTION_OUTPUT = 'PRODUCTION_OUTPUT'
    KIND_PRODUCTION_INPUT = 'PRODUCTION_INPUT'

    DIRECTION_IN = 'IN'    # 生产产出
    DIRECTION_OUT = 'OUT'  # 生产投入(消耗)

    MATCH_PENDING = 'PENDING'
    MATCH_PARTIAL = 'PARTIAL'
    MATCH_MATCHED = 'MATCHED'

    document_id = db.Column(db.Integer, db.ForeignKey('trade_documents.id'), nullable=False, index=True)
    seq_no = db.Column(db.Integer, default=1)

    product_id = db.Column(db.Integer, db.ForeignKey('biz_products.id'), nullable=False, index=True)
    quantity = db.Column(db.Numeric(15, 2), nullable=False)
    direction = db.Column(db.String(4))
    unit_price = db.Column(db.Numeric(15, 2), default=0)
    total_weight = db.Column(db.Numeric(18, 2))  # 为空时按产品单位重量推算
    weight_unit = db.Column(db.String(8), default='kg')
    warehouse_id = db.Column(db.Integer, db.ForeignKey('stock_warehouses.id'))

    parent_line_id = db.Column(db.Integer, db.ForeignKey('trade_lines.id'), index=True)
    source_lot_id = db.Column(db.Integer)  # 指定批次投入 (仅保存编号)

    sender = db.Column(db.String(64))
    origin = db.Column(db.String(64))
    notes = db.Column(db.String(255))

    # 出库匹配状态
    matched_quantity = db.Column(db.Numeric(15, 2), default=0, nullable=False)
    matched_cost = db.Column(db.Numeric(18, 2), default=0, nullable=False)
    matching_status = db.Column(db.String(16), default=MATCH_PENDING, index=True)

    product = db.relationship('Product')

    @staticmethod
    def resolve_kind(trade_type, quantity, parent_line_id=None, direction=None):
        if trade_type == TradeDocument.TYPE_PURCHASE:
            if quantity < 0 and parent_line_id:
                return TradeLine.KIND_PURCHASE_RETURN
            return TradeLine.KIND_PURCHASE
        if trade_type == TradeDocument.TYPE_SALE:
            if quantity < 0 and parent_line_id:
                return TradeLine.KIND_SALE_RETURN
            return TradeLine.KIND_SALE
        if trade_type == TradeDocument.TYPE_PRODUCTION:
            if direction == TradeLine.DIRECTION_OUT:
                return TradeLine.KIND_PRODUCTION_INPUT
            return TradeLine.KIND_PRODUCTION_OUTPUT
        raise ValueError(f"unknown trade type: {trade_type}")

    @property
    def kind(self):
        return TradeLine.resolve_kind(self.document.trade_type, self.quantity,
                                      self.parent_line_id, self.direction)

    @property
    def amount(self):
        return (self.quantity or 0) * (self.unit_price or 0)

    @property
    def unmatched_quantity(self):
        return abs(self.quantity) - self.matched_quantity
