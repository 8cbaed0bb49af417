"""仓库调拨与生产加工模型"""
from datetime import date
from agrotrade.extensions import db
from .base import BaseModel


class StockTransfer(BaseModel):
    """调拨批次：同一批次内相同产品+仓库+成本的目标批次会合并"""
    __tablename__ = 'stock_transfers'

    STATUS_ACTIVE = 'ACTIVE'
    STATUS_CANCELLED = 'CANCELLED'

    transfer_no = db.Column(db.String(32), unique=True, index=True)
    transfer_date = db.Column(db.Date, default=date.today, nullable=False)
    status = db.Column(db.String(20), default=STATUS_ACTIVE, nullable=False)
    notes = db.Column(db.String(255))
    cancelled_at = db.Column(db.DateTime)

    records = db.relationship('TransferRecord', backref='transfer', order_by='TransferRecord.id')


class TransferRecord(BaseModel):
    """调拨明细：来源批次 -> 目标批次"""
    __tablename__ = 'stock_transfer_records'

    transfer_id = db.Column(db.Integer, db.ForeignKey('stock_transfers.id'), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('biz_products.id'), nullable=False)
    source_lot_id = db.Column(db.Integer, db.ForeignKey('stock_lots.id'), index=True)
    dest_lot_id = db.Column(db.Integer, db.ForeignKey('stock_lots.id'), index=True)
    from_warehouse_id = db.Column(db.Integer, db.ForeignKey('stock_warehouses.id'))
    to_warehouse_id = db.Column(db.Integer, db.ForeignKey('stock_warehouses.id'))
    quantity = db.Column(db.Numeric(15, 2), nullable=False)
    weight = db.Column(db.Numeric(18, 2), default=0)
    merged = db.Column(db.Boolean, default=False)  # 是否并入本批次已创建的目标批次

    source_lot = db.relationship('InventoryLot', foreign_keys=[source_lot_id])
    dest_lot = db.relationship('InventoryLot', foreign_keys=[dest_lot_id])


class ProductionJob(BaseModel):
    """
    加工/重新包装作业
    投入明细消耗批次，产出明细生成新批次；产出单价 = (投入成本 + 附加成本) / 产出总量
    """
    __tablename__ = 'stock_production_jobs'

    STATUS_ACTIVE = 'ACTIVE'
    STATUS_CANCELLED = 'CANCELLED'

    document_id = db.Column(db.Integer, db.ForeignKey('trade_documents.id'), nullable=False)
    job_date = db.Column(db.Date, default=date.today, nullable=False, index=True)
    input_cost = db.Column(db.Numeric(18, 2), default=0)
    additional_cost = db.Column(db.Numeric(18, 2), default=0)
    output_unit_cost = db.Column(db.Numeric(15, 2), default=0)
    status = db.Column(db.String(20), default=STATUS_ACTIVE, nullable=False)
    memo = db.Column(db.String(255))
    cancelled_at = db.Column(db.DateTime)

    document = db.relationship('TradeDocument')

    @property
    def total_cost(self):
        return (self.input_cost or 0) + (self.additional_cost or 0)
