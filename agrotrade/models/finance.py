"""财务相关模型 - 现金流水、期间结算"""
from datetime import date
from agrotrade.extensions import db
from .base import BaseModel


class CashTransaction(BaseModel):
    """现金流水 (收款/付款/费用)，结算时只读汇总"""
    __tablename__ = 'finance_cash_transactions'

    TYPE_RECEIPT = 'RECEIPT'
    TYPE_PAYMENT = 'PAYMENT'
    TYPE_EXPENSE = 'EXPENSE'

    transaction_type = db.Column(db.String(20), nullable=False, index=True)
    transaction_date = db.Column(db.Date, default=date.today, nullable=False, index=True)
    partner_id = db.Column(db.Integer, db.ForeignKey('biz_partners.id'))
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    remark = db.Column(db.String(255))

    partner = db.relationship('Partner')


class PeriodClosing(BaseModel):
    """
    期间结算快照 (不可修改)
    只允许删除最近一次结算，用于撤销上一次结账。
    """
    __tablename__ = 'finance_period_closings'

    start_date = db.Column(db.Date, nullable=False, index=True)
    end_date = db.Column(db.Date, nullable=False, unique=True, index=True)

    # 存货资产
    opening_inventory_value = db.Column(db.Numeric(18, 2), default=0)
    period_purchase_cost = db.Column(db.Numeric(18, 2), default=0)
    inventory_adjustment_value = db.Column(db.Numeric(18, 2), default=0)
    closing_inventory_value = db.Column(db.Numeric(18, 2), default=0)
    derived_cogs = db.Column(db.Numeric(18, 2), default=0)
    bookkeeping_cogs = db.Column(db.Numeric(18, 2), default=0)
    cogs_variance = db.Column(db.Numeric(18, 2), default=0)

    # 现金
    cash_inflow = db.Column(db.Numeric(18, 2), default=0)
    cash_outflow = db.Column(db.Numeric(18, 2), default=0)
    cash_expense = db.Column(db.Numeric(18, 2), default=0)
    expected_cash_balance = db.Column(db.Numeric(18, 2), default=0)
    actual_cash_balance = db.Column(db.Numeric(18, 2), default=0)
    cash_difference = db.Column(db.Numeric(18, 2), default=0)

    note = db.Column(db.Text)
    closed_by = db.Column(db.String(64), default='system')

    @property
    def has_variance(self):
        return self.cogs_variance is not None and self.cogs_variance != 0
