from agrotrade.extensions import db
from .base import BaseModel


class Partner(BaseModel):
    """业务伙伴 (客户/供应商/货主)"""
    __tablename__ = 'biz_partners'
    TYPE_CUSTOMER = 'customer'
    TYPE_SUPPLIER = 'supplier'
    TYPE_BOTH = 'both'

    name = db.Column(db.String(128), index=True)
    type = db.Column(db.String(20), index=True, default=TYPE_BOTH)
    phone = db.Column(db.String(32))
    address = db.Column(db.String(256))


class Product(BaseModel):
    """
    产品主表
    账本只关心单位重量：明细行未填写总重时按 unit_weight * |数量| 推算。
    """
    __tablename__ = 'biz_products'

    name = db.Column(db.String(128), index=True)
    grade = db.Column(db.String(32))  # 等级/规格，如 "特级"
    unit_weight = db.Column(db.Numeric(18, 2), default=0)  # 单件重量
    weight_unit = db.Column(db.String(8), default='kg')

    @property
    def display_name(self):
        return f"{self.name} ({self.grade})" if self.grade else self.name
