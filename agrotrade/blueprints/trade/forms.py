"""交易单据表单"""
from flask_wtf import FlaskForm
from wtforms import IntegerField, SelectField, StringField, DecimalField, DateField, TextAreaField
from wtforms.validators import DataRequired, InputRequired, NumberRange, Length, Optional, AnyOf
from agrotrade.models.trade import TradeDocument, TradeLine


class DocumentForm(FlaskForm):
    """单据表头 (明细以 JSON 数组 lines 提交)"""
    trade_type = SelectField('单据类型', choices=[
        (TradeDocument.TYPE_PURCHASE, '采购'),
        (TradeDocument.TYPE_SALE, '销售'),
        (TradeDocument.TYPE_PRODUCTION, '生产'),
    ], validators=[DataRequired()])
    trade_date = DateField('单据日期', validators=[Optional()])
    partner_id = IntegerField('往来单位', validators=[Optional()])
    warehouse_id = IntegerField('仓库', validators=[Optional()])
    remark = TextAreaField('备注', validators=[Optional()])


class LineForm(FlaskForm):
    """单据明细"""
    product_id = IntegerField('产品', validators=[DataRequired()])
    quantity = DecimalField('数量', places=2, validators=[InputRequired()])
    unit_price = DecimalField('单价', places=2, default=0, validators=[Optional(), NumberRange(min=0)])
    total_weight = DecimalField('总重', places=2, validators=[Optional(), NumberRange(min=0)])
    weight_unit = StringField('重量单位', default='kg', validators=[Optional(), Length(max=8)])
    warehouse_id = IntegerField('仓库', validators=[Optional()])
    parent_line_id = IntegerField('原明细', validators=[Optional()])
    direction = StringField('方向', validators=[
        Optional(), AnyOf([TradeLine.DIRECTION_IN, TradeLine.DIRECTION_OUT])
    ])
    source_lot_id = IntegerField('指定批次', validators=[Optional()])
    sender = StringField('出荷主', validators=[Optional(), Length(max=64)])
    origin = StringField('产地', validators=[Optional(), Length(max=64)])
    notes = StringField('备注', validators=[Optional(), Length(max=255)])

    def to_kwargs(self):
        return {
            'product_id': self.product_id.data,
            'quantity': self.quantity.data,
            'unit_price': self.unit_price.data or 0,
            'total_weight': self.total_weight.data,
            'weight_unit': self.weight_unit.data or 'kg',
            'warehouse_id': self.warehouse_id.data,
            'parent_line_id': self.parent_line_id.data,
            'direction': self.direction.data or None,
            'source_lot_id': self.source_lot_id.data,
            'sender': self.sender.data or None,
            'origin': self.origin.data or None,
            'notes': self.notes.data or None,
        }
