from flask_wtf import FlaskForm
from wtforms import IntegerField, SelectField, StringField, DecimalField, DateField
from wtforms.validators import DataRequired, InputRequired, NumberRange, Length, Optional
from agrotrade.models.stock import LotAdjustment
from agrotrade.utils.validators import validate_positive_number


class StockAdjustmentForm(FlaskForm):
    """产品级库存修正表单"""
    product_id = IntegerField('产品ID', validators=[DataRequired()])
    new_quantity = DecimalField('修正后数量', places=2, validators=[
        InputRequired(),
        NumberRange(min=0, message="数量不能为负")
    ])
    reason = StringField('修正原因', validators=[DataRequired(), Length(max=255)])
    adjusted_on = DateField('修正日期', validators=[Optional()])


class LotAdjustmentForm(FlaskForm):
    """批次调整表单"""
    quantity_change = DecimalField('调整数量', places=2, validators=[InputRequired()])
    adjustment_type = SelectField('调整类型', choices=[
        (LotAdjustment.TYPE_DISCARD, '报废'),
        (LotAdjustment.TYPE_LOSS, '损耗'),
        (LotAdjustment.TYPE_CORRECTION, '数量更正'),
        (LotAdjustment.TYPE_AUDIT, '实盘'),
    ], default=LotAdjustment.TYPE_CORRECTION)
    reason = StringField('原因', validators=[Optional(), Length(max=255)])
    adjusted_on = DateField('调整日期', validators=[Optional()])


class LotCancelForm(FlaskForm):
    reason = StringField('作废原因', validators=[DataRequired(), Length(max=255)])
    cancelled_on = DateField('作废日期', validators=[Optional()])


class MatchPendingForm(FlaskForm):
    """补匹配表单 (不填产品则处理全部产品)"""
    product_id = IntegerField('产品ID', validators=[Optional()])


class ManualMatchForm(FlaskForm):
    """手动匹配表单"""
    line_id = IntegerField('明细ID', validators=[DataRequired()])
    lot_id = IntegerField('批次ID', validators=[DataRequired()])
    quantity = DecimalField('匹配数量', places=2, validators=[InputRequired(), validate_positive_number])


class TransferForm(FlaskForm):
    """单批次调拨表单"""
    lot_id = IntegerField('批次ID', validators=[DataRequired()])
    quantity = DecimalField('调拨数量', places=2, validators=[InputRequired(), validate_positive_number])
    to_warehouse_id = IntegerField('目标仓库', validators=[DataRequired()])
    transfer_date = DateField('调拨日期', validators=[Optional()])
    notes = StringField('备注', validators=[Optional(), Length(max=255)])


class ProductionForm(FlaskForm):
    """加工作业表头 (投入/产出明细以 JSON 数组提交)"""
    additional_cost = DecimalField('附加成本', places=2, default=0,
                                   validators=[Optional(), NumberRange(min=0)])
    memo = StringField('说明', validators=[Optional(), Length(max=255)])
    job_date = DateField('作业日期', validators=[Optional()])
    warehouse_id = IntegerField('仓库', validators=[Optional()])
