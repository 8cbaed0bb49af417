"""结算表单"""
from flask_wtf import FlaskForm
from wtforms import DecimalField, DateField, TextAreaField
from wtforms.validators import DataRequired, Optional


class CloseForm(FlaskForm):
    """期间结算表单"""
    period_start = DateField('开始日期', validators=[DataRequired()])
    period_end = DateField('结束日期', validators=[DataRequired()])
    actual_cash_balance = DecimalField('实际现金余额', places=2, validators=[Optional()])
    note = TextAreaField('备注', validators=[Optional()])
