"""
数值与表单验证器
"""
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from wtforms.validators import ValidationError as FormValidationError
from agrotrade.exceptions import ValidationError

ZERO = Decimal('0')
CENT = Decimal('0.01')


def to_decimal(value, field='value'):
    """将输入转换为 Decimal，None 视为 0"""
    if value is None or value == '':
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        # float 先转字符串，避免二进制误差
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} 不是有效数字: {value!r}")


def quantize(value):
    """金额/数量统一保留两位小数"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_positive_number(form, field):
    """验证正数"""
    if field.data is not None and field.data <= 0:
        raise FormValidationError('数值必须大于0')


def validate_non_negative(form, field):
    """验证非负数"""
    if field.data is not None and field.data < 0:
        raise FormValidationError('数值不能为负')


def to_date(value, field='date'):
    """解析 YYYY-MM-DD，None/空串返回 None"""
    if value is None or value == '':
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f"{field} 日期格式应为 YYYY-MM-DD: {value!r}")


def ensure_valid(form):
    """表单校验失败时抛出 ValidationError (附带字段错误)"""
    if not form.validate_on_submit():
        raise ValidationError("表单校验失败", payload={'errors': form.errors})
    return form
