class LedgerError(Exception):
    """库存账本基础异常类"""
    def __init__(self, message, code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['code'] = self.code
        rv['error'] = type(self).__name__
        rv['success'] = False
        return rv


class ValidationError(LedgerError):
    """请求参数错误"""
    def __init__(self, message="Invalid data", payload=None):
        super().__init__(message, code=400, payload=payload)


class NotFound(LedgerError):
    """对象不存在"""
    def __init__(self, message="Not found", payload=None):
        super().__init__(message, code=404, payload=payload)


class InsufficientStock(LedgerError):
    """库存不足 (生产投入、采购退货、批次调整不允许出现负数)"""
    def __init__(self, message="Insufficient stock", payload=None):
        super().__init__(message, code=409, payload=payload)


class LineLocked(LedgerError):
    """已被下游消耗的批次/单据不能撤销，需先撤销下游单据"""
    def __init__(self, message="Line is locked by downstream consumption", payload=None):
        super().__init__(message, code=409, payload=payload)


class PeriodSequenceViolation(LedgerError):
    """结算期间不连续，或删除的不是最近一次结算"""
    def __init__(self, message="Period sequence violation", payload=None):
        super().__init__(message, code=409, payload=payload)


class ReconciliationVariance(LedgerError):
    """
    结算对账差异 (非致命)
    推算成本与匹配成本差额超过容差时随结算结果一起返回，不会中断结算。
    """
    def __init__(self, derived_cogs, bookkeeping_cogs, tolerance):
        self.derived_cogs = derived_cogs
        self.bookkeeping_cogs = bookkeeping_cogs
        self.variance = derived_cogs - bookkeeping_cogs
        self.tolerance = tolerance
        super().__init__(
            f"COGS variance {self.variance} exceeds tolerance {tolerance}",
            code=200,
            payload={
                'derived_cogs': str(derived_cogs),
                'bookkeeping_cogs': str(bookkeeping_cogs),
                'variance': str(self.variance),
            }
        )
