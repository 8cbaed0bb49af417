# 按照依赖顺序导入
from .base import BaseModel
from .biz import Product, Partner
from .stock import (
    Warehouse, Stock, InventoryLot, LotMatch, InventoryLog,
    InventoryAdjustment, LotAdjustment
)
from .trade import TradeDocument, TradeLine

# 调拨与加工
from .transfer import StockTransfer, TransferRecord, ProductionJob

# 财务与结算
from .finance import CashTransaction, PeriodClosing

from .sys import LedgerLock
