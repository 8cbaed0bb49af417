from agrotrade.extensions import db
from .base import BaseModel


class LedgerLock(BaseModel):
    """
    命名锁行
    结算等跨产品操作通过 SELECT ... FOR UPDATE 锁定对应行实现互斥。
    """
    __tablename__ = 'sys_ledger_locks'

    name = db.Column(db.String(64), unique=True, nullable=False)
