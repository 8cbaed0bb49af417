"""库存流水 (审计账本) 服务"""
from flask import current_app
from agrotrade.extensions import db
from agrotrade.models.stock import InventoryLog
from agrotrade.utils.validators import quantize

HISTORY_COMPENSATE = 'compensate'
HISTORY_PRUNE = 'prune'


class LedgerService:
    """只追加的库存流水"""

    @staticmethod
    def history_mode():
        return current_app.config.get('LEDGER_HISTORY_MODE', HISTORY_COMPENSATE)

    @staticmethod
    def record(product_id, qty_change, before, after, move_type, event=InventoryLog.EVENT_APPLY,
               weight_change=0, warehouse_id=None, transaction_date=None, code=None,
               line_id=None, lot_id=None, unit_price=None, sender=None, origin=None, remark=None):
        """
        追加一条流水
        :param qty_change: 带符号的变动数量
        :param before/after: 变动前后的产品汇总数量
        """
        log = InventoryLog(
            transaction_code=code,
            move_type=move_type,
            event=event,
            product_id=product_id,
            warehouse_id=warehouse_id,
            trade_line_id=line_id,
            lot_id=lot_id,
            qty_change=quantize(qty_change),
            weight_change=quantize(weight_change),
            unit_price=unit_price,
            balance_before=quantize(before),
            balance_after=quantize(after),
            sender=sender,
            origin=origin,
            remark=remark
        )
        if transaction_date is not None:
            log.transaction_date = transaction_date
        db.session.add(log)
        return log

    @staticmethod
    def record_line(snapshot, qty_change, weight_change, before, after, event, lot_id=None):
        """为交易明细追加流水；数量为负记 OUT，冲销类事件记 ADJUST"""
        if event in (InventoryLog.EVENT_UPDATE_REVERSE, InventoryLog.EVENT_DELETE_REVERSE):
            move_type = InventoryLog.TYPE_ADJUST
        else:
            move_type = InventoryLog.TYPE_IN if qty_change > 0 else InventoryLog.TYPE_OUT
        return LedgerService.record(
            product_id=snapshot.product_id,
            qty_change=qty_change,
            weight_change=weight_change,
            before=before,
            after=after,
            move_type=move_type,
            event=event,
            warehouse_id=snapshot.warehouse_id,
            transaction_date=snapshot.trade_date,
            code=snapshot.trade_no,
            line_id=snapshot.id,
            lot_id=lot_id,
            unit_price=snapshot.unit_price,
            sender=snapshot.sender,
            origin=snapshot.origin,
            remark=snapshot.notes or snapshot.kind
        )

    @staticmethod
    def prune_line(line_id):
        """删除某明细的全部流水 (prune 模式)"""
        return InventoryLog.query.filter_by(trade_line_id=line_id).delete(synchronize_session='fetch')

    @staticmethod
    def entries_for_line(line_id):
        return InventoryLog.query.filter_by(trade_line_id=line_id) \
            .order_by(InventoryLog.id.asc()).all()
