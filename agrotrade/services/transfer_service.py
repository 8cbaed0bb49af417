"""仓库调拨服务：批次在仓库之间移动，产品汇总数量不变"""
import uuid
from datetime import date, datetime
from flask import current_app
from agrotrade.extensions import db
from agrotrade.exceptions import ValidationError, NotFound, LineLocked
from agrotrade.models.stock import InventoryLot, InventoryLog
from agrotrade.models.transfer import StockTransfer, TransferRecord
from agrotrade.services.ledger_service import LedgerService
from agrotrade.services.locking import LockService
from agrotrade.services.lot_service import LotService, StockTracker
from agrotrade.services.reference import ReferenceData
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize, ZERO


class TransferService:

    @staticmethod
    def get(transfer_id):
        batch = db.session.get(StockTransfer, transfer_id)
        if batch is None:
            raise NotFound(f"调拨单不存在: {transfer_id}")
        return batch

    @staticmethod
    def transfer(lot_id, quantity, to_warehouse_id, transfer_date=None, notes=None):
        """单批次调拨"""
        return TransferService.create_transfer(
            [{'lot_id': lot_id, 'quantity': quantity, 'to_warehouse_id': to_warehouse_id}],
            transfer_date=transfer_date, notes=notes)

    @staticmethod
    @transactional
    def create_transfer(items, transfer_date=None, notes=None):
        """
        创建调拨单
        :param items: [{'lot_id': 1, 'quantity': 5, 'to_warehouse_id': 2}, ...]
        同一调拨单内 产品+目标仓库+成本 相同的目标批次合并为一个。
        """
        if not items:
            raise ValidationError("调拨明细不能为空")
        lot_ids = [item.get('lot_id') for item in items]
        found = InventoryLot.query.filter(InventoryLot.id.in_(lot_ids)).all()
        missing = set(lot_ids) - {lot.id for lot in found}
        if missing:
            raise NotFound(f"批次不存在: {sorted(missing, key=str)}")

        LockService.lock_products([lot.product_id for lot in found])
        lots = LockService.lock_lots(lot_ids)

        transfer_date = transfer_date or date.today()
        batch = StockTransfer(
            transfer_no=f"T-{transfer_date.strftime('%Y%m%d')}-{uuid.uuid4().hex[:4].upper()}",
            transfer_date=transfer_date,
            notes=notes
        )
        db.session.add(batch)
        db.session.flush()

        for item in items:
            TransferService._move(batch, lots[item['lot_id']],
                                  to_decimal(item.get('quantity'), 'quantity'),
                                  item.get('to_warehouse_id'))
        current_app.logger.info(f"调拨单 {batch.transfer_no} 已创建: {len(items)} 条")
        return batch

    @staticmethod
    def _move(batch, lot, quantity, to_warehouse_id):
        ReferenceData.get_warehouse(to_warehouse_id)
        if quantity <= 0:
            raise ValidationError("调拨数量必须大于0")
        if lot.warehouse_id == to_warehouse_id:
            raise ValidationError(f"批次 #{lot.id} 已在目标仓库")
        if lot.status == InventoryLot.STATUS_CANCELLED:
            raise ValidationError(f"批次 #{lot.id} 已作废")

        weight = LotService.proportional_weight(lot, quantity)
        LotService.consume(lot, quantity)

        dest = InventoryLot.query.filter_by(
            transfer_id=batch.id,
            product_id=lot.product_id,
            warehouse_id=to_warehouse_id,
            unit_cost=lot.unit_cost
        ).first()
        merged = dest is not None
        if merged:
            dest.original_quantity = quantize(to_decimal(dest.original_quantity) + quantity)
            dest.remaining_quantity = quantize(to_decimal(dest.remaining_quantity) + quantity)
            dest.total_weight = quantize(to_decimal(dest.total_weight) + weight)
            dest.refresh_status()
        else:
            dest = LotService.create_lot(
                product_id=lot.product_id,
                quantity=quantity,
                unit_cost=lot.unit_cost,
                source_kind=InventoryLot.SOURCE_TRANSFER,
                receipt_date=lot.receipt_date,
                warehouse_id=to_warehouse_id,
                total_weight=weight,
                source_lot_id=lot.id,
                transfer_id=batch.id,
                partner_id=lot.partner_id,
                weight_unit=lot.weight_unit,
                sender=lot.sender,
                origin=lot.origin
            )

        db.session.add(TransferRecord(
            transfer_id=batch.id,
            product_id=lot.product_id,
            source_lot_id=lot.id,
            dest_lot_id=dest.id,
            from_warehouse_id=lot.warehouse_id,
            to_warehouse_id=to_warehouse_id,
            quantity=quantize(quantity),
            weight=weight,
            merged=merged
        ))
        TransferService._log_pair(batch, lot, dest, quantity, weight, InventoryLog.EVENT_TRANSFER)

    @staticmethod
    def _log_pair(batch, from_lot, to_lot, quantity, weight, event):
        """调出 OUT + 调入 IN 两条流水，汇总数量前后相同"""
        current = to_decimal(StockTracker.current(from_lot.product_id).quantity)
        common = dict(
            product_id=from_lot.product_id, before=current, after=current, event=event,
            transaction_date=batch.transfer_date, code=batch.transfer_no,
            unit_price=from_lot.unit_cost, sender=from_lot.sender, origin=from_lot.origin,
            remark=batch.notes
        )
        LedgerService.record(qty_change=-quantity, weight_change=-weight, move_type=InventoryLog.TYPE_OUT,
                             warehouse_id=from_lot.warehouse_id, lot_id=from_lot.id, **common)
        LedgerService.record(qty_change=quantity, weight_change=weight, move_type=InventoryLog.TYPE_IN,
                             warehouse_id=to_lot.warehouse_id, lot_id=to_lot.id, **common)

    @staticmethod
    @transactional
    def cancel_transfer(transfer_id):
        """
        撤销调拨单：目标批次扣回，来源批次恢复
        目标批次已被销售/调拨/调整消耗时锁定；调拨生成的目标批次归零后删除。
        """
        batch = TransferService.get(transfer_id)
        if batch.status == StockTransfer.STATUS_CANCELLED:
            return batch
        records = list(batch.records)
        LockService.lock_products([r.product_id for r in records])
        lots = LockService.lock_lots([r.source_lot_id for r in records] + [r.dest_lot_id for r in records])

        for dest_id in {r.dest_lot_id for r in records}:
            dest = lots[dest_id]
            if dest.status == InventoryLot.STATUS_CANCELLED:
                raise LineLocked(f"调入批次 #{dest.id} 已作废，不能撤销调拨",
                                 payload={'lot_id': dest.id})
            if LotService.match_count(dest.id) or LotService.outgoing_transfer_count(dest.id) \
                    or LotService.active_adjustment_count(dest.id):
                raise LineLocked(f"调入批次 #{dest.id} 已被下游单据消耗，请先撤销下游单据",
                                 payload={'lot_id': dest.id})

        emptied = []
        for record in reversed(records):
            source, dest = lots[record.source_lot_id], lots[record.dest_lot_id]
            quantity = to_decimal(record.quantity)
            weight = to_decimal(record.weight)
            if to_decimal(dest.remaining_quantity) < quantity:
                raise LineLocked(f"调入批次 #{dest.id} 剩余不足，无法撤销调拨",
                                 payload={'lot_id': dest.id})
            dest.remaining_quantity = quantize(to_decimal(dest.remaining_quantity) - quantity)
            dest.original_quantity = quantize(to_decimal(dest.original_quantity) - quantity)
            dest.total_weight = quantize(to_decimal(dest.total_weight) - weight)
            dest.refresh_status()
            LotService.restore(source, quantity)
            TransferService._log_pair(batch, dest, source, quantity, weight,
                                      InventoryLog.EVENT_TRANSFER_CANCEL)
            if dest.source_kind == InventoryLot.SOURCE_TRANSFER and dest.original_quantity <= ZERO \
                    and dest not in emptied:
                emptied.append(dest)

        for dest in emptied:
            LotService.delete_lot(dest)
        batch.status = StockTransfer.STATUS_CANCELLED
        batch.cancelled_at = datetime.utcnow()
        current_app.logger.info(f"调拨单 {batch.transfer_no} 已撤销")
        return batch
