"""
库存调整服务

产品级修正 (adjust) 由外部盘点工具提交，可整体撤销；
批次级调整 (报废/损耗/更正/实盘) 直接作用于单个批次。
"""
from datetime import date, datetime
from flask import current_app
from agrotrade.extensions import db
from agrotrade.exceptions import ValidationError, NotFound, InsufficientStock
from agrotrade.models.stock import InventoryLot, InventoryLog, InventoryAdjustment, LotAdjustment
from agrotrade.services.ledger_service import LedgerService
from agrotrade.services.locking import LockService
from agrotrade.services.lot_service import LotService, StockTracker
from agrotrade.services.matching_service import FifoMatcher
from agrotrade.services.reference import ReferenceData
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize, ZERO

LOT_ADJUSTMENT_TYPES = (
    LotAdjustment.TYPE_DISCARD,
    LotAdjustment.TYPE_LOSS,
    LotAdjustment.TYPE_CORRECTION,
    LotAdjustment.TYPE_AUDIT,
)


class AdjustmentService:

    @staticmethod
    def get(adjustment_id):
        adj = db.session.get(InventoryAdjustment, adjustment_id)
        if adj is None:
            raise NotFound(f"库存修正不存在: {adjustment_id}")
        return adj

    @staticmethod
    @transactional
    def adjust(product_id, new_quantity, reason, adjusted_on=None):
        """
        把产品汇总库存修正为 new_quantity
        减少：按先进先出从批次扣减 (批次不足部分记为未分摊)；
        增加：按最近批次单价生成一个调整批次。
        """
        new_quantity = quantize(to_decimal(new_quantity, 'new_quantity'))
        if new_quantity < 0:
            raise ValidationError("修正后数量不能为负")
        if not reason:
            raise ValidationError("必须填写修正原因")
        ReferenceData.get_product(product_id)

        stock = LockService.lock_products([product_id])[product_id]
        before = to_decimal(stock.quantity)
        delta = new_quantity - before
        if delta == 0:
            raise ValidationError("修正数量与当前库存一致")

        adjusted_on = adjusted_on or date.today()
        adj = InventoryAdjustment(
            product_id=product_id,
            adjusted_on=adjusted_on,
            before_quantity=before,
            new_quantity=new_quantity,
            delta=delta,
            reason=reason
        )
        db.session.add(adj)
        db.session.flush()

        lot_id = None
        weight_delta = ZERO
        if delta < 0:
            outstanding = -delta
            for lot in FifoMatcher.candidate_lots(product_id):
                if outstanding <= 0:
                    break
                take = min(to_decimal(lot.remaining_quantity), outstanding)
                weight_delta -= LotService.proportional_weight(lot, take)
                LotService.consume(lot, take)
                db.session.add(LotAdjustment(
                    lot_id=lot.id,
                    adjustment_id=adj.id,
                    adjustment_type=LotAdjustment.TYPE_BULK,
                    quantity_change=quantize(-take),
                    unit_cost=lot.unit_cost,
                    adjusted_on=adjusted_on,
                    reason=reason
                ))
                outstanding -= take
            if outstanding > 0:
                weight_delta -= ReferenceData.effective_weight(product_id, outstanding)
            adj.unallocated_quantity = quantize(outstanding)
        else:
            weight_delta = ReferenceData.effective_weight(product_id, delta)
            lot = LotService.create_lot(
                product_id=product_id,
                quantity=delta,
                unit_cost=LotService.latest_unit_cost(product_id),
                source_kind=InventoryLot.SOURCE_ADJUSTMENT,
                receipt_date=adjusted_on,
                warehouse_id=ReferenceData.default_warehouse_id(),
                total_weight=weight_delta,
                adjustment_id=adj.id,
                remark=reason
            )
            lot_id = lot.id

        adj.weight_delta = quantize(weight_delta)
        before, after = StockTracker.change(product_id, delta, weight_delta)
        LedgerService.record(
            product_id=product_id, qty_change=delta, weight_change=weight_delta,
            before=before, after=after, move_type=InventoryLog.TYPE_ADJUST,
            event=InventoryLog.EVENT_ADJUSTMENT, transaction_date=adjusted_on,
            code=f"ADJ-{adj.id}", lot_id=lot_id, remark=reason
        )
        current_app.logger.info(f"库存修正 #{adj.id}: 产品 {product_id} {before} -> {after} ({reason})")
        return adj

    @staticmethod
    @transactional
    def cancel_adjustment(adjustment_id):
        """撤销产品级修正，恢复修正前数量；调整批次已被消耗时锁定"""
        adj = AdjustmentService.get(adjustment_id)
        if adj.status == InventoryAdjustment.STATUS_CANCELLED:
            return adj
        LockService.lock_products([adj.product_id])

        lot_id = None
        if adj.delta > 0:
            lot = InventoryLot.query.filter_by(adjustment_id=adj.id,
                                               source_kind=InventoryLot.SOURCE_ADJUSTMENT).first()
            if lot is not None:
                lot = LockService.lock_lot(lot.id)
                LotService.ensure_untouched(lot, '调整批次')
                lot_id = lot.id
                LotService.delete_lot(lot)
        else:
            rows = LotAdjustment.query.filter_by(adjustment_id=adj.id, is_cancelled=False).all()
            lots = LockService.lock_lots([r.lot_id for r in rows])
            for row in rows:
                LotService.restore(lots[row.lot_id], -to_decimal(row.quantity_change))
                row.is_cancelled = True

        delta = -to_decimal(adj.delta)
        weight = -to_decimal(adj.weight_delta)
        before, after = StockTracker.change(adj.product_id, delta, weight)
        LedgerService.record(
            product_id=adj.product_id, qty_change=delta, weight_change=weight,
            before=before, after=after, move_type=InventoryLog.TYPE_ADJUST,
            event=InventoryLog.EVENT_ADJUSTMENT_CANCEL, code=f"ADJ-{adj.id}",
            lot_id=lot_id, remark=adj.reason
        )
        adj.status = InventoryAdjustment.STATUS_CANCELLED
        adj.cancelled_at = datetime.utcnow()
        current_app.logger.info(f"库存修正 #{adj.id} 已撤销")
        return adj

    @staticmethod
    def _adjust_lot(lot, quantity_change, adjustment_type, reason, adjusted_on):
        """在已加锁的批次上执行调整：0 <= 剩余 <= 原始"""
        if lot.status == InventoryLot.STATUS_CANCELLED:
            raise ValidationError(f"批次 #{lot.id} 已作废")
        remaining = to_decimal(lot.remaining_quantity)
        if quantity_change < 0 and remaining + quantity_change < 0:
            raise InsufficientStock(f"批次 #{lot.id} 剩余 {remaining}，不能调整 {quantity_change}",
                                    payload={'lot_id': lot.id})
        if remaining + quantity_change > to_decimal(lot.original_quantity):
            raise ValidationError(f"批次 #{lot.id} 调整后超过原始数量 {lot.original_quantity}")

        weight = LotService.proportional_weight(lot, abs(quantity_change))
        weight = weight if quantity_change > 0 else -weight
        if quantity_change < 0:
            LotService.consume(lot, -quantity_change)
        else:
            LotService.restore(lot, quantity_change)

        row = LotAdjustment(
            lot_id=lot.id,
            adjustment_type=adjustment_type,
            quantity_change=quantize(quantity_change),
            unit_cost=lot.unit_cost,
            adjusted_on=adjusted_on,
            reason=reason
        )
        db.session.add(row)
        db.session.flush()

        before, after = StockTracker.change(lot.product_id, quantity_change, weight)
        LedgerService.record(
            product_id=lot.product_id, qty_change=quantity_change, weight_change=weight,
            before=before, after=after, move_type=InventoryLog.TYPE_ADJUST,
            event=InventoryLog.EVENT_ADJUSTMENT, transaction_date=adjusted_on,
            code=f"LADJ-{row.id}", warehouse_id=lot.warehouse_id, lot_id=lot.id,
            unit_price=lot.unit_cost, sender=lot.sender, origin=lot.origin,
            remark=f"{adjustment_type}: {reason}" if reason else adjustment_type
        )
        return row

    @staticmethod
    @transactional
    def adjust_lot(lot_id, quantity_change, adjustment_type=LotAdjustment.TYPE_CORRECTION,
                   reason=None, adjusted_on=None):
        """批次级调整 (报废/损耗/更正)"""
        if adjustment_type not in LOT_ADJUSTMENT_TYPES:
            raise ValidationError(f"未知调整类型: {adjustment_type}")
        quantity_change = quantize(to_decimal(quantity_change, 'quantity_change'))
        if quantity_change == 0:
            raise ValidationError("调整数量不能为0")
        lot = LotService.get(lot_id)
        LockService.lock_products([lot.product_id])
        lot = LockService.lock_lot(lot_id)
        return AdjustmentService._adjust_lot(lot, quantity_change, adjustment_type, reason,
                                             adjusted_on or date.today())

    @staticmethod
    @transactional
    def cancel_lot_adjustment(lot_adjustment_id):
        """撤销单条批次调整 (产品级修正分摊的记录随修正整体撤销)"""
        row = db.session.get(LotAdjustment, lot_adjustment_id)
        if row is None:
            raise NotFound(f"批次调整不存在: {lot_adjustment_id}")
        if row.adjustment_type == LotAdjustment.TYPE_BULK:
            raise ValidationError("该调整属于库存修正，请撤销对应的库存修正")
        if row.is_cancelled:
            return row

        lot = LotService.get(row.lot_id)
        LockService.lock_products([lot.product_id])
        lot = LockService.lock_lot(lot.id)
        change = -to_decimal(row.quantity_change)
        weight = LotService.proportional_weight(lot, abs(change))
        weight = weight if change > 0 else -weight
        if change < 0:
            LotService.consume(lot, -change)
        else:
            LotService.restore(lot, change)
        row.is_cancelled = True

        before, after = StockTracker.change(lot.product_id, change, weight)
        LedgerService.record(
            product_id=lot.product_id, qty_change=change, weight_change=weight,
            before=before, after=after, move_type=InventoryLog.TYPE_ADJUST,
            event=InventoryLog.EVENT_ADJUSTMENT_CANCEL, code=f"LADJ-{row.id}",
            warehouse_id=lot.warehouse_id, lot_id=lot.id, unit_price=lot.unit_cost,
            remark=row.reason
        )
        return row

    @staticmethod
    @transactional
    def apply_audit(counts, reason='实盘', adjusted_on=None):
        """
        按批次实盘数量调整
        :param counts: {lot_id: 实盘数量}
        :return: 生成的 LotAdjustment 列表 (无差异的批次不生成)
        """
        if not counts:
            raise ValidationError("实盘数据不能为空")
        lot_ids = [int(k) for k in counts]
        found = InventoryLot.query.filter(InventoryLot.id.in_(lot_ids)).all()
        missing = set(lot_ids) - {lot.id for lot in found}
        if missing:
            raise NotFound(f"批次不存在: {sorted(missing)}")

        LockService.lock_products([lot.product_id for lot in found])
        lots = LockService.lock_lots(lot_ids)
        adjusted_on = adjusted_on or date.today()
        rows = []
        for lot_id in sorted(lots):
            counted = quantize(to_decimal(counts.get(lot_id, counts.get(str(lot_id))), 'count'))
            if counted < 0:
                raise ValidationError(f"批次 #{lot_id} 实盘数量不能为负")
            diff = counted - to_decimal(lots[lot_id].remaining_quantity)
            if diff != 0:
                rows.append(AdjustmentService._adjust_lot(
                    lots[lot_id], diff, LotAdjustment.TYPE_AUDIT, reason, adjusted_on))
        current_app.logger.info(f"实盘完成: {len(lots)} 个批次, {len(rows)} 条差异")
        return rows
