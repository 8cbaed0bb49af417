"""库存批次与产品汇总库存服务"""
from datetime import date
from flask import current_app
from agrotrade.extensions import db
from agrotrade.exceptions import NotFound, LineLocked, InsufficientStock
from agrotrade.models.stock import Stock, InventoryLot, LotMatch, InventoryLog, LotAdjustment
from agrotrade.models.transfer import TransferRecord, StockTransfer
from agrotrade.services.locking import LockService
from agrotrade.services.ledger_service import LedgerService
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize, ZERO


class StockTracker:
    """产品汇总库存 (数量 + 重量)"""

    @staticmethod
    def current(product_id):
        """读取汇总行 (不加锁，查询用)"""
        return Stock.query.filter_by(product_id=product_id).first()

    @staticmethod
    def change(product_id, qty_delta, weight_delta=ZERO, unit_price=None):
        """
        在已加锁的汇总行上增减数量/重量
        :return: (变动前数量, 变动后数量)
        """
        stock = LockService.lock_products([product_id])[product_id]
        before = to_decimal(stock.quantity)
        stock.quantity = quantize(before + to_decimal(qty_delta))
        stock.weight = quantize(to_decimal(stock.weight) + to_decimal(weight_delta))
        if unit_price is not None:
            stock.last_unit_price = unit_price
        return before, to_decimal(stock.quantity)


class LotService:
    """库存批次 (按入库记录)"""

    @staticmethod
    def get(lot_id):
        lot = db.session.get(InventoryLot, lot_id)
        if lot is None:
            raise NotFound(f"批次不存在: {lot_id}")
        return lot

    @staticmethod
    def create_lot(product_id, quantity, unit_cost, source_kind, receipt_date, warehouse_id,
                   total_weight=ZERO, **extra):
        """新建批次：原始数量 = 剩余数量"""
        quantity = quantize(quantity)
        lot = InventoryLot(
            product_id=product_id,
            source_kind=source_kind,
            receipt_date=receipt_date,
            warehouse_id=warehouse_id,
            original_quantity=quantity,
            remaining_quantity=quantity,
            unit_cost=quantize(unit_cost),
            total_weight=quantize(total_weight),
            status=InventoryLot.STATUS_AVAILABLE,
            **extra
        )
        lot.refresh_status()
        db.session.add(lot)
        db.session.flush()
        current_app.logger.info(
            f"批次创建 #{lot.id}: 产品 {product_id}, 数量 {quantity}, 单价 {lot.unit_cost} ({source_kind})")
        return lot

    @staticmethod
    def lot_for_line(line_id):
        """采购/生产产出明细生成的批次"""
        return InventoryLot.query.filter(
            InventoryLot.trade_line_id == line_id,
            InventoryLot.source_kind.in_([InventoryLot.SOURCE_PURCHASE, InventoryLot.SOURCE_PRODUCTION])
        ).first()

    @staticmethod
    def match_count(lot_id):
        return LotMatch.query.filter_by(lot_id=lot_id).count()

    @staticmethod
    def outgoing_transfer_count(lot_id):
        return TransferRecord.query.join(StockTransfer).filter(
            TransferRecord.source_lot_id == lot_id,
            StockTransfer.status == StockTransfer.STATUS_ACTIVE
        ).count()

    @staticmethod
    def active_adjustment_count(lot_id):
        return LotAdjustment.query.filter_by(lot_id=lot_id, is_cancelled=False).count()

    @staticmethod
    def ensure_untouched(lot, what='批次'):
        """批次已被销售/调拨/调整消耗时禁止撤销"""
        if LotService.match_count(lot.id) or LotService.outgoing_transfer_count(lot.id) \
                or LotService.active_adjustment_count(lot.id) \
                or to_decimal(lot.remaining_quantity) != to_decimal(lot.original_quantity):
            raise LineLocked(f"{what} #{lot.id} 已被下游单据消耗，请先撤销下游单据",
                             payload={'lot_id': lot.id})

    @staticmethod
    def consume(lot, quantity):
        """扣减批次剩余数量 (调用方已加锁)"""
        quantity = to_decimal(quantity)
        remaining = to_decimal(lot.remaining_quantity)
        if quantity > remaining:
            raise InsufficientStock(f"批次 #{lot.id} 剩余 {remaining}，不足 {quantity}",
                                    payload={'lot_id': lot.id})
        lot.remaining_quantity = quantize(remaining - quantity)
        lot.refresh_status()

    @staticmethod
    def restore(lot, quantity):
        """恢复批次剩余数量 (撤销消耗)"""
        lot.remaining_quantity = quantize(to_decimal(lot.remaining_quantity) + to_decimal(quantity))
        lot.refresh_status()

    @staticmethod
    def delete_lot(lot):
        """删除批次；已撤销的调整/调拨记录只保留历史，解除对批次的引用"""
        LotAdjustment.query.filter_by(lot_id=lot.id, is_cancelled=True) \
            .delete(synchronize_session='fetch')
        TransferRecord.query.filter_by(source_lot_id=lot.id) \
            .update({'source_lot_id': None}, synchronize_session='fetch')
        TransferRecord.query.filter_by(dest_lot_id=lot.id) \
            .update({'dest_lot_id': None}, synchronize_session='fetch')
        db.session.delete(lot)
        db.session.flush()

    @staticmethod
    def latest_unit_cost(product_id):
        lot = InventoryLot.query.filter(
            InventoryLot.product_id == product_id,
            InventoryLot.status != InventoryLot.STATUS_CANCELLED
        ).order_by(InventoryLot.receipt_date.desc(), InventoryLot.id.desc()).first()
        return to_decimal(lot.unit_cost) if lot else ZERO

    @staticmethod
    @transactional
    def cancel_lot(lot_id, reason, cancelled_on=None):
        """
        管理员作废批次 (终态 CANCELLED)
        已匹配或已调出的批次不能作废；剩余数量从汇总库存中扣除，
        作废日期和数量记在批次上，结算时从该日起扣减存货价值。
        """
        lot = LotService.get(lot_id)
        LockService.lock_products([lot.product_id])
        lot = LockService.lock_lot(lot_id)
        if lot.status == InventoryLot.STATUS_CANCELLED:
            return lot
        if LotService.match_count(lot.id) or LotService.outgoing_transfer_count(lot.id):
            raise LineLocked(f"批次 #{lot.id} 已有匹配或调拨记录，不能作废")

        remaining = to_decimal(lot.remaining_quantity)
        weight = LotService.proportional_weight(lot, remaining)
        before, after = StockTracker.change(lot.product_id, -remaining, -weight)
        cancelled_on = cancelled_on or date.today()
        lot.status = InventoryLot.STATUS_CANCELLED
        lot.cancelled_on = cancelled_on
        lot.cancelled_quantity = quantize(remaining)
        lot.remark = reason
        LedgerService.record(
            product_id=lot.product_id, qty_change=-remaining, weight_change=-weight,
            before=before, after=after, move_type=InventoryLog.TYPE_ADJUST,
            event=InventoryLog.EVENT_LOT_CANCEL, warehouse_id=lot.warehouse_id,
            transaction_date=cancelled_on, lot_id=lot.id, unit_price=lot.unit_cost,
            sender=lot.sender, origin=lot.origin, remark=reason
        )
        current_app.logger.warning(f"批次 #{lot.id} 已作废: {reason}")
        return lot

    @staticmethod
    def proportional_weight(lot, quantity):
        """按原始数量比例折算重量"""
        original = to_decimal(lot.original_quantity)
        if not original:
            return ZERO
        return quantize(to_decimal(lot.total_weight) / original * to_decimal(quantity))
