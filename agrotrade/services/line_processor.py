"""
交易明细处理器

明细的每一次新增/修改/删除都经过这里：同一事务内维护批次、产品汇总库存和库存流水。
明细按 (单据类型, 数量符号, 原明细, 方向) 归为六类，每类一个 handler。
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional
from flask import current_app
from sqlalchemy import func
from agrotrade.extensions import db
from agrotrade.exceptions import ValidationError, NotFound, InsufficientStock, LineLocked
from agrotrade.models.stock import InventoryLot, LotMatch, InventoryLog
from agrotrade.models.trade import TradeLine
from agrotrade.services.locking import LockService
from agrotrade.services.ledger_service import LedgerService, HISTORY_PRUNE
from agrotrade.services.lot_service import LotService, StockTracker
from agrotrade.services.matching_service import FifoMatcher
from agrotrade.services.reference import ReferenceData
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize, ZERO


@dataclass
class LineSnapshot:
    """明细在某一时刻的不可变快照 (含单据头字段)，撤销时按快照冲回"""
    id: int
    document_id: int
    trade_type: str
    trade_no: Optional[str]
    trade_date: date
    partner_id: Optional[int]
    product_id: int
    quantity: Decimal
    direction: Optional[str]
    unit_price: Decimal
    total_weight: Optional[Decimal]
    weight: Decimal
    weight_unit: Optional[str]
    warehouse_id: Optional[int]
    parent_line_id: Optional[int] = None
    source_lot_id: Optional[int] = None
    sender: Optional[str] = None
    origin: Optional[str] = None
    notes: Optional[str] = None
    kind: str = field(default=None)

    @classmethod
    def from_line(cls, line):
        doc = line.document
        quantity = to_decimal(line.quantity, 'quantity')
        total_weight = None if line.total_weight is None else to_decimal(line.total_weight)
        return cls(
            id=line.id,
            document_id=doc.id,
            trade_type=doc.trade_type,
            trade_no=doc.trade_no,
            trade_date=doc.trade_date,
            partner_id=doc.partner_id,
            product_id=line.product_id,
            quantity=quantity,
            direction=line.direction,
            unit_price=quantize(line.unit_price),
            total_weight=total_weight,
            weight=ReferenceData.effective_weight(line.product_id, quantity, total_weight),
            weight_unit=line.weight_unit,
            warehouse_id=line.warehouse_id or doc.warehouse_id or ReferenceData.default_warehouse_id(),
            parent_line_id=line.parent_line_id,
            source_lot_id=line.source_lot_id,
            sender=line.sender,
            origin=line.origin,
            notes=line.notes,
            kind=TradeLine.resolve_kind(doc.trade_type, quantity, line.parent_line_id, line.direction)
        )

    @property
    def abs_quantity(self):
        return abs(self.quantity)

    def ledger_equal(self, other):
        """影响库存的字段是否一致 (其余为备注类修改)"""
        return (self.kind == other.kind
                and self.product_id == other.product_id
                and self.quantity == other.quantity
                and self.unit_price == other.unit_price
                and self.total_weight == other.total_weight
                and self.warehouse_id == other.warehouse_id
                and self.parent_line_id == other.parent_line_id
                and self.source_lot_id == other.source_lot_id)


class LineHandler:
    """明细处理基类：apply 生效、reverse 冲回"""
    kind = None

    def apply(self, line, snap, event):
        raise NotImplementedError

    def reverse(self, line, snap, event):
        raise NotImplementedError

    @staticmethod
    def move(snap, qty_change, weight_change, event, lot_id=None, unit_price=None):
        """变动汇总库存并追加流水 (产品行已加锁)"""
        before, after = StockTracker.change(snap.product_id, qty_change, weight_change, unit_price)
        LedgerService.record_line(snap, qty_change, weight_change, before, after, event, lot_id)
        return before, after

    @staticmethod
    def parent_of(snap, expected_kind):
        parent = db.session.get(TradeLine, snap.parent_line_id)
        if parent is None:
            raise NotFound(f"原明细不存在: {snap.parent_line_id}")
        if parent.kind != expected_kind:
            raise ValidationError(f"退货只能引用{expected_kind}明细")
        if parent.product_id != snap.product_id:
            raise ValidationError("退货产品与原明细产品不一致")
        return parent


class _LotCreatingHandler(LineHandler):
    """采购与生产产出：生成批次"""
    source_kind = None
    label = '批次'

    def apply(self, line, snap, event):
        lot = LotService.create_lot(
            product_id=snap.product_id,
            quantity=snap.quantity,
            unit_cost=snap.unit_price,
            source_kind=self.source_kind,
            receipt_date=snap.trade_date,
            warehouse_id=snap.warehouse_id,
            total_weight=snap.weight,
            trade_line_id=line.id,
            partner_id=snap.partner_id,
            weight_unit=snap.weight_unit,
            sender=snap.sender,
            origin=snap.origin
        )
        self.move(snap, snap.quantity, snap.weight, event, lot_id=lot.id, unit_price=snap.unit_price)
        return lot

    def reverse(self, line, snap, event):
        lot = LotService.lot_for_line(snap.id)
        lot_id = None
        quantity, weight = snap.quantity, snap.weight
        if lot is not None:
            lot = LockService.lock_lot(lot.id)
            LotService.ensure_untouched(lot, self.label)
            if lot.status == InventoryLot.STATUS_CANCELLED:
                # 作废时剩余数量已从汇总库存扣除
                quantity, weight = ZERO, ZERO
            lot_id = lot.id
            LotService.delete_lot(lot)
        self.move(snap, -quantity, -weight, event, lot_id=lot_id)


class PurchaseHandler(_LotCreatingHandler):
    kind = TradeLine.KIND_PURCHASE
    source_kind = InventoryLot.SOURCE_PURCHASE
    label = '采购批次'


class ProductionOutputHandler(_LotCreatingHandler):
    kind = TradeLine.KIND_PRODUCTION_OUTPUT
    source_kind = InventoryLot.SOURCE_PRODUCTION
    label = '产出批次'


class PurchaseReturnHandler(LineHandler):
    """退货给供应商：直接扣减原采购批次，不生成新批次"""
    kind = TradeLine.KIND_PURCHASE_RETURN

    def apply(self, line, snap, event):
        parent = self.parent_of(snap, TradeLine.KIND_PURCHASE)
        lot = LotService.lot_for_line(parent.id)
        if lot is None:
            raise NotFound(f"原采购明细 #{parent.id} 没有对应批次")
        lot = LockService.lock_lot(lot.id)
        if lot.status == InventoryLot.STATUS_CANCELLED:
            raise ValidationError(f"批次 #{lot.id} 已作废")

        LotService.consume(lot, snap.abs_quantity)
        db.session.add(LotMatch(
            trade_line_id=line.id,
            lot_id=lot.id,
            matched_quantity=quantize(snap.abs_quantity),
            unit_cost=lot.unit_cost,
            matched_date=snap.trade_date,
            match_type=LotMatch.TYPE_RETURN
        ))
        FifoMatcher.refresh_line(line)
        self.move(snap, snap.quantity, -snap.weight, event, lot_id=lot.id)

    def reverse(self, line, snap, event):
        matches = LotMatch.query.filter_by(trade_line_id=snap.id, match_type=LotMatch.TYPE_RETURN).all()
        lots = LockService.lock_lots([m.lot_id for m in matches])
        lot_id = None
        for match in matches:
            LotService.restore(lots[match.lot_id], match.matched_quantity)
            lot_id = match.lot_id
            db.session.delete(match)
        db.session.flush()
        FifoMatcher.refresh_line(line)
        self.move(snap, snap.abs_quantity, snap.weight, event, lot_id=lot_id)


class SaleHandler(LineHandler):
    """销售出库：允许汇总库存为负 (超卖)，批次匹配尽力而为"""
    kind = TradeLine.KIND_SALE

    def apply(self, line, snap, event):
        before, after = self.move(snap, -snap.quantity, -snap.weight, event)
        if after < 0:
            current_app.logger.warning(f"产品 {snap.product_id} 库存为负 ({after})，单据 {snap.trade_no}")
        if current_app.config.get('AUTO_MATCH_SALES', True):
            FifoMatcher.match(line, snap.quantity)

    def reverse(self, line, snap, event):
        self.ensure_no_returns(snap)
        FifoMatcher.release(line)
        self.move(snap, snap.quantity, snap.weight, event)

    @staticmethod
    def returned_quantity(sale_line_id, exclude_id=None):
        query = db.session.query(func.coalesce(func.sum(TradeLine.quantity), 0)) \
            .filter(TradeLine.parent_line_id == sale_line_id)
        if exclude_id:
            query = query.filter(TradeLine.id != exclude_id)
        return abs(to_decimal(query.scalar()))

    @staticmethod
    def ensure_no_returns(snap):
        if TradeLine.query.filter_by(parent_line_id=snap.id).count():
            raise LineLocked(f"销售明细 #{snap.id} 已有退货明细，请先删除退货",
                             payload={'line_id': snap.id})

    def amend_in_place(self, line, old, new):
        """同一产品的销售修改：保留已有匹配，只分配增量或释放最新匹配"""
        self.ensure_no_returns(old)
        self.move(old, old.quantity, old.weight, InventoryLog.EVENT_UPDATE_REVERSE)
        self.move(new, -new.quantity, -new.weight, InventoryLog.EVENT_UPDATE_APPLY)
        FifoMatcher.refresh_line(line)
        if current_app.config.get('AUTO_MATCH_SALES', True):
            target = new.quantity
        else:
            target = min(to_decimal(line.matched_quantity), new.quantity)
        FifoMatcher.rebalance(line, target)


class SaleReturnHandler(LineHandler):
    """客户退货：数量回到汇总库存，并从原销售的匹配中释放回批次"""
    kind = TradeLine.KIND_SALE_RETURN

    def apply(self, line, snap, event):
        parent = self.parent_of(snap, TradeLine.KIND_SALE)
        returned = SaleHandler.returned_quantity(parent.id, exclude_id=line.id)
        if returned + snap.abs_quantity > to_decimal(parent.quantity):
            raise ValidationError(
                f"退货数量超过原销售数量 (已退 {returned}, 原销售 {parent.quantity})")
        self.move(snap, snap.abs_quantity, snap.weight, event)
        FifoMatcher.release_for_return(line, parent.id, snap.abs_quantity)

    def reverse(self, line, snap, event):
        FifoMatcher.undo_releases(line)
        self.move(snap, snap.quantity, -snap.weight, event)


class ProductionInputHandler(LineHandler):
    """生产投入：不允许汇总库存为负，必须全部匹配到批次"""
    kind = TradeLine.KIND_PRODUCTION_INPUT

    def apply(self, line, snap, event):
        current = to_decimal(StockTracker.current(snap.product_id).quantity)
        if current - snap.quantity < 0:
            raise InsufficientStock(
                f"产品 {snap.product_id} 库存 {current}，生产投入 {snap.quantity} 不足",
                payload={'product_id': snap.product_id})

        if snap.source_lot_id:
            FifoMatcher.match_explicit(line, snap.source_lot_id, snap.quantity)
        else:
            FifoMatcher.match(line, snap.quantity)
        if line.unmatched_quantity > 0:
            raise InsufficientStock(
                f"产品 {snap.product_id} 可用批次不足，未匹配 {line.unmatched_quantity}",
                payload={'product_id': snap.product_id})
        self.move(snap, -snap.quantity, -snap.weight, event)

    def reverse(self, line, snap, event):
        FifoMatcher.release(line)
        self.move(snap, snap.quantity, snap.weight, event)


HANDLERS = {handler.kind: handler for handler in (
    PurchaseHandler(),
    PurchaseReturnHandler(),
    SaleHandler(),
    SaleReturnHandler(),
    ProductionOutputHandler(),
    ProductionInputHandler(),
)}


class TradeLineProcessor:
    """明细生效/冲回/修改，均为原子事务"""

    @staticmethod
    def handler_for(kind):
        return HANDLERS[kind]

    @staticmethod
    @transactional
    def apply(line, event=InventoryLog.EVENT_APPLY):
        snap = LineSnapshot.from_line(line)
        if snap.quantity == 0:
            raise ValidationError("明细数量不能为0")
        LockService.lock_products([snap.product_id])
        HANDLERS[snap.kind].apply(line, snap, event)
        return snap

    @staticmethod
    @transactional
    def reverse(line, snapshot=None):
        """
        冲回明细的全部库存影响 (删除明细前调用)
        compensate 模式追加 DELETE_REVERSE 流水；prune 模式删除该明细的全部流水。
        """
        snap = snapshot or LineSnapshot.from_line(line)
        LockService.lock_products([snap.product_id])
        HANDLERS[snap.kind].reverse(line, snap, InventoryLog.EVENT_DELETE_REVERSE)
        if LedgerService.history_mode() == HISTORY_PRUNE:
            LedgerService.prune_line(snap.id)
        return snap

    @staticmethod
    @transactional
    def amend(old, line):
        """
        修改明细
        :param old: 修改前的 LineSnapshot
        :param line: 已修改的明细
        :return: 是否产生库存变动
        """
        new = LineSnapshot.from_line(line)
        if old.ledger_equal(new):
            return False
        if new.quantity == 0:
            raise ValidationError("明细数量不能为0")

        LockService.lock_products([old.product_id, new.product_id])
        if old.kind == new.kind == TradeLine.KIND_SALE and old.product_id == new.product_id:
            HANDLERS[TradeLine.KIND_SALE].amend_in_place(line, old, new)
        else:
            HANDLERS[old.kind].reverse(line, old, InventoryLog.EVENT_UPDATE_REVERSE)
            HANDLERS[new.kind].apply(line, new, InventoryLog.EVENT_UPDATE_APPLY)
        current_app.logger.info(f"明细 #{line.id} 已修改 ({old.kind} -> {new.kind})")
        return True
