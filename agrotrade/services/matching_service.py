"""
先进先出匹配服务

出库需求按 (入库日期, 批次编号) 升序逐批分配；批次不足时剩余需求保持未匹配
(允许超卖)，之后可通过 match_pending 补匹配。
"""
from flask import current_app
from sqlalchemy import func
from agrotrade.extensions import db
from agrotrade.exceptions import NotFound, ValidationError, LineLocked
from agrotrade.models.stock import InventoryLot, LotMatch
from agrotrade.models.trade import TradeDocument, TradeLine
from agrotrade.services.locking import LockService
from agrotrade.services.lot_service import LotService
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize, ZERO


class FifoMatcher:
    """出库明细与批次的匹配"""

    @staticmethod
    def candidate_lots(product_id):
        """
        锁定并返回可用批次 (先进先出顺序)
        加锁按批次编号升序进行，锁定后重新校验状态。
        """
        ids = [row.id for row in db.session.query(InventoryLot.id).filter(
            InventoryLot.product_id == product_id,
            InventoryLot.status == InventoryLot.STATUS_AVAILABLE,
            InventoryLot.remaining_quantity > 0
        )]
        locked = LockService.lock_lots(ids)
        lots = [lot for lot in locked.values()
                if lot.status == InventoryLot.STATUS_AVAILABLE and lot.remaining_quantity > 0]
        lots.sort(key=lambda lot: (lot.receipt_date, lot.id))
        return lots

    @staticmethod
    def _allocate(line, lot, quantity, match_type):
        LotService.consume(lot, quantity)
        match = LotMatch(
            trade_line_id=line.id,
            lot_id=lot.id,
            matched_quantity=quantize(quantity),
            unit_cost=lot.unit_cost,
            matched_date=line.document.trade_date,
            match_type=match_type
        )
        db.session.add(match)
        return match

    @staticmethod
    def match(line, demand, match_type=LotMatch.TYPE_FIFO):
        """
        按先进先出为明细分配 demand 数量
        只分配本次增量，不调整已有匹配。
        :return: 新建的 LotMatch 列表
        """
        outstanding = to_decimal(demand)
        matches = []
        if outstanding <= 0:
            return matches

        for lot in FifoMatcher.candidate_lots(line.product_id):
            if outstanding <= 0:
                break
            take = min(to_decimal(lot.remaining_quantity), outstanding)
            matches.append(FifoMatcher._allocate(line, lot, take, match_type))
            outstanding -= take

        if outstanding > 0:
            current_app.logger.warning(
                f"明细 #{line.id} 可用批次不足，未匹配数量 {outstanding} (超卖)")
        FifoMatcher.refresh_line(line)
        return matches

    @staticmethod
    @transactional
    def match_explicit(line, lot_id, quantity, match_type=LotMatch.TYPE_MANUAL):
        """手动指定批次匹配"""
        quantity = to_decimal(quantity)
        if quantity <= 0:
            raise ValidationError("匹配数量必须大于0")
        if line.kind not in (TradeLine.KIND_SALE, TradeLine.KIND_PRODUCTION_INPUT):
            raise ValidationError("只有销售明细和生产投入明细可以匹配批次")
        LockService.lock_products([line.product_id])
        lot = LockService.lock_lot(lot_id)
        if lot is None:
            raise NotFound(f"批次不存在: {lot_id}")
        if lot.product_id != line.product_id:
            raise ValidationError("批次产品与明细产品不一致")
        if lot.status != InventoryLot.STATUS_AVAILABLE:
            raise ValidationError(f"批次 #{lot.id} 不可用 ({lot.status})")

        FifoMatcher.refresh_line(line)
        outstanding = FifoMatcher.outstanding_demand(line)
        if quantity > outstanding:
            raise ValidationError(f"匹配数量超过未匹配数量 {outstanding}")
        match = FifoMatcher._allocate(line, lot, quantity, match_type)
        FifoMatcher.refresh_line(line)
        return match

    @staticmethod
    def release(line, quantity=None):
        """
        释放明细的匹配 (最新的匹配优先)，恢复批次剩余数量
        :param quantity: None 表示全部释放
        :return: 实际释放数量
        """
        matches = LotMatch.query.filter(
            LotMatch.trade_line_id == line.id,
            LotMatch.matched_quantity > 0
        ).order_by(LotMatch.id.desc()).all()
        lots = LockService.lock_lots([m.lot_id for m in matches])

        outstanding = None if quantity is None else to_decimal(quantity)
        released = ZERO
        for match in matches:
            if outstanding is not None and outstanding <= 0:
                break
            matched = to_decimal(match.matched_quantity)
            take = matched if outstanding is None else min(matched, outstanding)
            LotService.restore(lots[match.lot_id], take)
            if take == matched:
                db.session.delete(match)
            else:
                match.matched_quantity = quantize(matched - take)
            released += take
            if outstanding is not None:
                outstanding -= take

        db.session.flush()
        FifoMatcher.refresh_line(line)
        return released

    @staticmethod
    def release_for_return(return_line, parent_line_id, quantity):
        """
        销售退货：从原销售明细的匹配中释放数量回批次 (最新匹配优先)
        以负数匹配记录在退货明细上，撤销退货时据此重新扣减。
        :return: 实际释放数量 (超出原匹配的部分不涉及批次)
        """
        parent_matches = LotMatch.query.filter(
            LotMatch.trade_line_id == parent_line_id,
            LotMatch.matched_quantity > 0
        ).order_by(LotMatch.id.desc()).all()
        lots = LockService.lock_lots([m.lot_id for m in parent_matches])

        # 同一原明细下已有的退货释放 (负数)
        sibling_ids = [row.id for row in db.session.query(TradeLine.id).filter(
            TradeLine.parent_line_id == parent_line_id, TradeLine.id != return_line.id)]
        already = {}
        if sibling_ids:
            rows = db.session.query(LotMatch.lot_id, func.sum(LotMatch.matched_quantity)).filter(
                LotMatch.trade_line_id.in_(sibling_ids)
            ).group_by(LotMatch.lot_id).all()
            already = {lot_id: -to_decimal(total) for lot_id, total in rows}

        outstanding = to_decimal(quantity)
        released = ZERO
        for match in parent_matches:
            if outstanding <= 0:
                break
            used = min(already.get(match.lot_id, ZERO), to_decimal(match.matched_quantity))
            already[match.lot_id] = already.get(match.lot_id, ZERO) - used
            available = to_decimal(match.matched_quantity) - used
            take = min(available, outstanding)
            if take <= 0:
                continue
            LotService.restore(lots[match.lot_id], take)
            db.session.add(LotMatch(
                trade_line_id=return_line.id,
                lot_id=match.lot_id,
                matched_quantity=quantize(-take),
                unit_cost=match.unit_cost,
                matched_date=return_line.document.trade_date,
                match_type=LotMatch.TYPE_RELEASE
            ))
            released += take
            outstanding -= take

        FifoMatcher.refresh_line(return_line)
        return released

    @staticmethod
    def undo_releases(line):
        """撤销销售退货释放：重新扣减批次，批次已被再次消耗时锁定"""
        releases = LotMatch.query.filter(
            LotMatch.trade_line_id == line.id,
            LotMatch.matched_quantity < 0
        ).order_by(LotMatch.id.asc()).all()
        lots = LockService.lock_lots([m.lot_id for m in releases])
        for match in releases:
            lot = lots[match.lot_id]
            quantity = -to_decimal(match.matched_quantity)
            if to_decimal(lot.remaining_quantity) < quantity:
                raise LineLocked(f"退货回库的批次 #{lot.id} 已被再次出库，请先撤销相关单据",
                                 payload={'lot_id': lot.id})
            LotService.consume(lot, quantity)
            db.session.delete(match)
        db.session.flush()
        FifoMatcher.refresh_line(line)

    @staticmethod
    def rebalance(line, target):
        """把明细的匹配数量调整到 target：增加时只分配增量，减少时释放最新匹配"""
        FifoMatcher.refresh_line(line)
        current = to_decimal(line.matched_quantity)
        target = to_decimal(target)
        if target > current:
            FifoMatcher.match(line, target - current)
        elif target < current:
            FifoMatcher.release(line, current - target)

    @staticmethod
    @transactional
    def match_pending(product_id=None):
        """
        为未完全匹配的销售明细补匹配 (按销售日期先后)
        :return: 新建匹配数
        """
        query = TradeLine.query.join(TradeDocument).filter(
            TradeDocument.trade_type == TradeDocument.TYPE_SALE,
            TradeDocument.status == TradeDocument.STATUS_ACTIVE,
            TradeLine.quantity > 0,
            TradeLine.matching_status != TradeLine.MATCH_MATCHED
        )
        if product_id:
            query = query.filter(TradeLine.product_id == product_id)
        lines = query.order_by(TradeDocument.trade_date.asc(), TradeDocument.id.asc(),
                               TradeLine.seq_no.asc(), TradeLine.id.asc()).all()

        LockService.lock_products([line.product_id for line in lines])
        created = 0
        for line in lines:
            FifoMatcher.refresh_line(line)
            outstanding = FifoMatcher.outstanding_demand(line)
            if outstanding > 0:
                created += len(FifoMatcher.match(line, outstanding))
        return created

    @staticmethod
    def unreleased_returns(line_id):
        """退货中未能释放回批次的数量 (原销售超卖部分的退货)"""
        returns = TradeLine.query.filter_by(parent_line_id=line_id).all()
        return sum((abs(to_decimal(r.quantity)) - to_decimal(r.matched_quantity) for r in returns), ZERO)

    @staticmethod
    def outstanding_demand(line):
        """仍需匹配的数量：未匹配数量扣除未释放的退货"""
        return to_decimal(line.unmatched_quantity) - FifoMatcher.unreleased_returns(line.id)

    @staticmethod
    @transactional
    def unmatch(match_id):
        """删除单条销售匹配并恢复批次"""
        match = db.session.get(LotMatch, match_id)
        if match is None:
            raise NotFound(f"匹配记录不存在: {match_id}")
        if match.match_type not in (LotMatch.TYPE_FIFO, LotMatch.TYPE_MANUAL):
            raise ValidationError("退货产生的匹配只能通过删除退货明细撤销")
        line = db.session.get(TradeLine, match.trade_line_id)
        LockService.lock_products([line.product_id])
        lot = LockService.lock_lot(match.lot_id)
        LotService.restore(lot, match.matched_quantity)
        db.session.delete(match)
        db.session.flush()
        FifoMatcher.refresh_line(line)
        return line

    @staticmethod
    def refresh_line(line):
        """根据匹配记录重算明细的已匹配数量/成本/状态"""
        qty, cost = db.session.query(
            func.coalesce(func.sum(LotMatch.matched_quantity), 0),
            func.coalesce(func.sum(LotMatch.matched_quantity * LotMatch.unit_cost), 0)
        ).filter(LotMatch.trade_line_id == line.id).one()
        matched = abs(to_decimal(qty))
        line.matched_quantity = quantize(matched)
        line.matched_cost = quantize(cost)
        demand = abs(to_decimal(line.quantity))
        if matched <= 0:
            line.matching_status = TradeLine.MATCH_PENDING
        elif matched < demand:
            line.matching_status = TradeLine.MATCH_PARTIAL
        else:
            line.matching_status = TradeLine.MATCH_MATCHED
