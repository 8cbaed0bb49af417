"""期间结算服务 - 存货资产快照、成本对账、现金核对"""
from datetime import timedelta
from flask import current_app
from sqlalchemy import func
from agrotrade.extensions import db
from agrotrade.exceptions import NotFound, PeriodSequenceViolation, ReconciliationVariance
from agrotrade.models.finance import PeriodClosing
from agrotrade.models.stock import InventoryLot, LotMatch, LotAdjustment
from agrotrade.models.trade import TradeDocument, TradeLine
from agrotrade.models.transfer import ProductionJob
from agrotrade.services.locking import LockService
from agrotrade.services.reference import CashLedger
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize, ZERO

LOCK_NAME = 'settlement'

ROOT_SOURCES = (
    InventoryLot.SOURCE_PURCHASE,
    InventoryLot.SOURCE_PRODUCTION,
    InventoryLot.SOURCE_ADJUSTMENT,
)


def _sum(query):
    return quantize(query.scalar() or 0)


class SettlementService:
    """期间结算"""

    # ============== 查询 ==============

    @staticmethod
    def get(closing_id):
        closing = db.session.get(PeriodClosing, closing_id)
        if closing is None:
            raise NotFound(f"结算记录不存在: {closing_id}")
        return closing

    @staticmethod
    def last_closed():
        return PeriodClosing.query.order_by(PeriodClosing.end_date.desc(), PeriodClosing.id.desc()).first()

    @staticmethod
    def history():
        return PeriodClosing.query.order_by(PeriodClosing.end_date.desc(), PeriodClosing.id.desc()).all()

    # ============== 资产计算 ==============

    @staticmethod
    def _line_amount(trade_type, start_date, end_date):
        return _sum(db.session.query(func.sum(TradeLine.quantity * TradeLine.unit_price))
                    .join(TradeDocument, TradeLine.document_id == TradeDocument.id)
                    .filter(TradeDocument.trade_type == trade_type,
                            TradeDocument.status == TradeDocument.STATUS_ACTIVE,
                            TradeDocument.trade_date >= start_date,
                            TradeDocument.trade_date <= end_date))

    @staticmethod
    def purchase_cost(start_date, end_date):
        """期间采购成本 (含退货负数)"""
        return SettlementService._line_amount(TradeDocument.TYPE_PURCHASE, start_date, end_date)

    @staticmethod
    def sales_revenue(start_date, end_date):
        return SettlementService._line_amount(TradeDocument.TYPE_SALE, start_date, end_date)

    @staticmethod
    def cancelled_value(start_date=None, end_date=None):
        """作废批次扣减的价值 (按作废日期)"""
        query = db.session.query(func.sum(InventoryLot.cancelled_quantity * InventoryLot.unit_cost)) \
            .filter(InventoryLot.status == InventoryLot.STATUS_CANCELLED)
        if start_date is not None:
            query = query.filter(InventoryLot.cancelled_on >= start_date)
        if end_date is not None:
            query = query.filter(InventoryLot.cancelled_on <= end_date)
        return _sum(query)

    @staticmethod
    def adjustment_value(start_date, end_date):
        """期间存货调整金额 = 批次调整 + 修正生成的批次 + 加工附加成本 - 作废批次"""
        lot_adjustments = _sum(
            db.session.query(func.sum(LotAdjustment.quantity_change * LotAdjustment.unit_cost))
            .filter(LotAdjustment.is_cancelled.is_(False),
                    LotAdjustment.adjusted_on >= start_date,
                    LotAdjustment.adjusted_on <= end_date))
        adjustment_lots = _sum(
            db.session.query(func.sum(InventoryLot.original_quantity * InventoryLot.unit_cost))
            .filter(InventoryLot.source_kind == InventoryLot.SOURCE_ADJUSTMENT,
                    InventoryLot.receipt_date >= start_date,
                    InventoryLot.receipt_date <= end_date))
        production = _sum(
            db.session.query(func.sum(ProductionJob.additional_cost))
            .filter(ProductionJob.status == ProductionJob.STATUS_ACTIVE,
                    ProductionJob.job_date >= start_date,
                    ProductionJob.job_date <= end_date))
        cancelled = SettlementService.cancelled_value(start_date, end_date)
        return lot_adjustments + adjustment_lots + production - cancelled

    @staticmethod
    def inventory_value(as_of):
        """
        还原 as_of 当日的存货价值
        入库类批次按原始数量计价，减去当日及以前的匹配消耗，加减批次调整，
        再减去当日及以前作废的批次；调拨不影响价值。
        """
        received = _sum(
            db.session.query(func.sum(InventoryLot.original_quantity * InventoryLot.unit_cost))
            .filter(InventoryLot.source_kind.in_(ROOT_SOURCES),
                    InventoryLot.receipt_date <= as_of))
        consumed = _sum(
            db.session.query(func.sum(LotMatch.matched_quantity * LotMatch.unit_cost))
            .filter(LotMatch.matched_date <= as_of))
        adjusted = _sum(
            db.session.query(func.sum(LotAdjustment.quantity_change * LotAdjustment.unit_cost))
            .filter(LotAdjustment.is_cancelled.is_(False),
                    LotAdjustment.adjusted_on <= as_of))
        cancelled = SettlementService.cancelled_value(end_date=as_of)
        return received - consumed + adjusted - cancelled

    @staticmethod
    def bookkeeping_cogs(start_date, end_date):
        """销售匹配成本 (退货释放为负数)"""
        return _sum(
            db.session.query(func.sum(LotMatch.matched_quantity * LotMatch.unit_cost))
            .join(TradeLine, LotMatch.trade_line_id == TradeLine.id)
            .join(TradeDocument, TradeLine.document_id == TradeDocument.id)
            .filter(TradeDocument.trade_type == TradeDocument.TYPE_SALE,
                    LotMatch.matched_date >= start_date,
                    LotMatch.matched_date <= end_date))

    # ============== 结算 ==============

    @staticmethod
    @transactional
    def close(period_start, period_end, actual_cash_balance=None, note=None, closed_by='system'):
        """
        结算期间 [period_start, period_end]
        期间必须紧接上一次结算 (首次结算不限)；成本差异超出容差时只记录警告，结算照常完成。
        返回的 PeriodClosing 带有 warnings 列表。
        """
        if period_end < period_start:
            raise PeriodSequenceViolation(f"结算结束日 {period_end} 早于开始日 {period_start}")
        LockService.lock_named(LOCK_NAME)

        previous = SettlementService.last_closed()
        if previous is not None and period_start != previous.end_date + timedelta(days=1):
            raise PeriodSequenceViolation(
                f"结算期间必须从 {previous.end_date + timedelta(days=1)} 开始",
                payload={'last_end_date': previous.end_date.isoformat()})

        opening = quantize(previous.closing_inventory_value) if previous else quantize(ZERO)
        purchases = SettlementService.purchase_cost(period_start, period_end)
        adjustments = SettlementService.adjustment_value(period_start, period_end)
        closing_value = SettlementService.inventory_value(period_end)
        derived = quantize(opening + purchases + adjustments - closing_value)
        bookkeeping = quantize(SettlementService.bookkeeping_cogs(period_start, period_end))

        cash = CashLedger().totals(period_start, period_end)
        previous_cash = quantize(previous.actual_cash_balance) if previous else quantize(ZERO)
        expected_cash = previous_cash + cash['inflow'] - cash['outflow'] - cash['expense']
        actual_cash = expected_cash if actual_cash_balance is None \
            else quantize(to_decimal(actual_cash_balance, 'actual_cash_balance'))

        closing = PeriodClosing(
            start_date=period_start,
            end_date=period_end,
            opening_inventory_value=opening,
            period_purchase_cost=purchases,
            inventory_adjustment_value=adjustments,
            closing_inventory_value=closing_value,
            derived_cogs=derived,
            bookkeeping_cogs=bookkeeping,
            cogs_variance=derived - bookkeeping,
            cash_inflow=cash['inflow'],
            cash_outflow=cash['outflow'],
            cash_expense=cash['expense'],
            expected_cash_balance=expected_cash,
            actual_cash_balance=actual_cash,
            cash_difference=actual_cash - expected_cash,
            note=note,
            closed_by=closed_by
        )
        db.session.add(closing)
        db.session.flush()

        closing.warnings = []
        tolerance = to_decimal(current_app.config.get('RECONCILIATION_TOLERANCE', '0.01'))
        if abs(derived - bookkeeping) > tolerance:
            warning = ReconciliationVariance(derived, bookkeeping, tolerance)
            closing.warnings.append(warning)
            current_app.logger.warning(f"结算 {period_start}~{period_end} 成本差异: {warning.message}")
        current_app.logger.info(
            f"结算完成 {period_start}~{period_end}: 期末存货 {closing_value}, 推算成本 {derived}")
        return closing

    @staticmethod
    @transactional
    def delete_closing(closing_id):
        """只允许删除最近一次结算"""
        LockService.lock_named(LOCK_NAME)
        closing = SettlementService.get(closing_id)
        latest = SettlementService.last_closed()
        if latest.id != closing.id:
            raise PeriodSequenceViolation("只能删除最近一次结算",
                                          payload={'latest_id': latest.id})
        db.session.delete(closing)
        current_app.logger.info(f"结算 {closing.start_date}~{closing.end_date} 已删除")

    @staticmethod
    def summary(start_date, end_date):
        """期间损益与现金汇总 (不落库)"""
        revenue = SettlementService.sales_revenue(start_date, end_date)
        cogs = SettlementService.bookkeeping_cogs(start_date, end_date)
        cash = CashLedger().totals(start_date, end_date)
        gross_profit = revenue - cogs
        return {
            'start_date': start_date.isoformat(),
            'end_date': end_date.isoformat(),
            'revenue': revenue,
            'cogs': cogs,
            'gross_profit': gross_profit,
            'expenses': cash['expense'],
            'net_profit': gross_profit - cash['expense'],
            'purchases': SettlementService.purchase_cost(start_date, end_date),
            'cash_inflow': cash['inflow'],
            'cash_outflow': cash['outflow'],
        }
