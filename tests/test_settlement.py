"""
Tests for period settlement
"""
import pytest
from datetime import date
from decimal import Decimal

from agrotrade.exceptions import PeriodSequenceViolation, ReconciliationVariance
from agrotrade.extensions import db
from agrotrade.models.finance import CashTransaction, PeriodClosing
from agrotrade.models.stock import InventoryLot
from agrotrade.models.trade import TradeDocument
from agrotrade.services.adjustment_service import AdjustmentService
from agrotrade.services.lot_service import LotService
from agrotrade.services.production_service import ProductionService
from agrotrade.services.settlement_service import SettlementService
from agrotrade.services.trade_service import TradeService
from agrotrade.services.transfer_service import TransferService

from tests.helpers import D1, D2, D3, get_line, lot_of


@pytest.fixture
def traded(product, purchase, sell):
    """采购 10 @100，销售 8 @150"""
    purchase(product, 10, 100, trade_date=D1)
    sell(product, 8, unit_price=150, trade_date=D2)
    return product


class TestClose:
    """结算"""

    def test_first_period_figures(self, traded):
        closing = SettlementService.close(D1, D3)

        assert closing.opening_inventory_value == Decimal('0')
        assert closing.period_purchase_cost == Decimal('1000')
        assert closing.inventory_adjustment_value == Decimal('0')
        assert closing.closing_inventory_value == Decimal('200')
        assert closing.derived_cogs == Decimal('800')
        assert closing.bookkeeping_cogs == Decimal('800')
        assert closing.cogs_variance == Decimal('0')
        assert closing.warnings == []

    def test_consecutive_periods(self, traded):
        first = SettlementService.close(D1, D2)
        second = SettlementService.close(D3, D3)

        assert first.closing_inventory_value == Decimal('200')
        assert second.opening_inventory_value == Decimal('200')
        assert second.period_purchase_cost == Decimal('0')
        assert second.derived_cogs == Decimal('0')
        assert [c.id for c in SettlementService.history()] == [second.id, first.id]

    def test_closing_value_is_reconstructed_as_of_end_date(self, traded):
        # 结束日在销售之前，期末存货为全部采购
        closing = SettlementService.close(D1, D1)
        assert closing.closing_inventory_value == Decimal('1000')
        assert closing.derived_cogs == Decimal('0')

    def _return_below_cost(self, supplier, purchase_line_id):
        """退货单价低于批次成本：推算成本增加 50，匹配成本不变"""
        TradeService.create_document(
            TradeDocument.TYPE_PURCHASE, trade_date=D2, partner_id=supplier.id,
            lines=[{'product_id': get_line(purchase_line_id).product_id, 'quantity': -1,
                    'unit_price': 50, 'parent_line_id': purchase_line_id}])

    def test_variance_is_reported_without_failing(self, product, supplier, purchase):
        pid = purchase(product, 10, 100, trade_date=D1)
        self._return_below_cost(supplier, pid)

        closing = SettlementService.close(D1, D3)

        assert PeriodClosing.query.count() == 1
        assert closing.period_purchase_cost == Decimal('950')
        assert closing.closing_inventory_value == Decimal('900')
        assert closing.derived_cogs == Decimal('50')
        assert closing.bookkeeping_cogs == Decimal('0')
        assert closing.cogs_variance == Decimal('50')
        assert len(closing.warnings) == 1
        warning = closing.warnings[0]
        assert isinstance(warning, ReconciliationVariance)
        assert warning.variance == Decimal('50')
        assert warning.to_dict()['variance'] == '50.00'

    def test_variance_within_tolerance(self, app, product, supplier, purchase):
        app.config['RECONCILIATION_TOLERANCE'] = '100'
        self._return_below_cost(supplier, purchase(product, 10, 100, trade_date=D1))
        assert SettlementService.close(D1, D3).warnings == []

    def test_adjustments_and_production_costs(self, products, purchase):
        tomato, cucumber = products
        purchase(tomato, 10, 100, trade_date=D1)
        AdjustmentService.adjust(tomato.id, 8, '盘亏', adjusted_on=D2)
        ProductionService.produce(
            inputs=[{'product_id': tomato.id, 'quantity': 4}],
            outputs=[{'product_id': cucumber.id, 'quantity': 2}],
            additional_cost=60, job_date=D3)

        closing = SettlementService.close(D1, D3)

        # 盘亏 -200，加工附加成本 +60
        assert closing.inventory_adjustment_value == Decimal('-140')
        # 番茄 4 @100 + 黄瓜 2 @230
        assert closing.closing_inventory_value == Decimal('860')
        assert closing.derived_cogs == Decimal('0')
        assert closing.warnings == []


class TestCancelledLots:
    """作废批次的计价"""

    def test_cancelled_transfer_lot_leaves_closing_value(self, warehouses, product, purchase):
        _, cold = warehouses
        lot = lot_of(purchase(product, 10, 100, trade_date=D1))
        batch = TransferService.transfer(lot.id, 4, cold.id, transfer_date=D2)
        LotService.cancel_lot(batch.records[0].dest_lot_id, '冻伤', cancelled_on=D3)

        closing = SettlementService.close(D1, D3)

        live_value = sum(l.remaining_value for l in InventoryLot.query.filter(
            InventoryLot.status != InventoryLot.STATUS_CANCELLED))
        assert live_value == Decimal('600')
        assert closing.closing_inventory_value == Decimal('600')
        assert closing.inventory_adjustment_value == Decimal('-400')
        assert closing.derived_cogs == Decimal('0')
        assert closing.warnings == []

    def test_cancel_only_affects_periods_from_cancel_date(self, product, purchase):
        lot = lot_of(purchase(product, 10, 100, trade_date=D1))
        LotService.cancel_lot(lot.id, '质检不合格', cancelled_on=D3)

        first = SettlementService.close(D1, D2)
        assert first.closing_inventory_value == Decimal('1000')
        assert first.inventory_adjustment_value == Decimal('0')

        second = SettlementService.close(D3, D3)
        assert second.opening_inventory_value == Decimal('1000')
        assert second.inventory_adjustment_value == Decimal('-1000')
        assert second.closing_inventory_value == Decimal('0')
        assert second.derived_cogs == Decimal('0')
        assert second.warnings == []


class TestSequence:
    """结算期间顺序"""

    def test_end_before_start(self, app):
        with pytest.raises(PeriodSequenceViolation):
            SettlementService.close(D2, D1)

    def test_gap_after_previous_period(self, traded):
        SettlementService.close(D1, D2)
        with pytest.raises(PeriodSequenceViolation):
            SettlementService.close(date(2024, 1, 5), date(2024, 1, 6))
        with pytest.raises(PeriodSequenceViolation):
            SettlementService.close(D2, D3)
        assert PeriodClosing.query.count() == 1

    def test_only_latest_closing_can_be_deleted(self, traded):
        first = SettlementService.close(D1, D2)
        second = SettlementService.close(D3, D3)

        with pytest.raises(PeriodSequenceViolation):
            SettlementService.delete_closing(first.id)

        SettlementService.delete_closing(second.id)
        assert SettlementService.last_closed().id == first.id
        # 删除后可以重新结算同一期间
        SettlementService.close(D3, D3)
        assert PeriodClosing.query.count() == 2


class TestCash:
    """现金核对"""

    def _cash(self, transaction_type, amount, on):
        db.session.add(CashTransaction(transaction_type=transaction_type, transaction_date=on,
                                       amount=Decimal(amount)))
        db.session.commit()

    def test_expected_cash_rolls_forward(self, traded):
        self._cash(CashTransaction.TYPE_RECEIPT, '1200', D2)
        self._cash(CashTransaction.TYPE_PAYMENT, '1000', D1)
        self._cash(CashTransaction.TYPE_EXPENSE, '50', D2)

        first = SettlementService.close(D1, D2, actual_cash_balance='140')
        assert first.expected_cash_balance == Decimal('150')
        assert first.actual_cash_balance == Decimal('140')
        assert first.cash_difference == Decimal('-10')

        self._cash(CashTransaction.TYPE_RECEIPT, '60', D3)
        second = SettlementService.close(D3, D3)
        # 上期实际余额 + 本期收入
        assert second.expected_cash_balance == Decimal('200')
        assert second.actual_cash_balance == Decimal('200')
        assert second.cash_difference == Decimal('0')

    def test_summary(self, traded):
        self._cash(CashTransaction.TYPE_EXPENSE, '100', D2)
        summary = SettlementService.summary(D1, D3)

        assert summary['revenue'] == Decimal('1200')
        assert summary['cogs'] == Decimal('800')
        assert summary['gross_profit'] == Decimal('400')
        assert summary['net_profit'] == Decimal('300')
        assert summary['purchases'] == Decimal('1000')
        assert summary['start_date'] == '2024-01-01'
