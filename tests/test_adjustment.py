"""
Tests for inventory adjustments, lot adjustments, audits and lot cancellation
"""
import pytest
from decimal import Decimal

from agrotrade.exceptions import LineLocked, InsufficientStock, ValidationError
from agrotrade.models.stock import InventoryLot, InventoryLog, InventoryAdjustment, LotAdjustment
from agrotrade.services.adjustment_service import AdjustmentService
from agrotrade.services.inventory_service import InventoryQueryService
from agrotrade.services.lot_service import LotService
from agrotrade.services.trade_service import TradeService

from tests.helpers import D1, D2, D3, stock_of, lot_of


def assert_consistent():
    report = InventoryQueryService.check_consistency()
    assert report['ok'], report


class TestProductAdjustment:
    """产品级库存修正"""

    def test_decrease_consumes_lots_fifo(self, product, purchase):
        first = purchase(product, 5, 10, trade_date=D1)
        second = purchase(product, 5, 12, trade_date=D2)

        adj = AdjustmentService.adjust(product.id, 7, '盘亏', adjusted_on=D3)

        assert adj.before_quantity == Decimal('10')
        assert adj.delta == Decimal('-3')
        assert adj.unallocated_quantity == Decimal('0')
        assert lot_of(first).remaining_quantity == Decimal('2')
        assert lot_of(second).remaining_quantity == Decimal('5')
        rows = LotAdjustment.query.filter_by(adjustment_id=adj.id).all()
        assert [(r.adjustment_type, r.quantity_change) for r in rows] == [
            (LotAdjustment.TYPE_BULK, Decimal('-3'))]
        assert stock_of(product) == Decimal('7')

        log = InventoryLog.query.filter_by(transaction_code=f"ADJ-{adj.id}").one()
        assert log.event == InventoryLog.EVENT_ADJUSTMENT
        assert log.move_type == InventoryLog.TYPE_ADJUST
        assert log.balance_before == Decimal('10')
        assert log.balance_after == Decimal('7')
        assert_consistent()

    def test_cancel_decrease_restores_lots(self, product, purchase):
        pid = purchase(product, 5, 10)
        adj = AdjustmentService.adjust(product.id, 2, '盘亏', adjusted_on=D2)

        AdjustmentService.cancel_adjustment(adj.id)

        assert adj.status == InventoryAdjustment.STATUS_CANCELLED
        assert lot_of(pid).remaining_quantity == Decimal('5')
        assert stock_of(product) == Decimal('5')
        assert LotAdjustment.query.filter_by(adjustment_id=adj.id, is_cancelled=False).count() == 0
        assert_consistent()

        # 撤销后采购明细可以删除
        TradeService.delete_line(pid)
        assert stock_of(product) == Decimal('0')

    def test_increase_creates_adjustment_lot(self, warehouse, product, purchase):
        purchase(product, 5, 10)

        adj = AdjustmentService.adjust(product.id, 8, '盘盈', adjusted_on=D2)

        lot = InventoryLot.query.filter_by(adjustment_id=adj.id).one()
        assert lot.source_kind == InventoryLot.SOURCE_ADJUSTMENT
        assert lot.original_quantity == Decimal('3')
        assert lot.unit_cost == Decimal('10')
        assert lot.warehouse_id == warehouse.id
        assert lot.receipt_date == D2
        assert stock_of(product) == Decimal('8')
        assert_consistent()

        AdjustmentService.cancel_adjustment(adj.id)
        assert InventoryLot.query.filter_by(source_kind=InventoryLot.SOURCE_ADJUSTMENT).count() == 0
        assert stock_of(product) == Decimal('5')

    def test_cancel_consumed_increase_is_locked(self, product, purchase, sell):
        purchase(product, 5, 10, trade_date=D1)
        adj = AdjustmentService.adjust(product.id, 8, '盘盈', adjusted_on=D2)
        sell(product, 7, trade_date=D3)

        with pytest.raises(LineLocked):
            AdjustmentService.cancel_adjustment(adj.id)
        assert stock_of(product) == Decimal('1')

    @pytest.mark.parametrize('new_quantity, reason', [
        (5, '无变化'),
        (-1, '负数'),
        (3, ''),
    ])
    def test_rejected_adjustments(self, product, purchase, new_quantity, reason):
        purchase(product, 5, 10)
        with pytest.raises(ValidationError):
            AdjustmentService.adjust(product.id, new_quantity, reason)
        assert InventoryAdjustment.query.count() == 0
        assert stock_of(product) == Decimal('5')


class TestLotAdjustment:
    """批次级调整"""

    def test_discard_reduces_lot_and_aggregate(self, product, purchase):
        pid = purchase(product, 10, 100)
        lot = lot_of(pid)

        row = AdjustmentService.adjust_lot(lot.id, -2, LotAdjustment.TYPE_DISCARD, '腐烂', adjusted_on=D2)

        assert lot.remaining_quantity == Decimal('8')
        assert row.value_change == Decimal('-200')
        assert stock_of(product) == Decimal('8')
        log = InventoryLog.query.filter_by(transaction_code=f"LADJ-{row.id}").one()
        assert log.qty_change == Decimal('-2')
        assert log.weight_change == Decimal('-20')
        assert_consistent()

    def test_lot_bounds(self, product, purchase):
        lot = lot_of(purchase(product, 10, 100))
        AdjustmentService.adjust_lot(lot.id, -2, LotAdjustment.TYPE_LOSS, '损耗')

        with pytest.raises(ValidationError):
            AdjustmentService.adjust_lot(lot.id, 3, LotAdjustment.TYPE_CORRECTION, '多记')
        with pytest.raises(InsufficientStock):
            AdjustmentService.adjust_lot(lot.id, -9, LotAdjustment.TYPE_LOSS, '损耗')
        with pytest.raises(ValidationError):
            AdjustmentService.adjust_lot(lot.id, -1, LotAdjustment.TYPE_BULK, '类型错误')
        assert lot_of(lot.trade_line_id).remaining_quantity == Decimal('8')

    def test_cancel_lot_adjustment(self, product, purchase):
        pid = purchase(product, 10, 100)
        row = AdjustmentService.adjust_lot(lot_of(pid).id, -2, LotAdjustment.TYPE_DISCARD, '腐烂')

        with pytest.raises(LineLocked):
            TradeService.delete_line(pid)

        AdjustmentService.cancel_lot_adjustment(row.id)
        assert row.is_cancelled is True
        assert lot_of(pid).remaining_quantity == Decimal('10')
        assert stock_of(product) == Decimal('10')

        TradeService.delete_line(pid)
        assert LotAdjustment.query.count() == 0
        assert stock_of(product) == Decimal('0')

    def test_bulk_rows_cancel_through_adjustment(self, product, purchase):
        purchase(product, 10, 100)
        adj = AdjustmentService.adjust(product.id, 9, '盘亏')
        row = LotAdjustment.query.filter_by(adjustment_id=adj.id).one()
        with pytest.raises(ValidationError):
            AdjustmentService.cancel_lot_adjustment(row.id)

    def test_apply_audit_only_records_differences(self, product, purchase):
        first = lot_of(purchase(product, 5, 10, trade_date=D1))
        second = lot_of(purchase(product, 5, 10, trade_date=D2))

        rows = AdjustmentService.apply_audit({str(first.id): 4, second.id: 5}, adjusted_on=D3)

        assert len(rows) == 1
        assert rows[0].lot_id == first.id
        assert rows[0].adjustment_type == LotAdjustment.TYPE_AUDIT
        assert rows[0].quantity_change == Decimal('-1')
        assert stock_of(product) == Decimal('9')
        assert_consistent()


class TestLotCancel:
    """批次作废"""

    def test_cancel_lot_removes_remaining_from_aggregate(self, product, purchase):
        pid = purchase(product, 10, 100)
        lot = LotService.cancel_lot(lot_of(pid).id, '质检不合格')

        assert lot.status == InventoryLot.STATUS_CANCELLED
        assert stock_of(product) == Decimal('0')
        log = InventoryLog.query.filter_by(event=InventoryLog.EVENT_LOT_CANCEL).one()
        assert log.qty_change == Decimal('-10')
        assert_consistent()

        # 作废批次不能再调整
        with pytest.raises(ValidationError):
            AdjustmentService.adjust_lot(lot.id, -1, LotAdjustment.TYPE_LOSS, '损耗')

        TradeService.delete_line(pid)
        assert stock_of(product) == Decimal('0')

    def test_cancel_matched_lot_is_locked(self, product, purchase, sell):
        pid = purchase(product, 10, 100)
        sell(product, 1)
        with pytest.raises(LineLocked):
            LotService.cancel_lot(lot_of(pid).id, '质检不合格')
        assert stock_of(product) == Decimal('9')
