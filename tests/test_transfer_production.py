"""
Tests for warehouse transfers and production jobs
"""
import pytest
from decimal import Decimal

from agrotrade.exceptions import LineLocked, InsufficientStock, ValidationError
from agrotrade.models.stock import InventoryLot, InventoryLog
from agrotrade.models.trade import TradeDocument, TradeLine
from agrotrade.models.transfer import StockTransfer, TransferRecord, ProductionJob
from agrotrade.services.inventory_service import InventoryQueryService
from agrotrade.services.lot_service import LotService
from agrotrade.services.production_service import ProductionService
from agrotrade.services.trade_service import TradeService
from agrotrade.services.transfer_service import TransferService

from tests.helpers import D1, D2, D3, stock_of, lot_of


def assert_consistent():
    report = InventoryQueryService.check_consistency()
    assert report['ok'], report


class TestTransfer:
    """调拨"""

    def test_transfer_moves_quantity_between_warehouses(self, warehouses, product, purchase):
        main, cold = warehouses
        pid = purchase(product, 10, 100)
        source = lot_of(pid)

        batch = TransferService.transfer(source.id, 4, cold.id, transfer_date=D2, notes='入冷库')

        assert batch.transfer_no.startswith('T-20240102-')
        assert source.remaining_quantity == Decimal('6')
        dest = InventoryLot.query.filter_by(transfer_id=batch.id).one()
        assert dest.source_kind == InventoryLot.SOURCE_TRANSFER
        assert dest.warehouse_id == cold.id
        assert dest.original_quantity == Decimal('4')
        assert dest.unit_cost == Decimal('100')
        assert dest.receipt_date == D1
        assert dest.total_weight == Decimal('40')
        # 产品汇总数量不变
        assert stock_of(product) == Decimal('10')

        logs = InventoryLog.query.filter_by(transaction_code=batch.transfer_no).order_by(InventoryLog.id).all()
        assert [(l.move_type, l.qty_change) for l in logs] == [
            (InventoryLog.TYPE_OUT, Decimal('-4')), (InventoryLog.TYPE_IN, Decimal('4'))]
        assert all(l.balance_before == l.balance_after == Decimal('10') for l in logs)

        position = InventoryQueryService.stock_position(product.id)
        assert position['by_warehouse'] == {main.id: Decimal('6'), cold.id: Decimal('4')}
        assert_consistent()

    def test_same_cost_destinations_are_merged(self, warehouses, product, purchase):
        _, cold = warehouses
        first = lot_of(purchase(product, 5, 100, trade_date=D1))
        second = lot_of(purchase(product, 5, 100, trade_date=D2))

        batch = TransferService.create_transfer(
            [{'lot_id': first.id, 'quantity': 3, 'to_warehouse_id': cold.id},
             {'lot_id': second.id, 'quantity': 4, 'to_warehouse_id': cold.id}],
            transfer_date=D3)

        dest = InventoryLot.query.filter_by(transfer_id=batch.id).one()
        assert dest.original_quantity == Decimal('7')
        assert dest.remaining_quantity == Decimal('7')
        records = TransferRecord.query.filter_by(transfer_id=batch.id).order_by(TransferRecord.id).all()
        assert [r.merged for r in records] == [False, True]
        assert_consistent()

    def test_transfer_to_same_warehouse(self, warehouse, product, purchase):
        lot = lot_of(purchase(product, 10, 100))
        with pytest.raises(ValidationError):
            TransferService.transfer(lot.id, 4, warehouse.id)
        assert StockTransfer.query.count() == 0

    def test_transfer_more_than_remaining(self, warehouses, product, purchase):
        lot = lot_of(purchase(product, 10, 100))
        with pytest.raises(InsufficientStock):
            TransferService.transfer(lot.id, 11, warehouses[1].id)
        assert lot_of(lot.trade_line_id).remaining_quantity == Decimal('10')

    def test_cancel_transfer_restores_source(self, warehouses, product, purchase):
        pid = purchase(product, 10, 100)
        batch = TransferService.transfer(lot_of(pid).id, 4, warehouses[1].id, transfer_date=D2)

        TransferService.cancel_transfer(batch.id)

        assert batch.status == StockTransfer.STATUS_CANCELLED
        assert lot_of(pid).remaining_quantity == Decimal('10')
        assert InventoryLot.query.filter_by(source_kind=InventoryLot.SOURCE_TRANSFER).count() == 0
        assert stock_of(product) == Decimal('10')
        assert_consistent()

        # 调拨撤销后原采购可以删除
        TradeService.delete_line(pid)
        assert stock_of(product) == Decimal('0')

    def test_cancel_consumed_transfer_is_locked(self, warehouses, product, purchase, sell):
        pid = purchase(product, 10, 100)
        batch = TransferService.transfer(lot_of(pid).id, 4, warehouses[1].id, transfer_date=D2)
        # 先进先出：原批次 6 之后消耗调入批次 2
        sell(product, 8, trade_date=D3)

        with pytest.raises(LineLocked):
            TransferService.cancel_transfer(batch.id)
        assert TransferService.get(batch.id).status == StockTransfer.STATUS_ACTIVE

    def test_cancel_transfer_with_cancelled_dest_is_locked(self, warehouses, product, purchase):
        pid = purchase(product, 10, 100)
        batch = TransferService.transfer(lot_of(pid).id, 4, warehouses[1].id, transfer_date=D2)
        LotService.cancel_lot(batch.records[0].dest_lot_id, '冻伤', cancelled_on=D3)

        with pytest.raises(LineLocked):
            TransferService.cancel_transfer(batch.id)
        assert lot_of(pid).remaining_quantity == Decimal('6')
        assert stock_of(product) == Decimal('6')
        assert_consistent()

    def test_purchase_with_outgoing_transfer_is_locked(self, warehouses, product, purchase):
        pid = purchase(product, 10, 100)
        TransferService.transfer(lot_of(pid).id, 4, warehouses[1].id)
        with pytest.raises(LineLocked):
            TradeService.delete_line(pid)


class TestProduction:
    """加工作业"""

    def test_output_cost_includes_inputs_and_additional_cost(self, products, purchase):
        tomato, cucumber = products
        purchase(tomato, 10, 100)

        job = ProductionService.produce(
            inputs=[{'product_id': tomato.id, 'quantity': 10}],
            outputs=[{'product_id': cucumber.id, 'quantity': 8}],
            additional_cost=200, memo='分拣包装', job_date=D2)

        assert job.input_cost == Decimal('1000')
        assert job.additional_cost == Decimal('200')
        assert job.output_unit_cost == Decimal('150')
        assert job.document.trade_type == TradeDocument.TYPE_PRODUCTION
        assert job.document.trade_no.startswith('M-20240102-')

        outputs = ProductionService.output_lots(job)
        assert len(outputs) == 1
        assert outputs[0].source_kind == InventoryLot.SOURCE_PRODUCTION
        assert outputs[0].original_quantity == Decimal('8')
        assert outputs[0].unit_cost == Decimal('150')
        assert outputs[0].receipt_date == D2

        input_line = [l for l in job.document.lines if l.direction == TradeLine.DIRECTION_OUT][0]
        assert input_line.matching_status == TradeLine.MATCH_MATCHED
        assert input_line.unit_price == Decimal('100')
        assert stock_of(tomato) == Decimal('0')
        assert stock_of(cucumber) == Decimal('8')
        assert_consistent()

    def test_explicit_input_lot(self, products, purchase):
        tomato, cucumber = products
        older = lot_of(purchase(tomato, 5, 80, trade_date=D1))
        newer = lot_of(purchase(tomato, 5, 120, trade_date=D2))

        job = ProductionService.produce(
            inputs=[{'lot_id': newer.id, 'quantity': 4}],
            outputs=[{'product_id': cucumber.id, 'quantity': 2}],
            job_date=D3)

        assert newer.remaining_quantity == Decimal('1')
        assert older.remaining_quantity == Decimal('5')
        assert job.output_unit_cost == Decimal('240')

    def test_input_beyond_stock_rolls_back(self, products, purchase):
        tomato, cucumber = products
        purchase(tomato, 5, 100)

        with pytest.raises(InsufficientStock):
            ProductionService.produce(
                inputs=[{'product_id': tomato.id, 'quantity': 6}],
                outputs=[{'product_id': cucumber.id, 'quantity': 1}])

        assert TradeDocument.query.filter_by(trade_type=TradeDocument.TYPE_PRODUCTION).count() == 0
        assert ProductionJob.query.count() == 0
        assert stock_of(tomato) == Decimal('5')
        assert stock_of(cucumber) == Decimal('0')

    def test_requires_inputs_and_outputs(self, products):
        tomato, _ = products
        with pytest.raises(ValidationError):
            ProductionService.produce(inputs=[{'product_id': tomato.id, 'quantity': 1}], outputs=[])

    def test_cancel_job_restores_inputs(self, products, purchase):
        tomato, cucumber = products
        pid = purchase(tomato, 10, 100)
        job = ProductionService.produce(
            inputs=[{'product_id': tomato.id, 'quantity': 6}],
            outputs=[{'product_id': cucumber.id, 'quantity': 3}], job_date=D2)
        document_id = job.document_id

        ProductionService.cancel_job(job.id)

        assert job.status == ProductionJob.STATUS_CANCELLED
        assert TradeService.get_document(document_id).status == TradeDocument.STATUS_CANCELLED
        assert TradeLine.query.filter_by(document_id=document_id).count() == 0
        assert lot_of(pid).remaining_quantity == Decimal('10')
        assert InventoryLot.query.filter_by(source_kind=InventoryLot.SOURCE_PRODUCTION).count() == 0
        assert stock_of(tomato) == Decimal('10')
        assert stock_of(cucumber) == Decimal('0')
        assert_consistent()

    def test_cancel_job_with_sold_output_is_locked(self, products, purchase, sell):
        tomato, cucumber = products
        purchase(tomato, 10, 100)
        job = ProductionService.produce(
            inputs=[{'product_id': tomato.id, 'quantity': 6}],
            outputs=[{'product_id': cucumber.id, 'quantity': 3}], job_date=D2)
        sid = sell(cucumber, 1, trade_date=D3)

        with pytest.raises(LineLocked):
            ProductionService.cancel_job(job.id)
        assert ProductionService.get_job(job.id).status == ProductionJob.STATUS_ACTIVE

        TradeService.delete_line(sid)
        ProductionService.cancel_job(job.id)
        assert stock_of(tomato) == Decimal('10')

    def test_production_document_cannot_be_deleted_directly(self, products, purchase):
        tomato, cucumber = products
        purchase(tomato, 10, 100)
        job = ProductionService.produce(
            inputs=[{'product_id': tomato.id, 'quantity': 6}],
            outputs=[{'product_id': cucumber.id, 'quantity': 3}])

        with pytest.raises(ValidationError):
            TradeService.delete_document(job.document_id)
