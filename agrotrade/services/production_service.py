"""生产加工 (分拣/重新包装) 服务"""
from datetime import date, datetime
from flask import current_app
from agrotrade.extensions import db
from agrotrade.exceptions import ValidationError, NotFound
from agrotrade.models.stock import InventoryLot
from agrotrade.models.trade import TradeDocument, TradeLine
from agrotrade.models.transfer import ProductionJob
from agrotrade.services.line_processor import TradeLineProcessor
from agrotrade.services.locking import LockService
from agrotrade.services.lot_service import LotService
from agrotrade.services.trade_service import TradeService
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize, ZERO


class ProductionService:

    @staticmethod
    def get_job(job_id):
        job = db.session.get(ProductionJob, job_id)
        if job is None:
            raise NotFound(f"加工作业不存在: {job_id}")
        return job

    @staticmethod
    @transactional
    def produce(inputs, outputs, additional_cost=0, memo=None, job_date=None, warehouse_id=None):
        """
        执行加工作业
        :param inputs: [{'lot_id': 1, 'quantity': 10}] 指定批次，或 [{'product_id': 1, 'quantity': 10}] 先进先出
        :param outputs: [{'product_id': 2, 'quantity': 8, 'total_weight': 40}]
        产出单价 = (投入匹配成本 + 附加成本) / 产出总量
        """
        if not inputs or not outputs:
            raise ValidationError("加工作业必须同时包含投入和产出")
        additional_cost = to_decimal(additional_cost, 'additional_cost')
        if additional_cost < 0:
            raise ValidationError("附加成本不能为负")

        resolved = []
        for item in inputs:
            quantity = to_decimal(item.get('quantity'), 'quantity')
            if quantity <= 0:
                raise ValidationError("投入数量必须大于0")
            lot_id = item.get('lot_id')
            if lot_id:
                product_id = LotService.get(lot_id).product_id
            elif item.get('product_id'):
                product_id = item['product_id']
            else:
                raise ValidationError("投入必须指定 lot_id 或 product_id")
            resolved.append((product_id, lot_id, quantity))

        total_output = ZERO
        for item in outputs:
            quantity = to_decimal(item.get('quantity'), 'quantity')
            if quantity <= 0 or not item.get('product_id'):
                raise ValidationError("产出必须指定产品且数量大于0")
            total_output += quantity

        LockService.lock_products([p for p, _, _ in resolved] + [item['product_id'] for item in outputs])
        job_date = job_date or date.today()
        doc = TradeService.create_document(TradeDocument.TYPE_PRODUCTION, trade_date=job_date,
                                           warehouse_id=warehouse_id, remark=memo)

        input_cost = ZERO
        for product_id, lot_id, quantity in resolved:
            line = TradeService.add_line(doc, product_id, quantity, direction=TradeLine.DIRECTION_OUT,
                                         source_lot_id=lot_id, notes=memo)
            line.unit_price = quantize(to_decimal(line.matched_cost) / quantity)
            input_cost += to_decimal(line.matched_cost)

        unit_cost = quantize((input_cost + additional_cost) / total_output)
        for item in outputs:
            TradeService.add_line(
                doc, item['product_id'], item['quantity'], unit_price=unit_cost,
                direction=TradeLine.DIRECTION_IN, total_weight=item.get('total_weight'),
                warehouse_id=item.get('warehouse_id'), sender=item.get('sender'),
                origin=item.get('origin'), notes=memo
            )

        job = ProductionJob(
            document_id=doc.id,
            job_date=job_date,
            input_cost=quantize(input_cost),
            additional_cost=quantize(additional_cost),
            output_unit_cost=unit_cost,
            memo=memo
        )
        db.session.add(job)
        db.session.flush()
        current_app.logger.info(
            f"加工作业 #{job.id} ({doc.trade_no}): 投入成本 {input_cost}, 附加 {additional_cost}, 产出单价 {unit_cost}")
        return job

    @staticmethod
    @transactional
    def cancel_job(job_id):
        """撤销加工：先冲回产出 (产出批次已被消耗则锁定)，再恢复投入批次"""
        job = ProductionService.get_job(job_id)
        if job.status == ProductionJob.STATUS_CANCELLED:
            return job
        doc = job.document
        LockService.lock_products([line.product_id for line in doc.lines])

        outputs = [l for l in doc.lines if l.direction == TradeLine.DIRECTION_IN]
        inputs = [l for l in doc.lines if l.direction == TradeLine.DIRECTION_OUT]
        for line in outputs + inputs:
            TradeLineProcessor.reverse(line)
        for line in outputs + inputs:
            doc.lines.remove(line)
        db.session.flush()

        doc.status = TradeDocument.STATUS_CANCELLED
        job.status = ProductionJob.STATUS_CANCELLED
        job.cancelled_at = datetime.utcnow()
        current_app.logger.info(f"加工作业 #{job.id} 已撤销")
        return job

    @staticmethod
    def output_lots(job):
        line_ids = [l.id for l in job.document.lines if l.direction == TradeLine.DIRECTION_IN]
        if not line_ids:
            return []
        return InventoryLot.query.filter(InventoryLot.trade_line_id.in_(line_ids)) \
            .order_by(InventoryLot.id.asc()).all()
