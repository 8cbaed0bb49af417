import uuid
from datetime import date
from flask import current_app
from agrotrade.extensions import db
from agrotrade.exceptions import ValidationError, NotFound
from agrotrade.models.trade import TradeDocument, TradeLine
from agrotrade.models.transfer import ProductionJob
from agrotrade.services.line_processor import TradeLineProcessor, LineSnapshot
from agrotrade.services.locking import LockService
from agrotrade.services.reference import ReferenceData
from agrotrade.utils.decorators import transactional
from agrotrade.utils.validators import to_decimal, quantize

TRADE_NO_PREFIX = {
    TradeDocument.TYPE_PURCHASE: 'P',
    TradeDocument.TYPE_SALE: 'S',
    TradeDocument.TYPE_PRODUCTION: 'M',
}

LINE_FIELDS = ('product_id', 'quantity', 'unit_price', 'total_weight', 'weight_unit', 'warehouse_id',
               'parent_line_id', 'direction', 'source_lot_id', 'sender', 'origin', 'notes')

ID_FIELDS = ('product_id', 'warehouse_id', 'parent_line_id', 'source_lot_id')


def _to_id(value, field):
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} 必须是整数: {value!r}")


class TradeService:
    """交易单据 (采购/销售/生产) 与明细维护，明细变动同步调用明细处理器"""

    @staticmethod
    def generate_trade_no(trade_type, trade_date=None):
        """单号格式 P-YYYYMMDD-XXXX"""
        date_str = (trade_date or date.today()).strftime('%Y%m%d')
        random_str = uuid.uuid4().hex[:4].upper()
        return f"{TRADE_NO_PREFIX[trade_type]}-{date_str}-{random_str}"

    @staticmethod
    def get_document(document_id):
        doc = db.session.get(TradeDocument, document_id)
        if doc is None:
            raise NotFound(f"单据不存在: {document_id}")
        return doc

    @staticmethod
    def get_line(line_id):
        line = db.session.get(TradeLine, line_id)
        if line is None:
            raise NotFound(f"明细不存在: {line_id}")
        return line

    @staticmethod
    @transactional
    def create_document(trade_type, trade_date=None, partner_id=None, warehouse_id=None,
                        remark=None, lines=None):
        """
        创建单据及明细
        :param lines: [{'product_id': 1, 'quantity': 10, 'unit_price': 5, ...}, ...]
        """
        if trade_type not in TRADE_NO_PREFIX:
            raise ValidationError(f"未知单据类型: {trade_type}")
        if warehouse_id is not None:
            ReferenceData.get_warehouse(warehouse_id)
        trade_date = trade_date or date.today()

        doc = TradeDocument(
            trade_no=TradeService.generate_trade_no(trade_type, trade_date),
            trade_type=trade_type,
            trade_date=trade_date,
            partner_id=partner_id,
            warehouse_id=warehouse_id,
            remark=remark
        )
        db.session.add(doc)
        db.session.flush()

        lines = lines or []
        for item in lines:
            unknown = set(item) - set(LINE_FIELDS)
            if unknown:
                raise ValidationError(f"明细包含未知字段: {', '.join(sorted(unknown))}")
            if not item.get('product_id') or item.get('quantity') is None:
                raise ValidationError("明细必须包含 product_id 和 quantity")
        LockService.lock_products([_to_id(item['product_id'], 'product_id') for item in lines])
        for item in lines:
            TradeService.add_line(doc, **item)
        current_app.logger.info(f"单据创建 {doc.trade_no}: {len(lines)} 条明细")
        return doc

    @staticmethod
    def _validate_line(doc, line):
        ReferenceData.get_product(line.product_id)
        if line.warehouse_id is not None:
            ReferenceData.get_warehouse(line.warehouse_id)
        quantity = to_decimal(line.quantity, 'quantity')
        if quantity == 0:
            raise ValidationError("明细数量不能为0")
        if to_decimal(line.unit_price, 'unit_price') < 0:
            raise ValidationError("单价不能为负")
        if line.total_weight is not None and to_decimal(line.total_weight, 'total_weight') < 0:
            raise ValidationError("总重不能为负")

        if doc.trade_type == TradeDocument.TYPE_PRODUCTION:
            if quantity < 0:
                raise ValidationError("生产明细数量必须为正，用 direction 区分投入/产出")
            if line.direction not in (TradeLine.DIRECTION_IN, TradeLine.DIRECTION_OUT):
                raise ValidationError("生产明细必须指定 direction (IN/OUT)")
        else:
            if line.direction is not None:
                raise ValidationError("只有生产明细可以指定 direction")
            if quantity < 0 and not line.parent_line_id:
                raise ValidationError("退货明细必须引用原明细")
            if quantity > 0 and line.parent_line_id:
                raise ValidationError("引用原明细的退货数量必须为负")

    @staticmethod
    @transactional
    def add_line(document, product_id, quantity, unit_price=0, total_weight=None, weight_unit='kg',
                 warehouse_id=None, parent_line_id=None, direction=None, source_lot_id=None,
                 sender=None, origin=None, notes=None):
        """新增明细并立即生效"""
        if isinstance(document, int):
            document = TradeService.get_document(document)
        if document.status != TradeDocument.STATUS_ACTIVE:
            raise ValidationError(f"单据 {document.trade_no} 已作废")
        if parent_line_id and not to_decimal(unit_price, 'unit_price'):
            # 退货未填单价时沿用原明细单价
            parent = db.session.get(TradeLine, _to_id(parent_line_id, 'parent_line_id'))
            if parent is not None:
                unit_price = parent.unit_price

        line = TradeLine(
            seq_no=len(document.lines) + 1,
            product_id=_to_id(product_id, 'product_id'),
            quantity=quantize(to_decimal(quantity, 'quantity')),
            unit_price=quantize(to_decimal(unit_price, 'unit_price')),
            total_weight=None if total_weight is None else quantize(to_decimal(total_weight, 'total_weight')),
            weight_unit=weight_unit,
            warehouse_id=_to_id(warehouse_id, 'warehouse_id'),
            parent_line_id=_to_id(parent_line_id, 'parent_line_id'),
            direction=direction,
            source_lot_id=_to_id(source_lot_id, 'source_lot_id'),
            sender=sender,
            origin=origin,
            notes=notes
        )
        TradeService._validate_line(document, line)
        document.lines.append(line)
        db.session.flush()
        TradeLineProcessor.apply(line)
        return line

    @staticmethod
    @transactional
    def update_line(line_id, **changes):
        """修改明细；数量/产品/单价/重量/仓库不变时只保存备注类字段"""
        line = TradeService.get_line(line_id)
        if line.document.status != TradeDocument.STATUS_ACTIVE:
            raise ValidationError(f"单据 {line.document.trade_no} 已作废")
        unknown = set(changes) - set(LINE_FIELDS)
        if unknown:
            raise ValidationError(f"不支持修改的字段: {', '.join(sorted(unknown))}")

        old = LineSnapshot.from_line(line)
        for key, value in changes.items():
            if key in ('quantity', 'unit_price'):
                value = quantize(to_decimal(value, key))
            elif key == 'total_weight' and value is not None:
                value = quantize(to_decimal(value, key))
            elif key in ID_FIELDS:
                value = _to_id(value, key)
            setattr(line, key, value)
        TradeService._validate_line(line.document, line)
        db.session.flush()
        TradeLineProcessor.amend(old, line)
        return line

    @staticmethod
    @transactional
    def delete_line(line_id):
        """冲回并删除明细"""
        line = TradeService.get_line(line_id)
        doc = line.document
        TradeLineProcessor.reverse(line)
        doc.lines.remove(line)
        db.session.flush()
        current_app.logger.info(f"明细 #{line_id} 已删除 ({doc.trade_no})")

    @staticmethod
    @transactional
    def delete_document(document_id):
        """
        作废单据：按明细倒序冲回并删除全部明细，单据头保留为 CANCELLED
        生产单据须通过 ProductionService.cancel_job 撤销。
        """
        doc = TradeService.get_document(document_id)
        if doc.status == TradeDocument.STATUS_CANCELLED:
            return doc
        if doc.trade_type == TradeDocument.TYPE_PRODUCTION and ProductionJob.query.filter_by(
                document_id=doc.id, status=ProductionJob.STATUS_ACTIVE).count():
            raise ValidationError("生产单据请通过撤销加工作业处理")

        LockService.lock_products([line.product_id for line in doc.lines])
        for line in sorted(doc.lines, key=lambda l: (l.seq_no, l.id), reverse=True):
            TradeLineProcessor.reverse(line)
            doc.lines.remove(line)
            db.session.flush()
        doc.status = TradeDocument.STATUS_CANCELLED
        current_app.logger.info(f"单据 {doc.trade_no} 已作废")
        return doc
