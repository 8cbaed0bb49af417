"""库存查询与一致性校验 (只读)"""
from sqlalchemy import func, or_
from agrotrade.extensions import db
from agrotrade.models.stock import Stock, InventoryLot, LotMatch, InventoryLog, InventoryAdjustment, LotAdjustment
from agrotrade.models.trade import TradeDocument, TradeLine
from agrotrade.models.transfer import StockTransfer, TransferRecord
from agrotrade.services.matching_service import FifoMatcher
from agrotrade.services.reference import ReferenceData
from agrotrade.utils.validators import to_decimal, quantize, ZERO


class InventoryQueryService:

    @staticmethod
    def stock_position(product_id, warehouse_id=None):
        """
        产品库存概况
        指定仓库时数量取该仓库批次剩余合计 (汇总库存不分仓库)
        """
        ReferenceData.get_product(product_id)
        stock = Stock.query.filter_by(product_id=product_id).first()
        lots = InventoryQueryService.available_lots(product_id, warehouse_id)
        by_warehouse = {}
        for lot in lots:
            by_warehouse[lot.warehouse_id] = by_warehouse.get(lot.warehouse_id, ZERO) + to_decimal(lot.remaining_quantity)

        lot_quantity = sum((to_decimal(l.remaining_quantity) for l in lots), ZERO)
        return {
            'product_id': product_id,
            'warehouse_id': warehouse_id,
            'quantity': lot_quantity if warehouse_id else to_decimal(stock.quantity if stock else 0),
            'weight': to_decimal(stock.weight if stock else 0),
            'lot_quantity': lot_quantity,
            'lot_value': quantize(sum((to_decimal(l.remaining_value) for l in lots), ZERO)),
            'lot_count': len(lots),
            'by_warehouse': by_warehouse,
        }

    @staticmethod
    def available_lots(product_id=None, warehouse_id=None):
        """可用批次 (先进先出顺序)"""
        query = InventoryLot.query.filter(
            InventoryLot.status == InventoryLot.STATUS_AVAILABLE,
            InventoryLot.remaining_quantity > 0
        )
        if product_id:
            query = query.filter(InventoryLot.product_id == product_id)
        if warehouse_id:
            query = query.filter(InventoryLot.warehouse_id == warehouse_id)
        return query.order_by(InventoryLot.receipt_date.asc(), InventoryLot.id.asc()).all()

    @staticmethod
    def ledger_view(start_date=None, end_date=None, product_id=None, warehouse_id=None, keyword=None):
        """
        库存流水 (按日期先后) 附带累计结余
        起始结余为开始日期之前同条件流水的合计。
        """
        def scoped(query):
            if product_id:
                query = query.filter(InventoryLog.product_id == product_id)
            if warehouse_id:
                query = query.filter(InventoryLog.warehouse_id == warehouse_id)
            return query

        opening = ZERO
        if start_date:
            opening = to_decimal(scoped(db.session.query(func.coalesce(func.sum(InventoryLog.qty_change), 0)))
                                 .filter(InventoryLog.transaction_date < start_date).scalar())

        query = scoped(InventoryLog.query)
        if start_date:
            query = query.filter(InventoryLog.transaction_date >= start_date)
        if end_date:
            query = query.filter(InventoryLog.transaction_date <= end_date)
        entries = query.order_by(InventoryLog.transaction_date.asc(), InventoryLog.id.asc()).all()

        rows = []
        balance = opening
        needle = keyword.lower() if keyword else None
        for entry in entries:
            balance += to_decimal(entry.qty_change)
            if needle:
                haystack = ' '.join(filter(None, [entry.sender, entry.origin, entry.remark,
                                                  entry.transaction_code])).lower()
                if needle not in haystack:
                    continue
            row = entry.to_dict()
            row['running_balance'] = str(quantize(balance))
            rows.append(row)
        return rows

    @staticmethod
    def _expected_aggregate(product_id):
        """汇总库存应有值 = 批次剩余 - 未匹配出库 - 未分摊的库存修正"""
        remaining = to_decimal(db.session.query(func.coalesce(func.sum(InventoryLot.remaining_quantity), 0))
                               .filter(InventoryLot.product_id == product_id,
                                       InventoryLot.status != InventoryLot.STATUS_CANCELLED).scalar())

        demand_lines = TradeLine.query.join(TradeDocument).filter(
            TradeLine.product_id == product_id,
            TradeDocument.status == TradeDocument.STATUS_ACTIVE,
            or_(
                (TradeDocument.trade_type == TradeDocument.TYPE_SALE) & (TradeLine.quantity > 0),
                (TradeDocument.trade_type == TradeDocument.TYPE_PRODUCTION)
                & (TradeLine.direction == TradeLine.DIRECTION_OUT)
            )
        ).all()
        unmatched = sum((FifoMatcher.outstanding_demand(line) for line in demand_lines), ZERO)

        unallocated = to_decimal(db.session.query(
            func.coalesce(func.sum(InventoryAdjustment.unallocated_quantity), 0)
        ).filter(InventoryAdjustment.product_id == product_id,
                 InventoryAdjustment.status == InventoryAdjustment.STATUS_ACTIVE).scalar())
        return quantize(remaining - unmatched - unallocated)

    @staticmethod
    def _expected_remaining(lot):
        """批次剩余应有值 = 原始 - 匹配 - 调出 + 调整"""
        matched = to_decimal(db.session.query(func.coalesce(func.sum(LotMatch.matched_quantity), 0))
                             .filter(LotMatch.lot_id == lot.id).scalar())
        transferred = to_decimal(db.session.query(func.coalesce(func.sum(TransferRecord.quantity), 0))
                                 .join(StockTransfer)
                                 .filter(TransferRecord.source_lot_id == lot.id,
                                         StockTransfer.status == StockTransfer.STATUS_ACTIVE).scalar())
        adjusted = to_decimal(db.session.query(func.coalesce(func.sum(LotAdjustment.quantity_change), 0))
                              .filter(LotAdjustment.lot_id == lot.id,
                                      LotAdjustment.is_cancelled.is_(False)).scalar())
        return quantize(to_decimal(lot.original_quantity) - matched - transferred + adjusted)

    @staticmethod
    def check_consistency(product_id=None):
        """
        汇总库存与批次的一致性校验
        :return: {'ok': bool, 'products': [...差异], 'lots': [...差异], 'checked': n}
        """
        if product_id:
            product_ids = [product_id]
        else:
            ids = {row[0] for row in db.session.query(Stock.product_id)}
            ids |= {row[0] for row in db.session.query(InventoryLot.product_id).distinct()}
            product_ids = sorted(ids)

        product_issues = []
        lot_issues = []
        for pid in product_ids:
            stock = Stock.query.filter_by(product_id=pid).first()
            actual = quantize(stock.quantity if stock else 0)
            expected = InventoryQueryService._expected_aggregate(pid)
            if actual != expected:
                product_issues.append({'product_id': pid, 'aggregate': str(actual),
                                       'expected': str(expected), 'difference': str(actual - expected)})

            lots = InventoryLot.query.filter(InventoryLot.product_id == pid,
                                             InventoryLot.status != InventoryLot.STATUS_CANCELLED).all()
            for lot in lots:
                remaining = quantize(lot.remaining_quantity)
                expected_remaining = InventoryQueryService._expected_remaining(lot)
                if remaining != expected_remaining or remaining < 0 or remaining > quantize(lot.original_quantity):
                    lot_issues.append({'lot_id': lot.id, 'product_id': pid, 'remaining': str(remaining),
                                       'expected': str(expected_remaining)})

        return {
            'ok': not product_issues and not lot_issues,
            'products': product_issues,
            'lots': lot_issues,
            'checked': len(product_ids),
        }

    @staticmethod
    def matching_summary():
        """销售/生产投入明细的匹配状态统计"""
        rows = db.session.query(TradeLine.matching_status, func.count(TradeLine.id)) \
            .join(TradeDocument) \
            .filter(TradeDocument.status == TradeDocument.STATUS_ACTIVE,
                    or_(
                        (TradeDocument.trade_type == TradeDocument.TYPE_SALE) & (TradeLine.quantity > 0),
                        TradeLine.direction == TradeLine.DIRECTION_OUT
                    )) \
            .group_by(TradeLine.matching_status).all()
        summary = {TradeLine.MATCH_PENDING: 0, TradeLine.MATCH_PARTIAL: 0, TradeLine.MATCH_MATCHED: 0}
        summary.update({status: count for status, count in rows})
        return summary
