from flask import request, jsonify
from agrotrade.blueprints.inventory import inventory_bp
from agrotrade.blueprints.inventory.forms import (
    StockAdjustmentForm, LotAdjustmentForm, LotCancelForm, ManualMatchForm, MatchPendingForm, TransferForm,
    ProductionForm
)
from agrotrade.exceptions import ValidationError
from agrotrade.services.adjustment_service import AdjustmentService
from agrotrade.services.inventory_service import InventoryQueryService
from agrotrade.services.lot_service import LotService
from agrotrade.services.matching_service import FifoMatcher
from agrotrade.services.production_service import ProductionService
from agrotrade.services.trade_service import TradeService
from agrotrade.services.transfer_service import TransferService
from agrotrade.utils.validators import to_date, ensure_valid


def _json_list(key):
    items = (request.get_json(silent=True) or {}).get(key)
    if not isinstance(items, list) or not items:
        raise ValidationError(f"{key} 必须是非空数组")
    return items


# ============== 查询 ==============

@inventory_bp.route('/positions/<int:product_id>')
def stock_position(product_id):
    data = InventoryQueryService.stock_position(product_id, request.args.get('warehouse_id', type=int))
    data['by_warehouse'] = {str(k): v for k, v in data['by_warehouse'].items()}
    return jsonify({'success': True, 'data': data})


@inventory_bp.route('/lots')
def lots():
    """可用批次 (先进先出顺序)"""
    items = InventoryQueryService.available_lots(request.args.get('product_id', type=int),
                                                 request.args.get('warehouse_id', type=int))
    return jsonify({'success': True, 'data': [lot.to_dict() for lot in items]})


@inventory_bp.route('/ledger')
def ledger():
    """库存流水，支持日期/产品/仓库/关键字筛选"""
    rows = InventoryQueryService.ledger_view(
        start_date=to_date(request.args.get('start'), 'start'),
        end_date=to_date(request.args.get('end'), 'end'),
        product_id=request.args.get('product_id', type=int),
        warehouse_id=request.args.get('warehouse_id', type=int),
        keyword=request.args.get('keyword')
    )
    return jsonify({'success': True, 'data': rows})


@inventory_bp.route('/consistency')
def consistency():
    report = InventoryQueryService.check_consistency(request.args.get('product_id', type=int))
    return jsonify({'success': report['ok'], 'data': report})


# ============== 匹配 ==============

@inventory_bp.route('/matching/summary')
def matching_summary():
    return jsonify({'success': True, 'data': InventoryQueryService.matching_summary()})


@inventory_bp.route('/matching/pending', methods=['POST'])
def match_pending():
    form = ensure_valid(MatchPendingForm())
    created = FifoMatcher.match_pending(form.product_id.data)
    return jsonify({'success': True, 'created': created})


@inventory_bp.route('/matching', methods=['POST'])
def manual_match():
    form = ensure_valid(ManualMatchForm())
    line = TradeService.get_line(form.line_id.data)
    match = FifoMatcher.match_explicit(line, form.lot_id.data, form.quantity.data)
    return jsonify({'success': True, 'data': match.to_dict()}), 201


@inventory_bp.route('/matching/<int:match_id>', methods=['DELETE'])
def unmatch(match_id):
    line = FifoMatcher.unmatch(match_id)
    return jsonify({'success': True, 'data': line.to_dict()})


# ============== 调整 ==============

@inventory_bp.route('/adjustments', methods=['POST'])
def adjust():
    form = ensure_valid(StockAdjustmentForm())
    adj = AdjustmentService.adjust(form.product_id.data, form.new_quantity.data,
                                   form.reason.data, form.adjusted_on.data)
    return jsonify({'success': True, 'data': adj.to_dict()}), 201


@inventory_bp.route('/adjustments/<int:adjustment_id>/cancel', methods=['POST'])
def cancel_adjustment(adjustment_id):
    adj = AdjustmentService.cancel_adjustment(adjustment_id)
    return jsonify({'success': True, 'data': adj.to_dict()})


@inventory_bp.route('/lots/<int:lot_id>/adjust', methods=['POST'])
def adjust_lot(lot_id):
    form = ensure_valid(LotAdjustmentForm())
    row = AdjustmentService.adjust_lot(lot_id, form.quantity_change.data, form.adjustment_type.data,
                                       form.reason.data, form.adjusted_on.data)
    return jsonify({'success': True, 'data': row.to_dict()}), 201


@inventory_bp.route('/lots/<int:lot_id>/cancel', methods=['POST'])
def cancel_lot(lot_id):
    form = ensure_valid(LotCancelForm())
    lot = LotService.cancel_lot(lot_id, form.reason.data, form.cancelled_on.data)
    return jsonify({'success': True, 'data': lot.to_dict()})


@inventory_bp.route('/audit', methods=['POST'])
def audit():
    """实盘：{"counts": {"<lot_id>": 数量}, "reason": "..."}"""
    payload = request.get_json(silent=True) or {}
    counts = payload.get('counts')
    if not isinstance(counts, dict):
        raise ValidationError("counts 必须是 {批次ID: 数量} 对象")
    rows = AdjustmentService.apply_audit(counts, payload.get('reason') or '实盘',
                                         to_date(payload.get('adjusted_on'), 'adjusted_on'))
    return jsonify({'success': True, 'data': [r.to_dict() for r in rows]})


# ============== 调拨 / 加工 ==============

@inventory_bp.route('/transfers', methods=['POST'])
def transfer():
    """单批次调拨 (表单字段) 或批量调拨 ({"items": [...]})"""
    payload = request.get_json(silent=True) or {}
    if 'items' in payload:
        batch = TransferService.create_transfer(_json_list('items'),
                                                to_date(payload.get('transfer_date'), 'transfer_date'),
                                                payload.get('notes'))
    else:
        form = ensure_valid(TransferForm())
        batch = TransferService.transfer(form.lot_id.data, form.quantity.data, form.to_warehouse_id.data,
                                         form.transfer_date.data, form.notes.data)
    data = batch.to_dict()
    data['records'] = [r.to_dict() for r in batch.records]
    return jsonify({'success': True, 'data': data}), 201


@inventory_bp.route('/transfers/<int:transfer_id>/cancel', methods=['POST'])
def cancel_transfer(transfer_id):
    batch = TransferService.cancel_transfer(transfer_id)
    return jsonify({'success': True, 'data': batch.to_dict()})


@inventory_bp.route('/production', methods=['POST'])
def produce():
    form = ensure_valid(ProductionForm())
    job = ProductionService.produce(
        inputs=_json_list('inputs'),
        outputs=_json_list('outputs'),
        additional_cost=form.additional_cost.data or 0,
        memo=form.memo.data,
        job_date=form.job_date.data,
        warehouse_id=form.warehouse_id.data
    )
    data = job.to_dict()
    data['output_lots'] = [lot.to_dict() for lot in ProductionService.output_lots(job)]
    return jsonify({'success': True, 'data': data}), 201


@inventory_bp.route('/production/<int:job_id>/cancel', methods=['POST'])
def cancel_production(job_id):
    job = ProductionService.cancel_job(job_id)
    return jsonify({'success': True, 'data': job.to_dict()})
