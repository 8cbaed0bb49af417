from flask import request, jsonify
from agrotrade.blueprints.trade import trade_bp
from agrotrade.blueprints.trade.forms import DocumentForm, LineForm
from agrotrade.exceptions import ValidationError
from agrotrade.services.trade_service import TradeService
from agrotrade.utils.validators import ensure_valid


def _document_dict(doc):
    data = doc.to_dict()
    data['total_amount'] = str(doc.total_amount)
    data['lines'] = [line.to_dict() for line in doc.lines]
    return data


@trade_bp.route('/documents', methods=['POST'])
def create_document():
    """创建单据：表头字段 + lines 数组"""
    form = ensure_valid(DocumentForm())
    lines = (request.get_json(silent=True) or {}).get('lines') or []
    if not isinstance(lines, list):
        raise ValidationError("lines 必须是数组")
    doc = TradeService.create_document(
        trade_type=form.trade_type.data,
        trade_date=form.trade_date.data,
        partner_id=form.partner_id.data,
        warehouse_id=form.warehouse_id.data,
        remark=form.remark.data,
        lines=lines
    )
    return jsonify({'success': True, 'data': _document_dict(doc)}), 201


@trade_bp.route('/documents/<int:document_id>')
def get_document(document_id):
    return jsonify({'success': True, 'data': _document_dict(TradeService.get_document(document_id))})


@trade_bp.route('/documents/<int:document_id>', methods=['DELETE'])
def delete_document(document_id):
    doc = TradeService.delete_document(document_id)
    return jsonify({'success': True, 'data': doc.to_dict()})


@trade_bp.route('/documents/<int:document_id>/lines', methods=['POST'])
def add_line(document_id):
    form = ensure_valid(LineForm())
    line = TradeService.add_line(document_id, **form.to_kwargs())
    return jsonify({'success': True, 'data': line.to_dict()}), 201


@trade_bp.route('/lines/<int:line_id>', methods=['PUT', 'PATCH'])
def update_line(line_id):
    changes = request.get_json(silent=True)
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("请提交需要修改的字段")
    line = TradeService.update_line(line_id, **changes)
    return jsonify({'success': True, 'data': line.to_dict()})


@trade_bp.route('/lines/<int:line_id>', methods=['DELETE'])
def delete_line(line_id):
    TradeService.delete_line(line_id)
    return jsonify({'success': True})
