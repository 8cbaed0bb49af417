from flask import request, jsonify
from agrotrade.blueprints.settlement import settlement_bp
from agrotrade.blueprints.settlement.forms import CloseForm
from agrotrade.exceptions import ValidationError
from agrotrade.services.settlement_service import SettlementService
from agrotrade.utils.validators import to_date, ensure_valid


@settlement_bp.route('/close', methods=['POST'])
def close():
    form = ensure_valid(CloseForm())
    closing = SettlementService.close(form.period_start.data, form.period_end.data,
                                      form.actual_cash_balance.data, form.note.data)
    return jsonify({
        'success': True,
        'data': closing.to_dict(),
        'warnings': [w.to_dict() for w in closing.warnings]
    }), 201


@settlement_bp.route('/closings/<int:closing_id>', methods=['DELETE'])
def delete_closing(closing_id):
    SettlementService.delete_closing(closing_id)
    return jsonify({'success': True})


@settlement_bp.route('/history')
def history():
    return jsonify({'success': True, 'data': [c.to_dict() for c in SettlementService.history()]})


@settlement_bp.route('/summary')
def summary():
    start = to_date(request.args.get('start'), 'start')
    end = to_date(request.args.get('end'), 'end')
    if not start or not end:
        raise ValidationError("必须指定 start 和 end")
    data = {k: str(v) for k, v in SettlementService.summary(start, end).items()}
    return jsonify({'success': True, 'data': data})
