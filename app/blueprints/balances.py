from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from app.middleware import role_required
from app.services.fulfillment import get_services
from app.utils import parse_datetime

bp = Blueprint('balances', __name__)


def _report_range():
    start = parse_datetime(request.args.get('from'), 'from')
    end = parse_datetime(request.args.get('to'), 'to')
    return start, end


@bp.route('/api/seller/balance', methods=['GET'])
@login_required
@role_required('SELLER')
def my_balance():
    snapshot = get_services().ledger.get_balance(current_user.id)
    return jsonify(snapshot.to_dict())


@bp.route('/api/admin/sellers/<int:seller_id>/balance', methods=['GET'])
@login_required
@role_required('ADMIN')
def seller_balance(seller_id):
    ledger = get_services().ledger
    payload = ledger.get_balance(seller_id).to_dict()
    payload['reconciliation'] = ledger.reconcile(seller_id)
    return jsonify(payload)


@bp.route('/api/admin/commissions', methods=['GET'])
@login_required
@role_required('ADMIN')
def commission_report():
    start, end = _report_range()
    return jsonify(get_services().ledger.commission_report(start, end))


@bp.route('/api/admin/sellers/<int:seller_id>/earnings', methods=['GET'])
@login_required
@role_required('ADMIN')
def seller_earnings(seller_id):
    start, end = _report_range()
    earnings = get_services().ledger.seller_earnings(seller_id, start, end)
    return jsonify({
        'seller_id': seller_id,
        'from': start.isoformat() if start else None,
        'to': end.isoformat() if end else None,
        'seller_earnings': earnings,
    })
