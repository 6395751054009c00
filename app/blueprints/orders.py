from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from app.errors import NotFoundError, ValidationError
from app.middleware import role_required
from app.models import UserRole
from app.services.fulfillment import get_services
from app.utils import json_body, order_to_dict
import hmac
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('orders', __name__)


def _visible_order(order_id):
    """Order readable by the current user, else 404."""
    order = get_services().orders.get(order_id)
    role = current_user.role
    if role == UserRole.ADMIN:
        return order
    if role == UserRole.CUSTOMER and order.customer_id == current_user.id:
        return order
    if role == UserRole.SELLER and order.seller_id == current_user.id:
        return order
    raise NotFoundError('Order not found', order_id=order_id)


@bp.route('/api/orders', methods=['POST'])
@login_required
@role_required('CUSTOMER')
def create_order():
    data = json_body()
    seller_id = data.get('seller_id')
    if not isinstance(seller_id, int) or isinstance(seller_id, bool):
        raise ValidationError('seller_id is required')

    orders = get_services().orders
    order = orders.create(
        data.get('items') or [],
        customer_id=current_user.id,
        seller_id=seller_id,
        payment_method=data.get('payment_method', 'COD'),
    )
    if order.payment_method.is_cash_on_delivery:
        # Nothing to wait for; the seller can start packing.
        order = orders.confirm_payment(order.id)

    return jsonify({'ok': True, 'order': order_to_dict(order)}), 201


@bp.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
def order_detail(order_id):
    order = _visible_order(order_id)
    return jsonify({'order': order_to_dict(order)})


@bp.route('/api/orders/<int:order_id>/cancel', methods=['POST'])
@login_required
@role_required('CUSTOMER', 'ADMIN')
def cancel_order(order_id):
    order = _visible_order(order_id)
    data = json_body()
    order = get_services().orders.cancel(
        order.id,
        actor_id=current_user.id,
        actor_role=current_user.role.value,
        reason=(data.get('reason') or '').strip() or None,
    )
    return jsonify({
        'ok': True,
        'new_status': order.status.value,
        'payment_status': order.payment_status.value,
    })


@bp.route('/api/orders/<int:order_id>/confirm-receipt', methods=['POST'])
@login_required
@role_required('CUSTOMER')
def confirm_receipt(order_id):
    order = get_services().shipping.confirm_delivery(
        order_id, current_user.id)
    return jsonify({
        'ok': True,
        'new_status': order.status.value
    })


@bp.route('/api/seller/orders/<int:order_id>/advance', methods=['POST'])
@login_required
@role_required('SELLER')
def advance_order(order_id):
    order = _visible_order(order_id)
    data = json_body()
    target = data.get('status')
    if not target:
        raise ValidationError('status is required')

    order = get_services().orders.advance(
        order.id,
        target,
        actor_id=current_user.id,
        actor_role=current_user.role.value,
    )
    return jsonify({'ok': True, 'new_status': order.status.value})


@bp.route('/api/payments/callback', methods=['POST'])
def payment_callback():
    """Status report from the payment service."""
    expected = current_app.config.get('PAYMENT_CALLBACK_TOKEN') or ''
    supplied = request.headers.get('X-Payment-Token', '')
    if not expected or not hmac.compare_digest(expected, supplied):
        logger.warning(
            "Rejected payment callback from %s", request.remote_addr)
        return jsonify({'error': 'Invalid payment token'}), 403

    data = json_body()
    order_id = data.get('order_id')
    if not isinstance(order_id, int) or isinstance(order_id, bool):
        raise ValidationError('order_id is required')

    order = get_services().orders.record_payment_result(
        order_id, data.get('status'))
    return jsonify({
        'ok': True,
        'order_status': order.status.value,
        'payment_status': order.payment_status.value,
    })
