from flask import Blueprint, jsonify
from flask_login import login_required, current_user
from app.middleware import role_required, rate_limited
from app.services.fulfillment import get_services
from app.services.shipping_service import RIDER_FIELDS
from app.utils import (
    history_to_dict,
    json_body,
    parse_datetime,
    shipping_to_dict,
)
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('shipping', __name__)


@bp.route('/api/seller/orders/<int:order_id>/shipping', methods=['POST'])
@login_required
@role_required('SELLER')
def create_shipping(order_id):
    data = json_body()
    rider = {k: data.get(k) for k in RIDER_FIELDS if data.get(k)}
    shipping = get_services().shipping.create_for_order(
        order_id,
        seller_id=current_user.id,
        tracking_number=data.get('tracking_number'),
        estimated_delivery=parse_datetime(
            data.get('estimated_delivery'), 'estimated_delivery'),
        delivery_notes=data.get('delivery_notes'),
        **rider,
    )
    return jsonify({'ok': True, 'shipping': shipping_to_dict(shipping)}), 201


@bp.route('/api/seller/shippings/<int:shipping_id>/rider', methods=['POST'])
@login_required
@role_required('SELLER')
def assign_rider(shipping_id):
    data = json_body()
    rider = {k: data.get(k) for k in RIDER_FIELDS if k in data}
    shipping = get_services().shipping.assign_rider(
        shipping_id, seller_id=current_user.id, **rider)
    return jsonify({'ok': True, 'shipping': shipping_to_dict(shipping)})


@bp.route('/api/seller/shippings/<int:shipping_id>/events', methods=['POST'])
@login_required
@role_required('SELLER')
def record_shipping_event(shipping_id):
    data = json_body()
    tracker = get_services().shipping
    entry = tracker.record_event(
        shipping_id,
        data.get('status'),
        description=data.get('description'),
        location=data.get('location'),
        occurred_at=parse_datetime(data.get('timestamp'), 'timestamp'),
        seller_id=current_user.id,
    )
    shipping = tracker.get(shipping_id)
    return jsonify({
        'ok': True,
        'event': history_to_dict(entry),
        'shipping_status': shipping.status.value,
        'order_status': shipping.order.status.value,
    }), 201


@bp.route('/api/seller/tracking-numbers/new', methods=['GET'])
@login_required
@role_required('SELLER')
def new_tracking_number():
    number = get_services().shipping.generate_tracking_number()
    return jsonify({'tracking_number': number})


@bp.route('/api/public/track/<tracking_number>', methods=['GET'])
@rate_limited(
    'public-tracking',
    'TRACKING_RATE_LIMIT',
    'TRACKING_RATE_WINDOW_SECONDS')
def track(tracking_number):
    return jsonify(get_services().shipping.track_by_number(tracking_number))
