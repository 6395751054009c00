from datetime import datetime, timezone
from flask import request
from app.errors import ValidationError
import logging

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value else None


def json_body():
    """Request JSON as a dict; empty bodies read as {}."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def order_to_dict(order):
    shipping = order.shipping
    return {
        'id': order.id,
        'order_number': order.order_number,
        'customer_id': order.customer_id,
        'seller_id': order.seller_id,
        'status': order.status.value,
        'payment_status': order.payment_status.value,
        'payment_method': order.payment_method.value,
        'total_amount': order.total_amount,
        'items': [
            {
                'product_id': item.product_id,
                'product_title': item.product_title,
                'unit_price_minor': item.unit_price_minor,
                'quantity': item.quantity,
                'subtotal_minor': item.subtotal_minor,
            }
            for item in order.items
        ],
        'tracking_number': shipping.tracking_number if shipping else None,
        'created_at': _iso(order.created_at),
        'paid_at': _iso(order.paid_at),
        'delivered_at': _iso(order.delivered_at),
        'cancelled_at': _iso(order.cancelled_at),
        'returned_at': _iso(order.returned_at),
    }


def shipping_to_dict(shipping):
    """Seller view of a shipment, recipient details included."""
    return {
        'id': shipping.id,
        'order_id': shipping.order_id,
        'tracking_number': shipping.tracking_number,
        'status': shipping.status.value,
        'carrier_name': shipping.carrier_name,
        'rider_name': shipping.rider_name,
        'rider_phone': shipping.rider_phone,
        'rider_email': shipping.rider_email,
        'vehicle_type': shipping.vehicle_type,
        'vehicle_number': shipping.vehicle_number,
        'recipient_name': shipping.recipient_name,
        'recipient_phone': shipping.recipient_phone,
        'delivery_address': shipping.delivery_address,
        'delivery_notes': shipping.delivery_notes,
        'estimated_delivery': _iso(shipping.estimated_delivery),
        'assigned_at': _iso(shipping.assigned_at),
        'shipped_at': _iso(shipping.shipped_at),
        'delivered_at': _iso(shipping.delivered_at),
        'history': [history_to_dict(h) for h in shipping.histories],
    }


def history_to_dict(entry):
    return {
        'id': entry.id,
        'status': entry.status.value,
        'description': entry.description,
        'location': entry.location,
        'timestamp': _iso(entry.timestamp),
    }


def after_sale_to_dict(req):
    return {
        'id': req.id,
        'request_number': req.request_number,
        'order_id': req.order_id,
        'customer_id': req.customer_id,
        'seller_id': req.seller_id,
        'request_type': req.request_type.value,
        'subject': req.subject,
        'reason': req.reason,
        'description': req.description,
        'status': req.status.value,
        'seller_response': req.seller_response,
        'responded_at': _iso(req.responded_at),
        'admin_notes': req.admin_notes,
        'decided_at': _iso(req.decided_at),
        'created_at': _iso(req.created_at),
        'evidence': [
            {
                'kind': e.kind.value,
                'file_path': e.file_path,
                'content_type': e.content_type,
                'size_bytes': e.size_bytes,
            }
            for e in req.evidence
        ],
    }


def parse_datetime(value, field):
    if value in (None, ''):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field} must be an ISO-8601 datetime')
    if parsed.tzinfo is not None:
        # Stored timestamps are naive UTC.
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
