"""Shipment records and their delivery timeline.

A shipment moves packing -> shipped -> delivered. Every status change
appends a ``ShippingHistory`` row; repeated events in the current status
(hub scans, delays) are appended too. Reaching shipped or delivered
advances the order.
"""
from app.errors import (
    FulfillmentError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.extensions import db
from app.models import (
    OrderStatus,
    Shipping,
    ShippingHistory,
    ShippingStatus,
)
from app.services.audit_service import log_audit
from app.services.order_service import parse_enum
from app.services.unit_of_work import transactional
from datetime import datetime
import logging
import re
import secrets
import string

logger = logging.getLogger(__name__)

STATUS_RANK = {
    ShippingStatus.PACKING: 0,
    ShippingStatus.SHIPPED: 1,
    ShippingStatus.DELIVERED: 2,
}

DEFAULT_DESCRIPTIONS = {
    ShippingStatus.PACKING: 'Package is being prepared for shipping',
    ShippingStatus.SHIPPED: 'Package has been picked up by the carrier',
    ShippingStatus.DELIVERED: 'Package has been delivered',
}

ORDER_TARGETS = {
    ShippingStatus.SHIPPED: OrderStatus.SHIPPED,
    ShippingStatus.DELIVERED: OrderStatus.DELIVERED,
}

RIDER_FIELDS = (
    'carrier_name',
    'rider_name',
    'rider_phone',
    'rider_email',
    'vehicle_type',
    'vehicle_number',
)

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits
_TRACKING_PATTERN = re.compile(r'^[A-Z0-9-]{4,40}$')


def normalize_tracking_number(value):
    if not isinstance(value, str):
        raise ValidationError('Tracking number must be a string')
    number = value.strip().upper()
    if not _TRACKING_PATTERN.match(number):
        raise ValidationError(
            'Tracking number must be 4-40 letters, digits or dashes')
    return number


class ShippingTracker:

    def __init__(self, order_ledger, prefix='CC', max_attempts=10):
        self.orders = order_ledger
        self.prefix = prefix
        self.max_attempts = max_attempts

    @classmethod
    def from_config(cls, config, order_ledger):
        return cls(
            order_ledger,
            prefix=config['TRACKING_NUMBER_PREFIX'],
            max_attempts=config['TRACKING_NUMBER_MAX_ATTEMPTS'],
        )

    # -- tracking numbers ------------------------------------------------

    def generate_tracking_number(self):
        today = datetime.utcnow().strftime('%Y%m%d')
        for _ in range(self.max_attempts):
            suffix = ''.join(
                secrets.choice(_TRACKING_ALPHABET) for _ in range(6))
            candidate = f'{self.prefix}{today}{suffix}'
            if not self._tracking_number_taken(candidate):
                return candidate
        logger.error(
            "No free tracking number after %s attempts", self.max_attempts)
        raise InvalidStateError('Could not allocate a tracking number')

    @staticmethod
    def _tracking_number_taken(number):
        return Shipping.query.filter_by(
            tracking_number=number).first() is not None

    # -- shipment lifecycle ----------------------------------------------

    @transactional
    def create_for_order(self, order_id, seller_id=None, tracking_number=None,
                         estimated_delivery=None, delivery_notes=None,
                         **rider):
        unknown = set(rider) - set(RIDER_FIELDS)
        if unknown:
            raise ValidationError(
                'Unknown shipping fields', fields=sorted(unknown))

        order = self.orders.lock(order_id)
        if seller_id is not None and order.seller_id != seller_id:
            raise NotFoundError('Order not found', order_id=order_id)
        if order.shipping is not None:
            raise InvalidStateError(
                'Order already has a shipment',
                order_id=order.id,
                tracking_number=order.shipping.tracking_number)
        if order.status not in (OrderStatus.PROCESSING, OrderStatus.PACKING):
            raise InvalidStateError(
                'Only confirmed orders can be shipped',
                order_id=order.id,
                status=order.status.value)

        if tracking_number:
            tracking_number = normalize_tracking_number(tracking_number)
            if self._tracking_number_taken(tracking_number):
                raise ValidationError(
                    'Tracking number already in use',
                    tracking_number=tracking_number)
        else:
            tracking_number = self.generate_tracking_number()

        address = order.customer.default_address()
        if address is None:
            raise ValidationError(
                'Customer has no delivery address on file',
                customer_id=order.customer_id)

        if order.status == OrderStatus.PROCESSING:
            self.orders.advance(order.id, OrderStatus.PACKING)

        now = datetime.utcnow()
        shipping = Shipping(
            order_id=order.id,
            tracking_number=tracking_number,
            recipient_name=address.recipient_name,
            recipient_phone=address.phone,
            delivery_address=address.full_address_text,
            delivery_city=address.city,
            delivery_province=address.province,
            delivery_notes=delivery_notes,
            estimated_delivery=estimated_delivery,
            status=ShippingStatus.PACKING,
            assigned_at=now if rider.get('rider_name') else None,
            created_at=now,
            **{k: v for k, v in rider.items() if v is not None},
        )
        shipping.histories.append(ShippingHistory(
            status=ShippingStatus.PACKING,
            description='Package ready for shipping',
            location='Warehouse',
            timestamp=now,
        ))
        db.session.add(shipping)
        db.session.flush()

        log_audit(
            actor_id=seller_id,
            actor_role='SELLER' if seller_id else 'SYSTEM',
            action='SHIPPING_CREATE',
            target_type='SHIPPING',
            target_id=shipping.id,
            payload={
                'order_id': order.id,
                'tracking_number': tracking_number,
            },
        )
        return shipping

    @transactional
    def assign_rider(self, shipping_id, seller_id=None, **rider):
        unknown = set(rider) - set(RIDER_FIELDS)
        if unknown:
            raise ValidationError(
                'Unknown shipping fields', fields=sorted(unknown))
        shipping = self._locked_shipping(shipping_id, seller_id)
        if shipping.status != ShippingStatus.PACKING:
            raise InvalidStateError(
                'Riders can only be assigned before pickup',
                shipping_id=shipping.id)
        for key, value in rider.items():
            setattr(shipping, key, value)
        if shipping.assigned_at is None and shipping.rider_name:
            shipping.assigned_at = datetime.utcnow()
        return shipping

    @transactional
    def record_event(self, shipping_id, status, description=None,
                     location=None, occurred_at=None, seller_id=None,
                     actor_role='SELLER'):
        """Append a timeline entry and move the shipment forward.

        ``occurred_at`` defaults to now; it may not precede the latest
        entry already on the timeline.
        """
        status = parse_enum(ShippingStatus, status, 'shipping status')
        shipping = self._locked_shipping(shipping_id, seller_id)

        current = shipping.status
        if STATUS_RANK[status] < STATUS_RANK[current]:
            raise InvalidTransitionError(
                'Shipping', current, status, shipping_id=shipping.id)
        if STATUS_RANK[status] - STATUS_RANK[current] > 1:
            raise InvalidTransitionError(
                'Shipping', current, status, shipping_id=shipping.id,
                hint='Record the intermediate status first')

        latest = max(
            (t for t in (
                shipping.histories[-1].timestamp if shipping.histories else None,
                shipping.assigned_at,
            ) if t is not None),
            default=None)
        if occurred_at is None:
            occurred_at = datetime.utcnow()
            if latest is not None and occurred_at < latest:
                occurred_at = latest
        elif latest is not None and occurred_at < latest:
            raise ValidationError(
                'Event time precedes the latest shipping event',
                latest=latest.isoformat())

        entry = ShippingHistory(
            status=status,
            description=(description or '').strip()
            or DEFAULT_DESCRIPTIONS[status],
            location=location,
            timestamp=occurred_at,
        )
        shipping.histories.append(entry)

        if status != current:
            shipping.status = status
            if status == ShippingStatus.SHIPPED and shipping.shipped_at is None:
                shipping.shipped_at = occurred_at
            if (
                status == ShippingStatus.DELIVERED
                and shipping.delivered_at is None
            ):
                shipping.delivered_at = occurred_at
        db.session.flush()

        if status in ORDER_TARGETS:
            self.orders.advance(
                shipping.order_id,
                ORDER_TARGETS[status],
                actor_id=seller_id,
                actor_role=actor_role)

        log_audit(
            actor_id=seller_id,
            actor_role=actor_role,
            action=f'SHIPPING_{status.value}',
            target_type='SHIPPING',
            target_id=shipping.id,
            payload={
                'tracking_number': shipping.tracking_number,
                'description': entry.description,
                'location': location,
            },
        )
        return entry

    @transactional
    def confirm_delivery(self, order_id, customer_id):
        """Customer confirms receipt of a shipped order."""
        order = self.orders.get(order_id)
        if order.customer_id != customer_id:
            raise NotFoundError('Order not found', order_id=order_id)
        if order.status == OrderStatus.DELIVERED:
            return order
        if order.status != OrderStatus.SHIPPED:
            raise InvalidTransitionError(
                'Order', order.status, OrderStatus.DELIVERED,
                order_id=order.id)

        shipping = order.shipping
        self.record_event(
            shipping.id,
            ShippingStatus.DELIVERED,
            description='Package delivered and confirmed by customer',
            location=shipping.delivery_city,
            actor_role='CUSTOMER')
        return order

    def promote_overdue(self, grace, now=None):
        """Mark shipments delivered once ``grace`` has passed since pickup."""
        now = now or datetime.utcnow()
        cutoff = now - grace
        due_ids = [
            row.id
            for row in Shipping.query.filter(
                Shipping.status == ShippingStatus.SHIPPED,
                Shipping.shipped_at <= cutoff,
            ).order_by(Shipping.id).all()
        ]

        promoted = 0
        for shipping_id in due_ids:
            try:
                self.record_event(
                    shipping_id,
                    ShippingStatus.DELIVERED,
                    description='Delivery confirmed automatically',
                    actor_role='SYSTEM')
            except FulfillmentError as exc:
                logger.error(
                    "Could not promote shipping %s to delivered: %s",
                    shipping_id,
                    exc.message,
                )
                continue
            promoted += 1

        if promoted:
            logger.info("Promoted %s overdue shipments to delivered", promoted)
        return promoted

    # -- reads -----------------------------------------------------------

    def get(self, shipping_id, seller_id=None):
        shipping = db.session.get(Shipping, shipping_id)
        if shipping is None or (
            seller_id is not None and shipping.order.seller_id != seller_id
        ):
            raise NotFoundError('Shipping not found', shipping_id=shipping_id)
        return shipping

    def track_by_number(self, tracking_number):
        """Public timeline for a tracking number.

        Leaves out the recipient's name, phone and street address.
        """
        number = (tracking_number or '').strip().upper()
        shipping = Shipping.query.filter_by(tracking_number=number).first()
        if shipping is None:
            raise NotFoundError(
                'Tracking number not found', tracking_number=number)
        order = shipping.order
        return {
            'tracking_number': shipping.tracking_number,
            'status': shipping.status.value,
            'carrier_name': shipping.carrier_name,
            'rider_name': shipping.rider_name,
            'vehicle_type': shipping.vehicle_type,
            'delivery_city': shipping.delivery_city,
            'delivery_province': shipping.delivery_province,
            'estimated_delivery': _iso(shipping.estimated_delivery),
            'assigned_at': _iso(shipping.assigned_at),
            'shipped_at': _iso(shipping.shipped_at),
            'delivered_at': _iso(shipping.delivered_at),
            'history': [
                {
                    'status': h.status.value,
                    'description': h.description,
                    'location': h.location,
                    'timestamp': _iso(h.timestamp),
                }
                for h in shipping.histories
            ],
            'order': {
                'order_number': order.order_number,
                'status': order.status.value,
                'total_amount': order.total_amount,
                'item_count': sum(i.quantity for i in order.items),
                'created_at': _iso(order.created_at),
            },
        }

    # -- helpers ---------------------------------------------------------

    def _locked_shipping(self, shipping_id, seller_id=None):
        shipping = self.get(shipping_id, seller_id)
        # Order row first, same as every other order-touching operation.
        self.orders.lock(shipping.order_id)
        return (
            Shipping.query
            .filter_by(id=shipping_id)
            .with_for_update()
            .populate_existing()
            .one()
        )


def _iso(value):
    return value.isoformat() if value else None
