"""Order lifecycle.

    pending_payment -> processing -> packing -> shipped -> delivered
    pending_payment | processing -> cancelled
    pending_payment -> payment_failed
    delivered -> returned            (after-sale approval only)

Every transition is a no-op when the order already sits in the target
state. Moving along any other edge raises ``InvalidTransitionError``.
"""
from app.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.extensions import db
from app.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    TransactionStatus,
    User,
    UserRole,
)
from app.services.audit_service import log_audit
from app.services.outbox_service import PAYMENT_REFUND
from app.services.unit_of_work import transactional
from datetime import datetime
import logging
import secrets
import string

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING_PAYMENT: {
        OrderStatus.PROCESSING,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {OrderStatus.PACKING, OrderStatus.CANCELLED},
    OrderStatus.PACKING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
}

# Targets reachable through advance(); the rest have dedicated operations.
ADVANCE_TARGETS = (
    OrderStatus.PACKING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

CANCELLABLE_STATUSES = (OrderStatus.PENDING_PAYMENT, OrderStatus.PROCESSING)

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def parse_enum(enum_cls, value, field):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().upper()
        if key in enum_cls.__members__:
            return enum_cls[key]
    raise ValidationError(
        f'Invalid {field}',
        allowed=[member.value for member in enum_cls])


class OrderLedger:

    def __init__(self, commission, ledger, outbox):
        self.commission = commission
        self.ledger = ledger
        self.outbox = outbox

    # -- reads -----------------------------------------------------------

    def get(self, order_id) -> Order:
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError('Order not found', order_id=order_id)
        return order

    def lock(self, order_id) -> Order:
        order = (
            Order.query
            .filter_by(id=order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if order is None:
            raise NotFoundError('Order not found', order_id=order_id)
        return order

    # -- creation --------------------------------------------------------

    @transactional
    def create(self, items, customer_id, seller_id,
               payment_method=PaymentMethod.COD):
        method = parse_enum(PaymentMethod, payment_method, 'payment method')
        quantities = self._normalize_items(items)

        customer = db.session.get(User, customer_id)
        if customer is None or customer.role != UserRole.CUSTOMER:
            raise NotFoundError('Customer not found', customer_id=customer_id)
        seller = db.session.get(User, seller_id)
        if seller is None or seller.role != UserRole.SELLER:
            raise NotFoundError('Seller not found', seller_id=seller_id)

        products = {
            p.id: p
            for p in Product.query.filter(
                Product.id.in_(list(quantities))
            ).order_by(Product.id).with_for_update().populate_existing()
        }

        order_items = []
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is None or product.seller_id != seller_id:
                raise ValidationError(
                    'Product is not sold by this seller',
                    product_id=product_id)
            if not product.is_published:
                raise ValidationError(
                    f'Product {product.title} is not available',
                    product_id=product_id)
            if product.stock <= 0 or product.stock < quantity:
                raise ValidationError(
                    f'Product {product.title} has insufficient stock',
                    product_id=product_id)

            product.stock -= quantity
            order_items.append(OrderItem(
                product_id=product.id,
                product_title=product.title,
                unit_price_minor=product.price_minor,
                quantity=quantity,
                subtotal_minor=product.price_minor * quantity,
            ))

        total = sum(item.subtotal_minor for item in order_items)
        if total <= 0:
            raise ValidationError('Order total must be positive')

        order = Order(
            order_number=self._new_order_number(),
            customer_id=customer_id,
            seller_id=seller_id,
            total_amount=total,
            status=OrderStatus.PENDING_PAYMENT,
            payment_status=PaymentStatus.PENDING,
            payment_method=method,
            items=order_items,
        )
        db.session.add(order)
        db.session.flush()

        log_audit(
            actor_id=customer_id,
            actor_role=UserRole.CUSTOMER.value,
            action='ORDER_CREATE',
            target_type='ORDER',
            target_id=order.id,
            payload={
                'order_number': order.order_number,
                'seller_id': seller_id,
                'total_amount': total,
                'payment_method': method.value,
                'items': [
                    {'product_id': i.product_id, 'quantity': i.quantity}
                    for i in order_items
                ],
            },
        )
        return order

    # -- payment ---------------------------------------------------------

    @transactional
    def confirm_payment(self, order_id):
        """pending_payment -> processing.

        Online orders need a PAID payment status first; cash-on-delivery
        orders pass straight through and settle at delivery.
        """
        order = self.lock(order_id)
        if order.status == OrderStatus.PROCESSING:
            return order
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise InvalidTransitionError(
                'Order', order.status, OrderStatus.PROCESSING,
                order_id=order.id)

        if (
            not order.payment_method.is_cash_on_delivery
            and order.payment_status != PaymentStatus.PAID
        ):
            raise InvalidStateError(
                'Payment has not been confirmed for this order',
                order_id=order.id,
                payment_status=order.payment_status.value)

        self._transition(order, OrderStatus.PROCESSING)
        if order.payment_status == PaymentStatus.PAID:
            self._settle(order)

        log_audit(
            action='ORDER_PAYMENT_CONFIRMED',
            target_type='ORDER',
            target_id=order.id,
            payload={
                'payment_method': order.payment_method.value,
                'payment_status': order.payment_status.value,
            },
        )
        return order

    @transactional
    def record_payment_result(self, order_id, payment_status):
        """Apply a status report from the payment service."""
        reported = parse_enum(PaymentStatus, payment_status, 'payment status')
        if reported == PaymentStatus.PENDING:
            raise ValidationError('Payment result must be PAID or FAILED')

        order = self.lock(order_id)
        if order.payment_method.is_cash_on_delivery:
            raise InvalidStateError(
                'Cash-on-delivery orders do not take payment callbacks',
                order_id=order.id)

        if reported == PaymentStatus.FAILED:
            return self._apply_payment_failure(order)
        return self._apply_payment_success(order)

    def _apply_payment_success(self, order):
        if order.payment_status != PaymentStatus.PAID:
            order.payment_status = PaymentStatus.PAID
            order.paid_at = datetime.utcnow()
            log_audit(
                action='PAYMENT_SUCCESS',
                target_type='ORDER',
                target_id=order.id,
                payload={'amount': order.total_amount},
            )

        if order.status == OrderStatus.PENDING_PAYMENT:
            return self.confirm_payment(order.id)
        if order.status == OrderStatus.CANCELLED:
            # Money arrived for an order the customer already cancelled.
            self._enqueue_refund(order, reason='PAID_AFTER_CANCEL')
        elif order.status == OrderStatus.PAYMENT_FAILED:
            # A late success for an attempt already reported as failed.
            self._enqueue_refund(order, reason='PAID_AFTER_FAILURE')
        return order

    def _apply_payment_failure(self, order):
        if order.payment_status == PaymentStatus.PAID:
            raise InvalidStateError(
                'Payment already reported as paid',
                order_id=order.id)
        if order.payment_status == PaymentStatus.FAILED:
            return order

        order.payment_status = PaymentStatus.FAILED
        if order.status == OrderStatus.PENDING_PAYMENT:
            self._transition(order, OrderStatus.PAYMENT_FAILED)
            self.restore_stock(order)
        log_audit(
            action='PAYMENT_FAILED',
            target_type='ORDER',
            target_id=order.id,
            payload={'order_status': order.status.value},
        )
        return order

    # -- fulfillment -----------------------------------------------------

    @transactional
    def advance(self, order_id, target, actor_id=None, actor_role='SYSTEM'):
        target = parse_enum(OrderStatus, target, 'order status')
        order = self.lock(order_id)
        if order.status == target:
            return order
        if (
            target not in ADVANCE_TARGETS
            or target not in ORDER_TRANSITIONS.get(order.status, set())
        ):
            raise InvalidTransitionError(
                'Order', order.status, target, order_id=order.id)

        if target == OrderStatus.SHIPPED:
            shipping = order.shipping
            if shipping is None or shipping.shipped_at is None:
                raise InvalidStateError(
                    'Order cannot be marked shipped before its shipment '
                    'is picked up',
                    order_id=order.id)
        elif target == OrderStatus.DELIVERED:
            shipping = order.shipping
            if shipping is None or shipping.delivered_at is None:
                raise InvalidStateError(
                    'Delivery must be recorded on the shipment first',
                    order_id=order.id)

        self._transition(order, target)

        if target == OrderStatus.DELIVERED:
            order.delivered_at = order.shipping.delivered_at
            if order.payment_method.is_cash_on_delivery:
                # Cash is collected at the door.
                order.payment_status = PaymentStatus.PAID
                order.paid_at = order.delivered_at
                self._settle(order)

        log_audit(
            actor_id=actor_id,
            actor_role=actor_role,
            action=f'ORDER_{target.value}',
            target_type='ORDER',
            target_id=order.id,
        )
        return order

    @transactional
    def cancel(self, order_id, actor_id=None, actor_role='SYSTEM',
               reason=None):
        order = self.lock(order_id)
        if order.status == OrderStatus.CANCELLED:
            return order
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                'Order', order.status, OrderStatus.CANCELLED,
                order_id=order.id,
                hint='Orders past processing go through after-sales')

        status_before = order.status
        self._transition(order, OrderStatus.CANCELLED)
        order.cancelled_at = datetime.utcnow()
        self.restore_stock(order)

        settlement = order.settlement
        if (
            settlement is not None
            and settlement.status == TransactionStatus.SUCCEEDED
        ):
            self.ledger.reverse_transaction(
                settlement, memo=f'Order {order.order_number} cancelled')
        if order.payment_status == PaymentStatus.PAID:
            self._enqueue_refund(order, reason='ORDER_CANCELLED')

        log_audit(
            actor_id=actor_id,
            actor_role=actor_role,
            action='ORDER_CANCEL',
            target_type='ORDER',
            target_id=order.id,
            payload={
                'status_before': status_before.value,
                'reason': reason,
                'refund_queued': order.payment_status == PaymentStatus.PAID,
            },
        )
        return order

    @transactional
    def mark_returned(self, order_id):
        order = self.lock(order_id)
        if order.status == OrderStatus.RETURNED:
            return order
        self._transition(order, OrderStatus.RETURNED)
        order.returned_at = datetime.utcnow()
        return order

    def restore_stock(self, order):
        product_ids = [item.product_id for item in order.items]
        products = {
            p.id: p
            for p in Product.query.filter(
                Product.id.in_(product_ids)
            ).order_by(Product.id).with_for_update().populate_existing()
        }
        for item in order.items:
            product = products.get(item.product_id)
            if product is not None:
                product.stock += item.quantity

    # -- helpers ---------------------------------------------------------

    def _transition(self, order, target):
        allowed = ORDER_TRANSITIONS.get(order.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                'Order', order.status, target, order_id=order.id)
        logger.info(
            "Order %s %s -> %s",
            order.order_number,
            order.status.value,
            target.value,
        )
        order.status = target

    def _settle(self, order):
        split = self.commission.compute_split(order.total_amount)
        return self.ledger.record_transaction(order, split)

    def _enqueue_refund(self, order, reason):
        return self.outbox.enqueue(
            PAYMENT_REFUND,
            'ORDER',
            order.id,
            {
                'order_id': order.id,
                'order_number': order.order_number,
                'amount': order.total_amount,
                'payment_method': order.payment_method.value,
                'reason': reason,
            },
        )

    @staticmethod
    def _normalize_items(items):
        if not items:
            raise ValidationError('Order must contain at least one item')
        quantities = {}
        for raw in items:
            if isinstance(raw, dict):
                product_id = raw.get('product_id')
                quantity = raw.get('quantity', 1)
            else:
                try:
                    product_id, quantity = raw
                except (TypeError, ValueError):
                    raise ValidationError('Malformed order item')
            if (
                isinstance(product_id, bool)
                or not isinstance(product_id, int)
                or isinstance(quantity, bool)
                or not isinstance(quantity, int)
            ):
                raise ValidationError(
                    'Order items need integer product_id and quantity')
            if quantity <= 0:
                raise ValidationError(
                    'Quantity must be positive', product_id=product_id)
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        return quantities

    @staticmethod
    def _new_order_number():
        today = datetime.utcnow().strftime('%Y%m%d')
        while True:
            suffix = ''.join(
                secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
            candidate = f'ORD-{today}-{suffix}'
            exists = Order.query.filter_by(order_number=candidate).first()
            if exists is None:
                return candidate
