"""Tests for ShippingTracker: shipment creation and the delivery timeline."""

from datetime import datetime, timedelta
import re

import pytest

from app.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.extensions import db
from app.models import Address, OrderStatus, ShippingStatus


@pytest.fixture
def parties(factory):
    seller = factory.seller()
    customer = factory.customer()
    product = factory.product(seller, price_minor=2500, stock=10)
    return customer, seller, product


class TestCreateForOrder:
    def test_processing_order_moves_to_packing(
            self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        shipping = services.shipping.create_for_order(
            order.id, seller_id=seller.id, carrier_name='J&T Express',
            rider_name='Juan Dela Cruz')

        assert shipping.status == ShippingStatus.PACKING
        assert shipping.order.status == OrderStatus.PACKING
        assert re.match(r'^CC\d{8}[A-Z0-9]{6}$', shipping.tracking_number)
        assert [h.status for h in shipping.histories] == [
            ShippingStatus.PACKING]
        assert shipping.assigned_at is not None
        assert shipping.recipient_name == 'Maria Santos'
        assert 'Quezon City' in shipping.delivery_address

    def test_address_is_copied_not_linked(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        shipping = services.shipping.create_for_order(order.id)

        address = Address.query.filter_by(user_id=customer.id).one()
        address.detail_address = '99 Elsewhere Ave.'
        db.session.commit()
        db.session.expire_all()
        assert '12 Mapagmahal St.' in shipping.delivery_address

    def test_one_shipment_per_order(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        services.shipping.create_for_order(order.id)
        with pytest.raises(InvalidStateError):
            services.shipping.create_for_order(order.id)

    def test_unpaid_order_cannot_ship(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.order(customer, seller, product)
        with pytest.raises(InvalidStateError):
            services.shipping.create_for_order(order.id)

    def test_needs_a_delivery_address(self, services, factory, parties):
        _, seller, product = parties
        homeless = factory.customer(with_address=False)
        order = factory.processing_order(homeless, seller, product)
        with pytest.raises(ValidationError):
            services.shipping.create_for_order(order.id)
        db.session.expire_all()
        assert order.status == OrderStatus.PROCESSING

    def test_other_sellers_order_is_hidden(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        with pytest.raises(NotFoundError):
            services.shipping.create_for_order(
                order.id, seller_id=factory.seller().id)

    def test_supplied_tracking_number_must_be_unique(
            self, services, factory, parties):
        customer, seller, product = parties
        first = factory.processing_order(customer, seller, product)
        second = factory.processing_order(customer, seller, product)
        services.shipping.create_for_order(
            first.id, tracking_number='ccx123')
        with pytest.raises(ValidationError):
            services.shipping.create_for_order(
                second.id, tracking_number='CCX123')


class TestRecordEvent:
    def test_full_timeline(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        shipping = services.shipping.create_for_order(
            order.id, tracking_number='CCX123')
        t0 = shipping.histories[0].timestamp
        t1 = t0 + timedelta(hours=3)
        t2 = t1 + timedelta(days=1)

        services.shipping.record_event(
            shipping.id, 'SHIPPED', location='Manila Hub', occurred_at=t1)
        services.shipping.record_event(
            shipping.id, 'DELIVERED', occurred_at=t2)

        db.session.expire_all()
        assert [h.status for h in shipping.histories] == [
            ShippingStatus.PACKING,
            ShippingStatus.SHIPPED,
            ShippingStatus.DELIVERED,
        ]
        stamps = [h.timestamp for h in shipping.histories]
        assert stamps == sorted(stamps)
        assert shipping.shipped_at == t1
        assert shipping.delivered_at == t2
        assert shipping.order.status == OrderStatus.DELIVERED
        assert shipping.order.delivered_at == t2

    def test_same_status_events_are_appended(
            self, services, factory, parties):
        customer, seller, product = parties
        order = factory.shipped_order(customer, seller, product)
        shipping = order.shipping
        shipped_at = shipping.shipped_at

        services.shipping.record_event(
            shipping.id, ShippingStatus.SHIPPED,
            description='Arrived at sorting center', location='Pasig')

        db.session.expire_all()
        assert len(shipping.histories) == 3
        assert shipping.histories[-1].description == (
            'Arrived at sorting center')
        assert shipping.shipped_at == shipped_at
        assert shipping.order.status == OrderStatus.SHIPPED

    def test_default_description(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.shipped_order(customer, seller, product)
        assert order.shipping.histories[-1].description == (
            'Package has been picked up by the carrier')

    def test_cannot_move_backward(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.shipped_order(customer, seller, product)
        with pytest.raises(InvalidTransitionError):
            services.shipping.record_event(
                order.shipping.id, ShippingStatus.PACKING)

    def test_cannot_skip_shipped(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        shipping = services.shipping.create_for_order(order.id)
        with pytest.raises(InvalidTransitionError):
            services.shipping.record_event(
                shipping.id, ShippingStatus.DELIVERED)

    def test_rejects_time_travel(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        shipping = services.shipping.create_for_order(order.id)
        earlier = shipping.histories[0].timestamp - timedelta(minutes=5)
        with pytest.raises(ValidationError):
            services.shipping.record_event(
                shipping.id, ShippingStatus.SHIPPED, occurred_at=earlier)
        db.session.expire_all()
        assert len(shipping.histories) == 1
        assert shipping.order.status == OrderStatus.PACKING


class TestCustomerConfirmation:
    def test_customer_confirms_receipt(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.shipped_order(customer, seller, product)
        services.shipping.confirm_delivery(order.id, customer.id)
        services.shipping.confirm_delivery(order.id, customer.id)

        db.session.expire_all()
        assert order.status == OrderStatus.DELIVERED
        assert len(order.shipping.histories) == 3

    def test_other_customer_cannot_confirm(
            self, services, factory, parties):
        customer, seller, product = parties
        order = factory.shipped_order(customer, seller, product)
        with pytest.raises(NotFoundError):
            services.shipping.confirm_delivery(
                order.id, factory.customer().id)

    def test_not_yet_shipped(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.processing_order(customer, seller, product)
        with pytest.raises(InvalidTransitionError):
            services.shipping.confirm_delivery(order.id, customer.id)


class TestPromoteOverdue:
    def test_promotes_after_grace(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.shipped_order(customer, seller, product)
        now = datetime.utcnow()

        grace = timedelta(days=3)
        assert services.shipping.promote_overdue(
            grace, now=now + timedelta(days=1)) == 0
        assert services.shipping.promote_overdue(
            grace, now=now + timedelta(days=4)) == 1

        db.session.expire_all()
        assert order.status == OrderStatus.DELIVERED
        assert order.settlement is not None


class TestPublicTracking:
    def test_summary_hides_recipient(self, services, factory, parties):
        customer, seller, product = parties
        order = factory.shipped_order(
            customer, seller, product, tracking_number='CCX123')

        summary = services.shipping.track_by_number(' ccx123 ')
        assert summary['status'] == 'SHIPPED'
        assert summary['order']['order_number'] == order.order_number
        assert [h['status'] for h in summary['history']] == [
            'PACKING', 'SHIPPED']
        flat = repr(summary)
        assert 'Maria Santos' not in flat
        assert '09171234567' not in flat
        assert 'Mapagmahal' not in flat

    def test_unknown_number(self, services):
        with pytest.raises(NotFoundError):
            services.shipping.track_by_number('CC00000000NOPE00')
