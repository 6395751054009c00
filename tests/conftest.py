"""Shared fixtures: an app on a throwaway SQLite file and data builders."""

import itertools

import pytest

from app import create_app
from app.config import TestConfig
from app.extensions import db
from app.middleware import limiter
from app.models import (
    Address,
    PaymentStatus,
    Product,
    ProductStatus,
    SellerProfile,
    ShippingStatus,
    User,
    UserRole,
)

_seq = itertools.count(1)


class Factory:
    """Builds committed rows and walks orders through their lifecycle."""

    def __init__(self, services):
        self.services = services

    def user(self, role, with_address=False):
        n = next(_seq)
        user = User(
            email=f'{role.value.lower()}{n}@example.com',
            name=f'{role.value.title()} {n}',
            role=role,
        )
        db.session.add(user)
        db.session.flush()
        if role == UserRole.SELLER:
            db.session.add(SellerProfile(
                user_id=user.id, shop_name=f'Shop {n}'))
        if with_address:
            db.session.add(Address(
                user_id=user.id,
                recipient_name='Maria Santos',
                phone='09171234567',
                province='Metro Manila',
                city='Quezon City',
                district='Diliman',
                detail_address='12 Mapagmahal St.',
                postal_code='1101',
                is_default=True,
            ))
        db.session.commit()
        return user

    def customer(self, with_address=True):
        return self.user(UserRole.CUSTOMER, with_address=with_address)

    def seller(self):
        return self.user(UserRole.SELLER)

    def admin(self):
        return self.user(UserRole.ADMIN)

    def product(self, seller, price_minor=1000, stock=10,
                status=ProductStatus.ACTIVE):
        product = Product(
            seller_id=seller.id,
            title=f'Product {next(_seq)}',
            price_minor=price_minor,
            stock=stock,
            status=status,
        )
        db.session.add(product)
        db.session.commit()
        return product

    def order(self, customer, seller, product, quantity=1,
              payment_method='GCASH'):
        return self.services.orders.create(
            [{'product_id': product.id, 'quantity': quantity}],
            customer_id=customer.id,
            seller_id=seller.id,
            payment_method=payment_method,
        )

    def processing_order(self, customer, seller, product, quantity=1,
                         payment_method='GCASH'):
        order = self.order(
            customer, seller, product, quantity, payment_method)
        if payment_method == 'COD':
            return self.services.orders.confirm_payment(order.id)
        return self.services.orders.record_payment_result(
            order.id, PaymentStatus.PAID)

    def shipped_order(self, customer, seller, product, quantity=1,
                      payment_method='GCASH', tracking_number=None):
        order = self.processing_order(
            customer, seller, product, quantity, payment_method)
        shipping = self.services.shipping.create_for_order(
            order.id, seller_id=seller.id, tracking_number=tracking_number)
        self.services.shipping.record_event(
            shipping.id, ShippingStatus.SHIPPED, seller_id=seller.id)
        return self.services.orders.get(order.id)

    def delivered_order(self, customer, seller, product, quantity=1,
                        payment_method='GCASH'):
        order = self.shipped_order(
            customer, seller, product, quantity, payment_method)
        self.services.shipping.record_event(
            order.shipping.id, ShippingStatus.DELIVERED, seller_id=seller.id)
        return self.services.orders.get(order.id)


@pytest.fixture
def app(tmp_path):
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'test.db'}"
        UPLOAD_FOLDER = str(tmp_path / 'uploads')

    app = create_app(_Config)
    limiter.reset()
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """Pushed app context for service-level tests."""
    with app.app_context():
        yield app
        db.session.remove()


@pytest.fixture
def services(ctx):
    return ctx.extensions['fulfillment']


@pytest.fixture
def factory(services):
    return Factory(services)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seed(app):
    """Run ``fn(factory)`` in its own app context (for HTTP tests)."""
    def run(fn):
        with app.app_context():
            try:
                return fn(Factory(app.extensions['fulfillment']))
            finally:
                db.session.remove()
    return run


@pytest.fixture
def login_as(client):
    def _login(user_id):
        with client.session_transaction() as sess:
            sess['_user_id'] = str(user_id)
            sess['_fresh'] = True
    return _login
