"""Tests for AfterSaleCaseManager: submissions, conflicts and decisions."""

import pytest

from app.errors import (
    ConflictError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.extensions import db
from app.models import (
    AfterSaleRequest,
    AfterSaleStatus,
    BalanceEntry,
    BalanceEntryType,
    EvidenceKind,
    OrderStatus,
    OutboxAction,
    TransactionStatus,
)
from app.services.after_sale_service import EvidenceFile

DESCRIPTION = 'The screen arrived cracked along the left edge.'

VIDEO = EvidenceFile(EvidenceKind.VIDEO, 'after_sales/1/video.mp4',
                     'video/mp4', 4 * 1024 * 1024)
PHOTO = EvidenceFile(EvidenceKind.PHOTO, 'after_sales/1/photo.jpg',
                     'image/jpeg', 200 * 1024)


@pytest.fixture
def delivered(factory):
    seller = factory.seller()
    customer = factory.customer()
    admin = factory.admin()
    product = factory.product(seller, price_minor=2500, stock=10)
    order = factory.delivered_order(customer, seller, product, quantity=2)
    return order, customer, seller, admin, product


def _open(services, order, customer, request_type='RETURN',
          evidence=(VIDEO, PHOTO), description=DESCRIPTION):
    return services.after_sales.open(
        order.id, customer.id, request_type, description,
        evidence=evidence, reason='Damaged item')


class TestOpen:
    def test_return_request(self, services, delivered):
        order, customer, seller, _, _ = delivered
        req = _open(services, order, customer)

        assert req.status == AfterSaleStatus.PENDING
        assert req.request_number.startswith('ASR-')
        assert req.seller_id == seller.id
        assert req.subject == 'Return request'
        assert sorted(e.kind.value for e in req.evidence) == [
            'PHOTO', 'VIDEO']

    def test_return_without_video_is_rejected(self, services, delivered):
        order, customer, _, _, _ = delivered
        with pytest.raises(ValidationError):
            _open(services, order, customer, evidence=[PHOTO])
        assert AfterSaleRequest.query.count() == 0

    def test_refund_without_photo_is_rejected(self, services, delivered):
        order, customer, _, _, _ = delivered
        with pytest.raises(ValidationError):
            _open(services, order, customer, 'REFUND', evidence=[VIDEO])

    def test_support_needs_no_evidence(self, services, delivered):
        order, customer, _, _, _ = delivered
        req = _open(services, order, customer, 'SUPPORT', evidence=())
        assert req.evidence == []

    def test_short_description(self, services, delivered):
        order, customer, _, _, _ = delivered
        with pytest.raises(ValidationError):
            _open(services, order, customer, description='   broken   ')

    def test_evidence_limits(self, services, delivered):
        order, customer, _, _, _ = delivered
        with pytest.raises(ValidationError):
            _open(services, order, customer, evidence=[VIDEO, VIDEO, PHOTO])
        with pytest.raises(ValidationError):
            _open(services, order, customer, evidence=[VIDEO] + [PHOTO] * 6)
        huge = EvidenceFile(EvidenceKind.VIDEO, 'v.mp4', 'video/mp4',
                            51 * 1024 * 1024)
        with pytest.raises(ValidationError):
            _open(services, order, customer, evidence=[huge, PHOTO])

    def test_unknown_type(self, services, delivered):
        order, customer, _, _, _ = delivered
        with pytest.raises(ValidationError):
            _open(services, order, customer, 'COMPLAINT')

    def test_order_must_be_delivered(self, services, factory):
        seller = factory.seller()
        customer = factory.customer()
        product = factory.product(seller)
        order = factory.shipped_order(customer, seller, product)
        with pytest.raises(InvalidStateError):
            _open(services, order, customer)

    def test_only_the_buyer_may_open(self, services, factory, delivered):
        order, _, _, _, _ = delivered
        with pytest.raises(NotFoundError):
            _open(services, order, factory.customer())

    def test_second_request_conflicts(self, services, delivered):
        order, customer, _, _, _ = delivered
        first = _open(services, order, customer)

        with pytest.raises(ConflictError) as exc_info:
            _open(services, order, customer, 'SUPPORT', evidence=())
        assert exc_info.value.existing_id == first.id
        assert exc_info.value.to_dict()['existing_id'] == first.id

        db.session.expire_all()
        assert AfterSaleRequest.query.count() == 1
        assert first.status == AfterSaleStatus.PENDING
        assert first.request_type.value == 'RETURN'


class TestDecisions:
    def test_approve_return_reverses_once(self, services, delivered):
        order, customer, seller, admin, product = delivered
        req = _open(services, order, customer)

        services.after_sales.approve(req.id, admin.id, notes='Confirmed')
        services.after_sales.approve(req.id, admin.id)

        db.session.expire_all()
        assert req.status == AfterSaleStatus.APPROVED
        assert req.decided_by == admin.id
        assert order.status == OrderStatus.RETURNED
        assert order.settlement.status == TransactionStatus.REVERSED
        assert product.stock == 10
        assert services.ledger.get_balance(seller.id).total == 0
        assert BalanceEntry.query.filter_by(
            entry_type=BalanceEntryType.DEBIT).count() == 1

        refund = OutboxAction.query.one()
        assert refund.get_payload()['amount'] == 5000
        assert refund.get_payload()['after_sale_request_id'] == req.id

    def test_approve_refund_keeps_stock(self, services, delivered):
        order, customer, _, admin, product = delivered
        req = _open(services, order, customer, 'REFUND')
        services.after_sales.approve(req.id, admin.id)

        db.session.expire_all()
        assert order.status == OrderStatus.RETURNED
        assert product.stock == 8

    def test_approve_exchange_leaves_balance(self, services, delivered):
        order, customer, seller, admin, _ = delivered
        before = services.ledger.get_balance(seller.id)
        req = _open(services, order, customer, 'EXCHANGE')
        services.after_sales.approve(req.id, admin.id)

        db.session.expire_all()
        assert order.status == OrderStatus.DELIVERED
        assert services.ledger.get_balance(seller.id) == before
        assert OutboxAction.query.count() == 0

        # An approved request still blocks a new one.
        with pytest.raises(ConflictError):
            _open(services, order, customer, 'SUPPORT', evidence=())

    def test_reject_then_resubmit(self, services, delivered):
        order, customer, _, admin, _ = delivered
        first = _open(services, order, customer)
        services.after_sales.reject(first.id, admin.id, notes='No damage')
        services.after_sales.reject(first.id, admin.id)

        second = _open(services, order, customer)
        assert second.id != first.id
        db.session.expire_all()
        assert first.status == AfterSaleStatus.REJECTED
        assert order.status == OrderStatus.DELIVERED

    def test_decisions_are_final(self, services, delivered):
        order, customer, _, admin, _ = delivered
        req = _open(services, order, customer, 'SUPPORT', evidence=())
        services.after_sales.reject(req.id, admin.id)
        with pytest.raises(InvalidStateError):
            services.after_sales.approve(req.id, admin.id)

        other = _open(services, order, customer, 'SUPPORT', evidence=())
        services.after_sales.approve(other.id, admin.id)
        with pytest.raises(InvalidStateError):
            services.after_sales.reject(other.id, admin.id)

    def test_failed_debit_rolls_back_approval(
            self, services, delivered, monkeypatch):
        order, customer, seller, admin, product = delivered
        req = _open(services, order, customer)
        before = services.ledger.get_balance(seller.id)

        def short_balance(seller_id, amount, transaction=None, memo=None):
            raise InsufficientBalanceError(
                'Seller balance does not cover the debit',
                seller_id=seller_id, amount=amount)

        monkeypatch.setattr(services.ledger, 'debit', short_balance)
        with pytest.raises(InsufficientBalanceError):
            services.after_sales.approve(req.id, admin.id)

        db.session.expire_all()
        assert req.status == AfterSaleStatus.PENDING
        assert req.decided_by is None
        assert order.status == OrderStatus.DELIVERED
        assert order.settlement.status == TransactionStatus.SUCCEEDED
        assert order.settlement.released_at is None
        assert product.stock == 8
        assert services.ledger.get_balance(seller.id) == before
        assert OutboxAction.query.count() == 0
        assert BalanceEntry.query.filter(
            BalanceEntry.entry_type != BalanceEntryType.CREDIT).count() == 0


class TestSellerResponse:
    def test_respond(self, services, delivered):
        order, customer, seller, _, _ = delivered
        req = _open(services, order, customer)
        req = services.after_sales.respond(
            req.id, seller.id, 'Please send the item back to us.')
        assert req.seller_response.startswith('Please send')
        assert req.responded_at is not None

    def test_response_too_short(self, services, delivered):
        order, customer, seller, _, _ = delivered
        req = _open(services, order, customer)
        with pytest.raises(ValidationError):
            services.after_sales.respond(req.id, seller.id, 'ok')

    def test_other_seller(self, services, factory, delivered):
        order, customer, _, _, _ = delivered
        req = _open(services, order, customer)
        with pytest.raises(NotFoundError):
            services.after_sales.respond(
                req.id, factory.seller().id, 'Not my order at all.')
