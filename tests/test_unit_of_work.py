"""Tests for atomic units of work and optimistic-lock retries."""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from app.extensions import db
from app.models import SellerBalance
from app.services.unit_of_work import atomic, on_commit, transactional


@pytest.fixture
def seller(factory):
    return factory.seller()


def _bump_from_other_session(app, seller_id, amount):
    """Commit a concurrent change to the seller's balance row."""
    with app.app_context():
        try:
            row = SellerBalance.query.filter_by(seller_id=seller_id).one()
            row.pending_balance += amount
            db.session.commit()
        finally:
            db.session.remove()


def _load_balance(seller_id):
    return (
        SellerBalance.query
        .filter_by(seller_id=seller_id)
        .populate_existing()
        .one()
    )


class TestTransactional:
    def test_stale_write_is_retried(self, app, services, seller):
        services.ledger.credit(seller.id, 100)
        attempts = []

        @transactional
        def add_one():
            attempts.append(1)
            balance = _load_balance(seller.id)
            if len(attempts) == 1:
                _bump_from_other_session(app, seller.id, 5)
            balance.pending_balance += 1
            return balance

        balance = add_one()
        assert len(attempts) == 2
        db.session.expire_all()
        assert balance.pending_balance == 106

    def test_gives_up_after_configured_attempts(self, app, services, seller):
        app.config['STALE_RETRY_ATTEMPTS'] = 2
        services.ledger.credit(seller.id, 100)
        attempts = []

        @transactional
        def always_loses():
            attempts.append(1)
            balance = _load_balance(seller.id)
            _bump_from_other_session(app, seller.id, 5)
            balance.pending_balance += 1

        with pytest.raises(StaleDataError):
            always_loses()
        assert len(attempts) == 2
        db.session.expire_all()
        assert _load_balance(seller.id).pending_balance == 110

    def test_nested_call_joins_the_outer_unit(self, services, seller):
        with pytest.raises(RuntimeError):
            with atomic():
                services.ledger.credit(seller.id, 100)
                raise RuntimeError('boom')
        assert services.ledger.get_balance(seller.id).total == 0


class TestOnCommit:
    def test_hooks_wait_for_the_outermost_commit(self, ctx):
        ran = []
        with atomic():
            with atomic():
                on_commit(lambda: ran.append('hook'))
            assert ran == []
        assert ran == ['hook']

    def test_hooks_are_dropped_on_rollback(self, ctx):
        ran = []
        with pytest.raises(ValueError):
            with atomic():
                on_commit(lambda: ran.append('hook'))
                raise ValueError('boom')
        assert ran == []
