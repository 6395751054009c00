"""Tests for OutboxDispatcher: queued refunds, retries and backoff."""

from datetime import datetime, timedelta

import pytest

from app.extensions import db
from app.models import OutboxAction, OutboxStatus
from app.services.outbox_service import OutboxDispatcher, PAYMENT_REFUND
from app.services.unit_of_work import atomic


class FlakyGateway:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def __call__(self, payload):
        self.calls.append(payload)
        if len(self.calls) <= self.failures:
            raise ConnectionError('gateway timeout')
        return 'REF-1'


def _queue(dispatcher, aggregate_id=1, amount=2500):
    with atomic():
        return dispatcher.enqueue(
            PAYMENT_REFUND, 'ORDER', aggregate_id,
            {'order_id': aggregate_id, 'amount': amount})


class TestEnqueue:
    def test_one_action_per_aggregate(self, ctx):
        dispatcher = OutboxDispatcher()
        first = _queue(dispatcher)
        second = _queue(dispatcher, amount=9999)
        assert first.id == second.id
        assert OutboxAction.query.count() == 1
        assert first.get_payload()['amount'] == 2500

    def test_rolled_back_with_its_unit(self, ctx):
        dispatcher = OutboxDispatcher()
        with pytest.raises(RuntimeError):
            with atomic():
                dispatcher.enqueue(PAYMENT_REFUND, 'ORDER', 1, {})
                raise RuntimeError('boom')
        assert OutboxAction.query.count() == 0


class TestDispatch:
    def test_success(self, ctx):
        gateway = FlakyGateway()
        dispatcher = OutboxDispatcher({PAYMENT_REFUND: gateway})
        action_id = _queue(dispatcher).id

        assert dispatcher.dispatch_due() == (1, 0)
        assert gateway.calls == [{'order_id': 1, 'amount': 2500}]
        action = db.session.get(OutboxAction, action_id)
        assert action.status == OutboxStatus.SENT
        assert action.attempts == 1
        assert dispatcher.dispatch_due() == (0, 0)

    def test_failure_backs_off_then_succeeds(self, ctx):
        gateway = FlakyGateway(failures=1)
        dispatcher = OutboxDispatcher(
            {PAYMENT_REFUND: gateway}, base_delay_seconds=30)
        action_id = _queue(dispatcher).id

        now = datetime.utcnow()
        assert dispatcher.dispatch_due(now=now) == (0, 1)
        action = db.session.get(OutboxAction, action_id)
        assert action.status == OutboxStatus.PENDING
        assert action.next_attempt_at == now + timedelta(seconds=30)
        assert 'gateway timeout' in action.last_error

        assert dispatcher.dispatch_due(now=now + timedelta(seconds=10)) == (
            0, 0)
        assert dispatcher.dispatch_due(now=now + timedelta(seconds=31)) == (
            1, 0)
        assert len(gateway.calls) == 2

    def test_gives_up_after_max_attempts(self, ctx):
        gateway = FlakyGateway(failures=100)
        dispatcher = OutboxDispatcher(
            {PAYMENT_REFUND: gateway}, max_attempts=3)
        action_id = _queue(dispatcher).id

        now = datetime.utcnow()
        for _ in range(3):
            dispatcher.dispatch_due(now=now)
            now += timedelta(hours=1)

        action = db.session.get(OutboxAction, action_id)
        assert action.status == OutboxStatus.FAILED
        assert action.attempts == 3
        assert dispatcher.dispatch_due(now=now) == (0, 0)

    def test_missing_handler_counts_as_failure(self, ctx):
        dispatcher = OutboxDispatcher({})
        _queue(dispatcher)
        assert dispatcher.dispatch_due() == (0, 1)

    def test_backoff_doubles(self):
        dispatcher = OutboxDispatcher(base_delay_seconds=30)
        assert [dispatcher.backoff(n).total_seconds() for n in (1, 2, 3)] == [
            30, 60, 120]

    def test_dispatch_on_commit(self, ctx):
        gateway = FlakyGateway()
        dispatcher = OutboxDispatcher(
            {PAYMENT_REFUND: gateway}, dispatch_on_commit=True)
        with atomic():
            action = dispatcher.enqueue(
                PAYMENT_REFUND, 'ORDER', 7, {'order_id': 7})
            assert gateway.calls == []
        assert gateway.calls == [{'order_id': 7}]
        db.session.expire_all()
        assert action.status == OutboxStatus.SENT
