"""Outbox for side effects that leave this service (payment refunds).

Actions are written in the same unit of work as the state change that
needs them and dispatched only after that unit commits. Delivery is
at-least-once: handlers must tolerate being called again for the same
action, and a failed delivery never rolls back local state.
"""
from app.extensions import db
from app.models import OutboxAction, OutboxStatus
from app.services.unit_of_work import atomic, on_commit
from datetime import datetime, timedelta
import logging

logger = logging.getLogger(__name__)

PAYMENT_REFUND = 'PAYMENT_REFUND'


def mock_refund_handler(payload):
    """Stand-in payment gateway used until a provider is wired in."""
    logger.info(
        "MOCK refund issued order_id=%s amount=%s method=%s",
        payload.get('order_id'),
        payload.get('amount'),
        payload.get('payment_method'),
    )
    return f"MOCK_REFUND_{payload.get('order_id')}"


class OutboxDispatcher:

    def __init__(self, handlers=None, max_attempts=8, base_delay_seconds=30,
                 dispatch_on_commit=False):
        self.handlers = dict(handlers or {})
        self.dispatch_on_commit = dispatch_on_commit
        self.max_attempts = max_attempts
        self.base_delay = timedelta(seconds=base_delay_seconds)

    @classmethod
    def from_config(cls, config, handlers=None):
        if handlers is None:
            handlers = {PAYMENT_REFUND: mock_refund_handler}
        return cls(
            handlers=handlers,
            max_attempts=config['OUTBOX_MAX_ATTEMPTS'],
            base_delay_seconds=config['OUTBOX_BASE_DELAY_SECONDS'],
            dispatch_on_commit=config.get('OUTBOX_DISPATCH_ON_COMMIT', False),
        )

    def enqueue(self, action_type, aggregate_type, aggregate_id, payload):
        """Add a pending action to the caller's unit of work.

        One action per (type, aggregate); enqueuing again returns the
        existing row.
        """
        existing = OutboxAction.query.filter_by(
            action_type=action_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
        ).first()
        if existing is not None:
            return existing

        action = OutboxAction(
            action_type=action_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            status=OutboxStatus.PENDING,
            attempts=0,
            next_attempt_at=datetime.utcnow(),
        )
        action.set_payload(payload)
        db.session.add(action)
        db.session.flush()
        logger.info(
            "Outbox action queued type=%s aggregate=%s:%s",
            action_type,
            aggregate_type,
            aggregate_id,
        )
        if self.dispatch_on_commit:
            action_id = action.id
            on_commit(lambda: self.dispatch_one(action_id))
        return action

    def backoff(self, attempts):
        return self.base_delay * (2 ** max(attempts - 1, 0))

    def dispatch_due(self, now=None, limit=100):
        """Deliver due actions; returns (sent, failed_attempts)."""
        now = now or datetime.utcnow()
        due_ids = [
            row.id
            for row in OutboxAction.query.filter(
                OutboxAction.status == OutboxStatus.PENDING,
                OutboxAction.next_attempt_at <= now,
            ).order_by(OutboxAction.id).limit(limit).all()
        ]
        # Release the read transaction before calling out.
        db.session.commit()

        sent = 0
        failed = 0
        for action_id in due_ids:
            if self.dispatch_one(action_id, now):
                sent += 1
            else:
                failed += 1
        return sent, failed

    def dispatch_one(self, action_id, now=None):
        now = now or datetime.utcnow()
        action = db.session.get(OutboxAction, action_id)
        if action is None or action.status != OutboxStatus.PENDING:
            return False
        action_type = action.action_type
        payload = action.get_payload()
        handler = self.handlers.get(action_type)

        error = None
        if handler is None:
            error = f'No handler registered for {action_type}'
        else:
            try:
                handler(payload)
            except Exception as exc:
                error = f'{type(exc).__name__}: {exc}'
                logger.warning(
                    "Outbox action %s (%s) failed: %s",
                    action_id,
                    action_type,
                    error,
                )

        with atomic():
            action = db.session.get(OutboxAction, action_id)
            action.attempts += 1
            if error is None:
                action.status = OutboxStatus.SENT
                action.sent_at = now
                action.last_error = None
            else:
                action.last_error = error
                if action.attempts >= self.max_attempts:
                    action.status = OutboxStatus.FAILED
                    logger.critical(
                        "Outbox action %s (%s) abandoned after %s attempts: "
                        "%s",
                        action_id,
                        action_type,
                        action.attempts,
                        error,
                    )
                else:
                    action.next_attempt_at = now + self.backoff(
                        action.attempts)
        return error is None
