"""Seller balance ledger.

``credit``, ``release`` and ``debit`` are the only code paths that change a
``SellerBalance`` row. Each one locks the row, applies the change and writes
a ``BalanceEntry`` journal line in the same unit of work, so the journal
always explains the current balance.
"""
from app.errors import (
    FulfillmentError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from app.extensions import db
from app.models import (
    BalanceEntry,
    BalanceEntryType,
    SellerBalance,
    Transaction,
    TransactionStatus,
    User,
    UserRole,
)
from app.services.audit_service import log_audit
from app.services.unit_of_work import transactional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceSnapshot:
    seller_id: int
    available: int
    pending: int

    @property
    def total(self):
        return self.available + self.pending

    def to_dict(self):
        return {
            'seller_id': self.seller_id,
            'available_balance': self.available,
            'pending_balance': self.pending,
            'total_balance': self.total,
        }


def _require_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError('Amount must be an integer in minor units')
    if amount <= 0:
        raise ValidationError('Amount must be positive', amount=amount)


class SellerBalanceLedger:

    def __init__(self, hold_period=timedelta(days=7)):
        self.hold_period = hold_period

    @classmethod
    def from_config(cls, config):
        return cls(hold_period=timedelta(days=config['SETTLEMENT_HOLD_DAYS']))

    # -- reads -----------------------------------------------------------

    def get_balance(self, seller_id) -> BalanceSnapshot:
        self._require_seller(seller_id)
        balance = SellerBalance.query.filter_by(seller_id=seller_id).first()
        if balance is None:
            return BalanceSnapshot(seller_id, 0, 0)
        return BalanceSnapshot(
            seller_id,
            balance.available_balance,
            balance.pending_balance)

    def reconcile(self, seller_id):
        """Compare the journal with the balance row for one seller."""
        snapshot = self.get_balance(seller_id)
        pending_sum, available_sum = db.session.query(
            func.coalesce(func.sum(BalanceEntry.pending_delta), 0),
            func.coalesce(func.sum(BalanceEntry.available_delta), 0),
        ).filter(BalanceEntry.seller_id == seller_id).one()

        credits = self._entry_total(seller_id, BalanceEntryType.CREDIT)
        debits = self._entry_total(seller_id, BalanceEntryType.DEBIT)

        balanced = (
            pending_sum == snapshot.pending
            and available_sum == snapshot.available
            and credits - debits == snapshot.total
        )
        if not balanced:
            logger.critical(
                "Seller balance out of sync with journal: seller=%s "
                "available=%s pending=%s journal_available=%s "
                "journal_pending=%s credits=%s debits=%s",
                seller_id,
                snapshot.available,
                snapshot.pending,
                available_sum,
                pending_sum,
                credits,
                debits,
            )
        return {
            'seller_id': seller_id,
            'balanced': balanced,
            'total_credits': credits,
            'total_debits': debits,
            'journal_available': available_sum,
            'journal_pending': pending_sum,
            'balance': snapshot.to_dict(),
        }

    # -- reports ---------------------------------------------------------

    def total_admin_fees(self, start=None, end=None):
        """Commission kept by the platform on settlements in [start, end]."""
        return self._settled_sum(Transaction.admin_fee, start, end)

    def seller_earnings(self, seller_id, start=None, end=None):
        self._require_seller(seller_id)
        return self._settled_sum(
            Transaction.seller_amount, start, end,
            Transaction.seller_id == seller_id)

    def commission_report(self, start=None, end=None):
        rows = self._settled_query(
            start, end,
            columns=(
                Transaction.seller_id,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.gross_amount), 0),
                func.coalesce(func.sum(Transaction.admin_fee), 0),
                func.coalesce(func.sum(Transaction.seller_amount), 0),
            ),
        ).group_by(Transaction.seller_id).order_by(Transaction.seller_id).all()

        sellers = [
            {
                'seller_id': seller_id,
                'transaction_count': count,
                'gross_amount': gross,
                'admin_fees': fees,
                'seller_earnings': earnings,
            }
            for seller_id, count, gross, fees, earnings in rows
        ]
        return {
            'from': start.isoformat() if start else None,
            'to': end.isoformat() if end else None,
            'transaction_count': sum(s['transaction_count'] for s in sellers),
            'gross_amount': sum(s['gross_amount'] for s in sellers),
            'admin_fees': sum(s['admin_fees'] for s in sellers),
            'seller_earnings': sum(s['seller_earnings'] for s in sellers),
            'sellers': sellers,
        }

    # -- mutations -------------------------------------------------------

    @transactional
    def credit(self, seller_id, amount, transaction=None, memo=None):
        _require_amount(amount)
        self._require_seller(seller_id)
        balance = self._locked_balance(seller_id, create=True)
        balance.pending_balance += amount
        self._journal(
            seller_id, BalanceEntryType.CREDIT, amount,
            pending_delta=amount, available_delta=0,
            transaction=transaction, memo=memo)
        return self._snapshot(balance)

    @transactional
    def release(self, seller_id, amount, transaction=None, memo=None):
        _require_amount(amount)
        balance = self._locked_balance(seller_id, create=False)
        pending = balance.pending_balance if balance else 0
        if pending < amount:
            logger.critical(
                "Release exceeds pending balance: seller=%s amount=%s "
                "pending=%s transaction=%s",
                seller_id,
                amount,
                pending,
                getattr(transaction, 'id', None),
            )
            raise InsufficientBalanceError(
                'Pending balance does not cover the release',
                seller_id=seller_id,
                amount=amount)
        balance.pending_balance -= amount
        balance.available_balance += amount
        self._journal(
            seller_id, BalanceEntryType.RELEASE, amount,
            pending_delta=-amount, available_delta=amount,
            transaction=transaction, memo=memo)
        return self._snapshot(balance)

    @transactional
    def debit(self, seller_id, amount, transaction=None, memo=None):
        _require_amount(amount)
        balance = self._locked_balance(seller_id, create=False)
        available = balance.available_balance if balance else 0
        pending = balance.pending_balance if balance else 0
        if available + pending < amount:
            logger.critical(
                "Debit exceeds seller balance: seller=%s amount=%s "
                "available=%s pending=%s transaction=%s",
                seller_id,
                amount,
                available,
                pending,
                getattr(transaction, 'id', None),
            )
            raise InsufficientBalanceError(
                'Seller balance does not cover the debit',
                seller_id=seller_id,
                amount=amount)

        from_available = min(available, amount)
        from_pending = amount - from_available
        balance.available_balance -= from_available
        balance.pending_balance -= from_pending
        self._journal(
            seller_id, BalanceEntryType.DEBIT, amount,
            pending_delta=-from_pending, available_delta=-from_available,
            transaction=transaction, memo=memo)
        return self._snapshot(balance)

    # -- settlement records ----------------------------------------------

    @transactional
    def record_transaction(self, order, split):
        """Write the order's settlement and credit the seller's pending pool.

        Returns the existing transaction when the order is already settled.
        """
        if order.settlement is not None:
            return order.settlement
        if split.gross_amount != order.total_amount:
            raise ValidationError(
                'Settlement gross amount must equal the order total',
                order_id=order.id,
                gross_amount=split.gross_amount,
                total_amount=order.total_amount)

        transaction = Transaction(
            order_id=order.id,
            seller_id=order.seller_id,
            gross_amount=split.gross_amount,
            admin_fee=split.admin_fee,
            seller_amount=split.seller_amount,
            commission_rate_bps=split.rate_bps,
            status=TransactionStatus.SUCCEEDED,
        )
        db.session.add(transaction)
        order.settlement = transaction
        db.session.flush()

        if split.seller_amount > 0:
            self.credit(
                order.seller_id,
                split.seller_amount,
                transaction=transaction,
                memo=f'Sale {order.order_number}')

        log_audit(
            action='BALANCE_SETTLEMENT_RECORDED',
            target_type='TRANSACTION',
            target_id=transaction.id,
            payload={
                'order_id': order.id,
                'seller_id': order.seller_id,
                **split.to_dict(),
            },
        )
        return transaction

    @transactional
    def reverse_transaction(self, transaction, memo=None):
        """Take back a settlement's seller amount and mark it reversed.

        An unreleased amount is released first so the debit lands on the
        funds this sale actually produced. Reversing twice is a no-op.
        """
        transaction = self._locked_transaction(transaction.id)
        if transaction.status == TransactionStatus.REVERSED:
            return transaction

        now = datetime.utcnow()
        if transaction.seller_amount > 0:
            if transaction.released_at is None:
                self.release(
                    transaction.seller_id,
                    transaction.seller_amount,
                    transaction=transaction,
                    memo='Release before reversal')
                transaction.released_at = now
            self.debit(
                transaction.seller_id,
                transaction.seller_amount,
                transaction=transaction,
                memo=memo or 'Settlement reversed')

        transaction.status = TransactionStatus.REVERSED
        transaction.reversed_at = now

        log_audit(
            action='BALANCE_SETTLEMENT_REVERSED',
            target_type='TRANSACTION',
            target_id=transaction.id,
            payload={
                'order_id': transaction.order_id,
                'seller_id': transaction.seller_id,
                'seller_amount': transaction.seller_amount,
            },
        )
        return transaction

    @transactional
    def release_transaction(self, transaction_id, now=None):
        """Move one matured settlement from pending to available."""
        transaction = self._locked_transaction(transaction_id)
        if (
            transaction.status != TransactionStatus.SUCCEEDED
            or transaction.released_at is not None
        ):
            return False
        if transaction.seller_amount > 0:
            self.release(
                transaction.seller_id,
                transaction.seller_amount,
                transaction=transaction,
                memo='Settlement hold elapsed')
        transaction.released_at = now or datetime.utcnow()
        return True

    def release_matured(self, now=None):
        """Release every settlement older than the hold period.

        Each transaction is its own unit of work so one failure does not
        hold back the rest of the batch.
        """
        now = now or datetime.utcnow()
        cutoff = now - self.hold_period
        due_ids = [
            row.id
            for row in Transaction.query.filter(
                Transaction.status == TransactionStatus.SUCCEEDED,
                Transaction.released_at.is_(None),
                Transaction.created_at <= cutoff,
            ).order_by(Transaction.id).all()
        ]

        released = 0
        for transaction_id in due_ids:
            try:
                if self.release_transaction(transaction_id, now=now):
                    released += 1
            except FulfillmentError:
                logger.exception(
                    "Could not release settlement %s", transaction_id)

        if released:
            logger.info(
                "Released %s matured settlements (cutoff=%s)",
                released,
                cutoff.isoformat(),
            )
        return released

    # -- helpers ---------------------------------------------------------

    def _require_seller(self, seller_id):
        seller = db.session.get(User, seller_id)
        if seller is None or seller.role != UserRole.SELLER:
            raise NotFoundError('Seller not found', seller_id=seller_id)
        return seller

    def _select_balance(self, seller_id):
        return (
            SellerBalance.query
            .filter_by(seller_id=seller_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def _locked_balance(self, seller_id, create):
        balance = self._select_balance(seller_id)
        if balance is None and create:
            # Concurrent first credits race to insert; the loser re-selects.
            try:
                with db.session.begin_nested():
                    db.session.add(SellerBalance(
                        seller_id=seller_id,
                        available_balance=0,
                        pending_balance=0))
            except IntegrityError:
                logger.info(
                    "Balance row for seller %s created concurrently",
                    seller_id)
            balance = self._select_balance(seller_id)
        return balance

    def _locked_transaction(self, transaction_id):
        transaction = (
            Transaction.query
            .filter_by(id=transaction_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if transaction is None:
            raise NotFoundError(
                'Transaction not found', transaction_id=transaction_id)
        return transaction

    def _journal(self, seller_id, entry_type, amount, pending_delta,
                 available_delta, transaction=None, memo=None):
        entry = BalanceEntry(
            seller_id=seller_id,
            entry_type=entry_type,
            amount=amount,
            pending_delta=pending_delta,
            available_delta=available_delta,
            transaction_id=getattr(transaction, 'id', None),
            memo=memo,
        )
        db.session.add(entry)
        logger.info(
            "Ledger %s seller=%s amount=%s pending_delta=%s "
            "available_delta=%s",
            entry_type.value,
            seller_id,
            amount,
            pending_delta,
            available_delta,
        )
        return entry

    @staticmethod
    def _settled_query(start, end, columns, *criteria):
        if start and end and start > end:
            raise ValidationError(
                'Report start must not be after its end',
                start=start.isoformat(),
                end=end.isoformat())
        query = db.session.query(*columns).filter(
            Transaction.status == TransactionStatus.SUCCEEDED, *criteria)
        if start is not None:
            query = query.filter(Transaction.created_at >= start)
        if end is not None:
            query = query.filter(Transaction.created_at <= end)
        return query

    def _settled_sum(self, column, start, end, *criteria):
        return self._settled_query(
            start, end, (func.coalesce(func.sum(column), 0),), *criteria,
        ).scalar()

    def _entry_total(self, seller_id, entry_type):
        return db.session.query(
            func.coalesce(func.sum(BalanceEntry.amount), 0)
        ).filter(
            BalanceEntry.seller_id == seller_id,
            BalanceEntry.entry_type == entry_type,
        ).scalar()

    @staticmethod
    def _snapshot(balance):
        return BalanceSnapshot(
            balance.seller_id,
            balance.available_balance,
            balance.pending_balance)
