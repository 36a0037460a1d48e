"""
Durable transaction storage.

The store is the only writer of the qr_used* and qr_invalidated* columns.
State transitions are single conditional UPDATE statements so that racing
callers cannot both observe "not yet used".
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..errors import AlreadyUsed, DuplicateId, NotFound, TransactionInvalidated
from ..models import STATUS_COMPLETED, STATUS_PENDING_SYNC, Transaction
from ..time_utils import utcnow
from .concurrency import run_with_retry

log = logging.getLogger(__name__)


class TransactionStore:
    def __init__(self, session, clock=utcnow):
        self.session = session
        self.clock = clock

    def get(self, transaction_id: str) -> Transaction:
        txn = run_with_retry(
            self.session,
            lambda: self.session.get(Transaction, transaction_id, populate_existing=True),
        )
        if txn is None:
            raise NotFound(f'transaction {transaction_id} not found')
        return txn

    def list_for_user(self, user_id: str) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
        )
        return run_with_retry(self.session, lambda: list(self.session.scalars(stmt)))

    def exists(self, transaction_id: str) -> bool:
        return run_with_retry(
            self.session, lambda: self.session.get(Transaction, transaction_id) is not None,
        )

    def build(self, dto, status: str = STATUS_PENDING_SYNC) -> Transaction:
        """New, unsaved Transaction row for `dto`."""
        now = self.clock()
        return Transaction(
            id=dto.id,
            user_id=dto.user_id,
            items=[i.to_dict() for i in dto.items],
            total=dto.total,
            status=status,
            qr_used=False,
            qr_invalidated=False,
            parent_transaction_id=dto.parent_transaction_id,
            created_at=dto.created_at or now,
            updated_at=now,
            synced_at=now,
        )

    def create(self, dto, status: str = STATUS_PENDING_SYNC) -> Transaction:
        if self.exists(dto.id):
            raise DuplicateId(dto.id)
        txn = self.build(dto, status)

        def _op():
            self.session.add(txn)
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                # lost an insert race on the primary key
                if self.session.get(Transaction, dto.id) is not None:
                    raise DuplicateId(dto.id) from exc
                raise
            return txn

        txn = run_with_retry(self.session, _op)
        log.info('transaction %s created with status %s', txn.id, status)
        return txn

    def mark_used(self, transaction_id: str, location_id: str, scanned_by, now=None) -> Transaction:
        """Redeem the QR. Exactly one concurrent caller wins; the rest get AlreadyUsed."""
        now = now or self.clock()
        stmt = (
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.qr_used.is_(False),
                Transaction.qr_invalidated.is_(False),
            )
            .values(
                qr_used=True,
                qr_used_at=now,
                qr_used_location=location_id,
                qr_used_by=scanned_by,
                status=STATUS_COMPLETED,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        def _op():
            result = self.session.execute(stmt)
            self.session.commit()
            return result.rowcount

        won = run_with_retry(self.session, _op) == 1
        txn = self.get(transaction_id)
        if won:
            return txn
        if txn.qr_used:
            raise AlreadyUsed(txn)
        raise TransactionInvalidated(txn)

    def invalidate(self, transaction_id: str, reason: str, now=None) -> Transaction:
        """Void the QR for good. Calling it again keeps the first reason and time."""
        txn, _ = self.try_invalidate(transaction_id, reason, now)
        return txn

    def stage_invalidate(self, transaction_id: str, reason: str, now=None) -> bool:
        """
        Run the invalidating UPDATE without committing, so the caller can add
        rows to the same commit. Returns False when the QR was already void.
        """
        now = now or self.clock()
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.qr_invalidated.is_(False))
            .values(
                qr_invalidated=True,
                qr_invalidated_at=now,
                qr_invalidated_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def try_invalidate(self, transaction_id: str, reason: str, now=None):
        """Like invalidate(), also reporting whether this call made the change."""

        def _op():
            changed = self.stage_invalidate(transaction_id, reason, now)
            self.session.commit()
            return changed

        changed = run_with_retry(self.session, _op)
        txn = self.get(transaction_id)
        if changed:
            log.info('transaction %s invalidated: %s', transaction_id, reason)
        return txn, changed
