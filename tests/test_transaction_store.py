"""
Tests for TransactionStore state transitions and the retry helper.
"""
import uuid
from datetime import datetime
from unittest import mock

import pytest
from sqlalchemy.exc import DatabaseError, IntegrityError, OperationalError

from qr_gate.errors import AlreadyUsed, DuplicateId, NotFound, StorageUnavailable, TransactionInvalidated
from qr_gate.models import STATUS_COMPLETED, STATUS_PENDING_SYNC
from qr_gate.schemas import CreateTransactionDto, TransactionItem, items_total
from qr_gate.services.concurrency import run_with_retry
from qr_gate.services.transactions import TransactionStore

LOCATION = str(uuid.uuid4())
NOW = datetime(2024, 6, 10, 12, 0, 0)


def _dto(user_id, txn_id=None):
    items = (TransactionItem(type='product', id=str(uuid.uuid4()), name='Pan', quantity=3, price=0.4),)
    return CreateTransactionDto(id=txn_id or str(uuid.uuid4()), user_id=user_id, items=items, total=items_total(items))


class TestCreate:
    def test_create_and_get(self, db_session, profile):
        store = TransactionStore(db_session)
        dto = _dto(profile.id)
        store.create(dto)

        txn = store.get(dto.id)
        assert txn.user_id == profile.id
        assert txn.status == STATUS_PENDING_SYNC
        assert txn.qr_used is False and txn.qr_invalidated is False
        assert float(txn.total) == 1.2
        assert txn.items[0]['name'] == 'Pan'
        assert txn.synced_at is not None

    def test_duplicate_id_rejected(self, db_session, profile):
        store = TransactionStore(db_session)
        dto = _dto(profile.id)
        store.create(dto)
        with pytest.raises(DuplicateId) as exc:
            store.create(dto)
        assert exc.value.transaction_id == dto.id

    def test_lookup_failure_during_create_is_storage_unavailable(self, profile):
        session = mock.Mock()
        session.get.side_effect = DatabaseError('SELECT transactions ...', {}, Exception('server closed the connection'))
        with pytest.raises(StorageUnavailable):
            TransactionStore(session).create(_dto(profile.id))
        session.rollback.assert_called_once()
        session.add.assert_not_called()

    def test_get_unknown(self, db_session):
        with pytest.raises(NotFound):
            TransactionStore(db_session).get(str(uuid.uuid4()))

    def test_list_for_user(self, db_session, profile, other_profile):
        store = TransactionStore(db_session)
        mine = [store.create(_dto(profile.id)).id for _ in range(2)]
        store.create(_dto(other_profile.id))
        assert sorted(t.id for t in store.list_for_user(profile.id)) == sorted(mine)


class TestMarkUsed:
    def test_first_scan_wins(self, db_session, transaction):
        store = TransactionStore(db_session)
        txn = store.mark_used(transaction.id, LOCATION, None, NOW)
        assert txn.qr_used is True
        assert txn.qr_used_at == NOW
        assert txn.qr_used_location == LOCATION
        assert txn.status == STATUS_COMPLETED

    def test_second_scan_raises_already_used(self, db_session, transaction):
        store = TransactionStore(db_session)
        store.mark_used(transaction.id, LOCATION, None, NOW)
        with pytest.raises(AlreadyUsed) as exc:
            store.mark_used(transaction.id, str(uuid.uuid4()), None)
        # the winner's details are preserved
        assert exc.value.transaction.qr_used_location == LOCATION

    def test_invalidated_cannot_be_used(self, db_session, transaction):
        store = TransactionStore(db_session)
        store.invalidate(transaction.id, 'refund')
        with pytest.raises(TransactionInvalidated):
            store.mark_used(transaction.id, LOCATION, None)
        assert store.get(transaction.id).qr_used is False

    def test_unknown_transaction(self, db_session):
        with pytest.raises(NotFound):
            TransactionStore(db_session).mark_used(str(uuid.uuid4()), LOCATION, None)


class TestInvalidate:
    def test_invalidate_is_idempotent(self, db_session, transaction):
        store = TransactionStore(db_session)
        first, changed = store.try_invalidate(transaction.id, 'refund', NOW)
        assert changed
        second, changed = store.try_invalidate(transaction.id, 'again', datetime(2024, 6, 11))
        assert not changed
        assert second.qr_invalidated_reason == 'refund'
        assert second.qr_invalidated_at == NOW

    def test_invalidate_after_use_keeps_use_record(self, db_session, transaction):
        store = TransactionStore(db_session)
        store.mark_used(transaction.id, LOCATION, None, NOW)
        txn = store.invalidate(transaction.id, 'return')
        assert txn.qr_used is True and txn.qr_invalidated is True

    def test_invalidate_unknown(self, db_session):
        with pytest.raises(NotFound):
            TransactionStore(db_session).invalidate(str(uuid.uuid4()), 'x')


def _locked():
    return OperationalError('UPDATE transactions ...', {}, Exception('database is locked'))


class TestRunWithRetry:
    def test_retries_transient_lock_then_succeeds(self):
        session = mock.Mock()
        func = mock.Mock(side_effect=[_locked(), 'ok'])
        assert run_with_retry(session, func, backoff_base=0) == 'ok'
        assert func.call_count == 2
        session.rollback.assert_called_once()

    def test_gives_up_after_attempts(self):
        session = mock.Mock()
        func = mock.Mock(side_effect=_locked())
        with pytest.raises(StorageUnavailable):
            run_with_retry(session, func, attempts=3, backoff_base=0)
        assert func.call_count == 3

    def test_other_database_errors_are_not_retried(self):
        session = mock.Mock()
        func = mock.Mock(side_effect=IntegrityError('INSERT ...', {}, Exception('constraint')))
        with pytest.raises(StorageUnavailable):
            run_with_retry(session, func, backoff_base=0)
        assert func.call_count == 1

    def test_non_database_errors_propagate(self):
        func = mock.Mock(side_effect=DuplicateId('x'))
        with pytest.raises(DuplicateId):
            run_with_retry(mock.Mock(), func)
