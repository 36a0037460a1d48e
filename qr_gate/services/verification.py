"""
QR verification.

Each call evaluates one scan and ends in exactly one of the five outcomes in
`models.VALIDATION_RESULTS`. Checks run in a fixed order and stop at the first
failure. The signature is checked before the used/invalidated state so that a
forged QR for an already redeemed transaction is reported as falsified rather
than as a double scan.

Every call writes one access log entry. A failed write is reported at ERROR
level and never changes the outcome returned to the terminal.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ..errors import AlreadyUsed, InputError, NotFound, StorageUnavailable, TransactionInvalidated
from ..models import (
    RESULT_ALREADY_USED,
    RESULT_EXPIRED,
    RESULT_FALSIFIED,
    RESULT_INVALID,
    RESULT_VALID,
)
from ..schemas import CENT, canonical_uuid, items_total, to_decimal, TransactionItem
from ..time_utils import to_unix_ms, to_utc_z, utcnow
from . import signing

log = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)
DEFAULT_MAX_FUTURE_SKEW = timedelta(minutes=5)


@dataclass
class VerificationResult:
    outcome: str
    message: str
    transaction: Optional[object] = None
    log_entry: Optional[object] = None

    @property
    def valid(self) -> bool:
        return self.outcome == RESULT_VALID

    def to_dict(self) -> dict:
        return {
            'valid': self.valid,
            'validation_result': self.outcome,
            'transaction': self.transaction.summary() if self.transaction is not None else None,
            'message': self.message,
        }


def _item_key(item) -> tuple:
    if isinstance(item, TransactionItem):
        item = item.to_dict()
    return (
        item['type'],
        canonical_uuid(item['id']),
        item['name'],
        int(item['quantity']),
        to_decimal(item['price']),
    )


def content_mismatch(payload, txn) -> Optional[str]:
    """Compare the signed items with the stored transaction. Item order does not matter."""
    if Counter(_item_key(i) for i in payload.items) != Counter(_item_key(i) for i in txn.items):
        return 'Items do not match the transaction'
    stored = [TransactionItem(**i) for i in txn.items]
    if to_decimal(txn.total).quantize(CENT) != items_total(stored):
        return 'Transaction total does not match its items'
    return None


class QRVerifier:
    def __init__(self, transactions, access_log, secrets, *,
                 max_age=DEFAULT_MAX_AGE,
                 max_future_skew=DEFAULT_MAX_FUTURE_SKEW,
                 verify_totals=True,
                 payload_version=signing.PAYLOAD_VERSION,
                 qr_data_chars=100,
                 clock=utcnow):
        self.transactions = transactions
        self.access_log = access_log
        self.secrets = secrets
        self.max_age_ms = int(max_age.total_seconds() * 1000)
        self.max_future_skew_ms = int(max_future_skew.total_seconds() * 1000)
        self.verify_totals = verify_totals
        self.payload_version = payload_version
        self.qr_data_chars = qr_data_chars
        self.clock = clock

    def verify(self, qr_data: str, location_id: str, scanned_by: Optional[str] = None) -> VerificationResult:
        now = self.clock()
        outcome, message, payload, txn = self._evaluate(qr_data, location_id, scanned_by, now)
        entry = self._record(outcome, payload, qr_data, location_id, scanned_by, now)
        return VerificationResult(outcome=outcome, message=message, transaction=txn, log_entry=entry)

    def _evaluate(self, qr_data, location_id, scanned_by, now):
        try:
            payload = signing.decode(qr_data)
        except InputError as exc:
            log.info('malformed QR scanned at %s: %s', location_id, exc)
            return RESULT_INVALID, 'Malformed QR', None, None
        if payload.version != self.payload_version:
            return RESULT_INVALID, f'Unsupported QR version {payload.version}', payload, None

        transaction_id = canonical_uuid(payload.transaction_id)
        user_id = canonical_uuid(payload.user_id)
        try:
            txn = self.transactions.get(transaction_id)
        except NotFound:
            log.info('scan of unknown transaction %s at %s', transaction_id, location_id)
            return RESULT_INVALID, 'Unknown transaction', payload, None

        secret = self.secrets.get(user_id)
        if secret is None or user_id != txn.user_id:
            log.warning('user mismatch for transaction %s at %s', transaction_id, location_id)
            return RESULT_FALSIFIED, 'User mismatch', payload, None
        if not signing.verify(secret, payload):
            log.warning('forged signature for transaction %s at %s', transaction_id, location_id)
            return RESULT_FALSIFIED, 'Signature invalid', payload, None
        if self.verify_totals:
            problem = content_mismatch(payload, txn)
            if problem:
                log.warning('%s: transaction %s at %s', problem, transaction_id, location_id)
                return RESULT_FALSIFIED, problem, payload, None

        age_ms = to_unix_ms(now) - payload.timestamp
        if age_ms > self.max_age_ms:
            return RESULT_EXPIRED, 'QR expired', payload, txn
        if -age_ms > self.max_future_skew_ms:
            return RESULT_INVALID, 'QR timestamp is in the future', payload, None

        if txn.qr_invalidated:
            return RESULT_INVALID, _invalidated_message(txn), payload, txn

        try:
            txn = self.transactions.mark_used(transaction_id, location_id, scanned_by, now)
        except AlreadyUsed as exc:
            used = exc.transaction
            message = (f'QR already redeemed at {to_utc_z(used.qr_used_at)} '
                       f'(location {used.qr_used_location})')
            return RESULT_ALREADY_USED, message, payload, used
        except TransactionInvalidated as exc:
            return RESULT_INVALID, _invalidated_message(exc.transaction), payload, exc.transaction
        except NotFound:
            return RESULT_INVALID, 'Unknown transaction', payload, None

        log.info('transaction %s redeemed at %s', transaction_id, location_id)
        return RESULT_VALID, 'QR valid - access granted', payload, txn

    def _record(self, outcome, payload, qr_data, location_id, scanned_by, now):
        try:
            return self.access_log.append(
                transaction_id=canonical_uuid(payload.transaction_id) if payload else None,
                user_id=canonical_uuid(payload.user_id) if payload else None,
                location_id=location_id,
                qr_data=qr_data[:self.qr_data_chars] if qr_data else None,
                validation_result=outcome,
                scanned_by=scanned_by,
                timestamp=now,
            )
        except StorageUnavailable:
            log.exception('access log write failed (outcome=%s, location=%s)', outcome, location_id)
            return None


def _invalidated_message(txn) -> str:
    return f'Transaction invalidated: {txn.qr_invalidated_reason or "no reason given"}'
