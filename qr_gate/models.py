import uuid
from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy

from .time_utils import utcnow, to_utc_z

db = SQLAlchemy()

STATUS_COMPLETED = 'completed'
STATUS_PENDING_SYNC = 'pending_sync'
STATUS_CANCELLED = 'cancelled'
TRANSACTION_STATUSES = (STATUS_COMPLETED, STATUS_PENDING_SYNC, STATUS_CANCELLED)

RESULT_VALID = 'valid'
RESULT_INVALID = 'invalid'
RESULT_EXPIRED = 'expired'
RESULT_ALREADY_USED = 'already_used'
RESULT_FALSIFIED = 'falsified'
VALIDATION_RESULTS = (RESULT_VALID, RESULT_INVALID, RESULT_EXPIRED, RESULT_ALREADY_USED, RESULT_FALSIFIED)


def _uuid_str():
    return str(uuid.uuid4())


def _money(value):
    if value is None:
        return None
    return float(Decimal(value))


class Profile(db.Model):
    """Owner of transactions; holds the per-user QR signing secret."""

    id = db.Column(db.String(36), primary_key=True, default=_uuid_str)
    display_name = db.Column(db.String(255))
    qr_secret = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.String(36), primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('profile.id'), nullable=False, index=True)
    items = db.Column(db.JSON, nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(32), nullable=False, default=STATUS_PENDING_SYNC)

    qr_used = db.Column(db.Boolean, nullable=False, default=False)
    qr_used_at = db.Column(db.DateTime)
    qr_used_location = db.Column(db.String(36))
    qr_used_by = db.Column(db.String(36))

    qr_invalidated = db.Column(db.Boolean, nullable=False, default=False)
    qr_invalidated_at = db.Column(db.DateTime)
    qr_invalidated_reason = db.Column(db.Text)

    parent_transaction_id = db.Column(db.String(36), db.ForeignKey('transactions.id'))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    synced_at = db.Column(db.DateTime)

    def summary(self) -> dict:
        return {
            'id': self.id,
            'items': self.items,
            'total': _money(self.total),
            'user_id': self.user_id,
        }

    def to_dict(self) -> dict:
        return {
            **self.summary(),
            'status': self.status,
            'qr_used': self.qr_used,
            'qr_used_at': to_utc_z(self.qr_used_at),
            'qr_used_location': self.qr_used_location,
            'qr_used_by': self.qr_used_by,
            'qr_invalidated': self.qr_invalidated,
            'qr_invalidated_at': to_utc_z(self.qr_invalidated_at),
            'qr_invalidated_reason': self.qr_invalidated_reason,
            'parent_transaction_id': self.parent_transaction_id,
            'created_at': to_utc_z(self.created_at),
            'updated_at': to_utc_z(self.updated_at),
            'synced_at': to_utc_z(self.synced_at),
        }


class AccessLog(db.Model):
    """One row per verification attempt. Rows are never updated or deleted."""

    __tablename__ = 'access_logs'

    id = db.Column(db.String(36), primary_key=True, default=_uuid_str)
    # no foreign keys: scans of unknown or undecodable QRs are logged too
    transaction_id = db.Column(db.String(36), index=True)
    user_id = db.Column(db.String(36), index=True)
    location_id = db.Column(db.String(36), nullable=False, index=True)
    qr_data = db.Column(db.Text)
    validation_result = db.Column(db.String(16), nullable=False)
    scanned_by = db.Column(db.String(36))
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'transaction_id': self.transaction_id,
            'user_id': self.user_id,
            'location_id': self.location_id,
            'qr_data': self.qr_data,
            'validation_result': self.validation_result,
            'scanned_by': self.scanned_by,
            'timestamp': to_utc_z(self.timestamp),
        }


class Return(db.Model):
    __tablename__ = 'returns'

    id = db.Column(db.String(36), primary_key=True, default=_uuid_str)
    original_transaction_id = db.Column(db.String(36), db.ForeignKey('transactions.id'), nullable=False, index=True)
    new_transaction_id = db.Column(db.String(36), db.ForeignKey('transactions.id'))
    returned_items = db.Column(db.JSON, nullable=False)
    reason = db.Column(db.Text)
    refund_amount = db.Column(db.Numeric(12, 2))
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'original_transaction_id': self.original_transaction_id,
            'new_transaction_id': self.new_transaction_id,
            'returned_items': self.returned_items,
            'reason': self.reason,
            'refund_amount': _money(self.refund_amount),
            'timestamp': to_utc_z(self.timestamp),
        }
