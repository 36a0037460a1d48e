"""
Request and payload records with their validator functions.

Each `parse_*` function takes decoded JSON (or query args) and returns a
frozen dataclass, or raises an InputError subclass whose `details` maps each
offending field to a message.
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .errors import InvalidQuery, SchemaViolation
from .models import VALIDATION_RESULTS
from .time_utils import parse_iso_datetime

ITEM_TYPES = ('product', 'service')
MAX_ITEM_NAME = 200
MAX_REASON = 500
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
CENT = Decimal('0.01')
# largest integer a JSON client can represent exactly
MAX_SAFE_INTEGER = 2 ** 53 - 1
# OFFSET must fit a signed 64-bit column
MAX_OFFSET = 2 ** 63 - 1


def canonical_uuid(value: str) -> str:
    return str(uuid.UUID(value))


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, int):
        return abs(value) <= MAX_SAFE_INTEGER
    return math.isfinite(value)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and abs(value) <= MAX_SAFE_INTEGER


def to_decimal(value) -> Decimal:
    # str() first so 1.1 stays 1.1 rather than its binary expansion
    return Decimal(str(value))


@dataclass(frozen=True)
class TransactionItem:
    type: str
    id: str
    name: str
    quantity: int
    price: float

    def subtotal(self) -> Decimal:
        return to_decimal(self.price) * self.quantity

    def to_dict(self) -> dict:
        return {
            'type': self.type,
            'id': self.id,
            'name': self.name,
            'quantity': self.quantity,
            'price': self.price,
        }


@dataclass(frozen=True)
class QRPayload:
    transaction_id: str
    user_id: str
    items: tuple[TransactionItem, ...]
    timestamp: int
    signature: str
    version: str

    def to_dict(self) -> dict:
        return {
            'transaction_id': self.transaction_id,
            'user_id': self.user_id,
            'items': [i.to_dict() for i in self.items],
            'timestamp': self.timestamp,
            'signature': self.signature,
            'version': self.version,
        }


@dataclass(frozen=True)
class CreateTransactionDto:
    id: str
    user_id: str
    items: tuple[TransactionItem, ...]
    total: Decimal
    created_at: Optional[datetime] = None
    parent_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class SyncTransactionDto:
    transaction_id: str
    user_id: str
    items: tuple[TransactionItem, ...]
    total: Decimal
    created_at: datetime
    parent_transaction_id: Optional[str] = None

    def to_create_dto(self) -> CreateTransactionDto:
        return CreateTransactionDto(
            id=self.transaction_id,
            user_id=self.user_id,
            items=self.items,
            total=self.total,
            created_at=self.created_at,
            parent_transaction_id=self.parent_transaction_id,
        )


@dataclass(frozen=True)
class VerifyQRRequest:
    qr_data: str
    location_id: str
    scanned_by: Optional[str] = None


@dataclass(frozen=True)
class AccessLogQuery:
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    user_id: Optional[str] = None
    location_id: Optional[str] = None
    transaction_id: Optional[str] = None
    validation_result: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


@dataclass(frozen=True)
class ReturnedItem:
    item_id: str
    quantity: int


@dataclass(frozen=True)
class CreateReturnDto:
    original_transaction_id: str
    returned_items: tuple[ReturnedItem, ...]
    reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    new_transaction_id: Optional[str] = None


@dataclass
class _Errors:
    details: dict = field(default_factory=dict)

    def add(self, name: str, message: str):
        self.details.setdefault(name, message)

    def raise_if_any(self, exc_type=SchemaViolation, message='invalid input'):
        if self.details:
            raise exc_type(message, self.details)


def items_total(items) -> Decimal:
    return sum((i.subtotal() for i in items), Decimal('0')).quantize(CENT)


def _uuid_field(data: dict, name: str, errors: _Errors, required: bool = True) -> Optional[str]:
    value = data.get(name)
    if value is None:
        if required:
            errors.add(name, 'is required')
        return None
    if not is_uuid(value):
        errors.add(name, 'must be a valid UUID')
        return None
    return canonical_uuid(value)


def _parse_item(raw: Any, prefix: str, errors: _Errors) -> Optional[TransactionItem]:
    if not isinstance(raw, dict):
        errors.add(prefix, 'must be an object')
        return None
    ok = True
    if raw.get('type') not in ITEM_TYPES:
        errors.add(f'{prefix}.type', 'must be "product" or "service"')
        ok = False
    if not is_uuid(raw.get('id')):
        errors.add(f'{prefix}.id', 'must be a valid UUID')
        ok = False
    name = raw.get('name')
    if not isinstance(name, str) or not (1 <= len(name) <= MAX_ITEM_NAME):
        errors.add(f'{prefix}.name', f'must be 1-{MAX_ITEM_NAME} characters')
        ok = False
    quantity = raw.get('quantity')
    if not _is_int(quantity) or quantity < 1:
        errors.add(f'{prefix}.quantity', 'must be an integer >= 1')
        ok = False
    price = raw.get('price')
    if not _is_number(price) or price < 0:
        errors.add(f'{prefix}.price', 'must be a non-negative number')
        ok = False
    if not ok:
        return None
    return TransactionItem(type=raw['type'], id=raw['id'], name=name, quantity=quantity, price=price)


def parse_items(raw: Any, errors: _Errors, name: str = 'items') -> tuple[TransactionItem, ...]:
    if not isinstance(raw, list) or not raw:
        errors.add(name, 'must be a non-empty list')
        return ()
    items = [_parse_item(r, f'{name}[{n}]', errors) for n, r in enumerate(raw)]
    return tuple(i for i in items if i is not None)


def _total_field(data: dict, items, errors: _Errors) -> Optional[Decimal]:
    total = data.get('total')
    if not _is_number(total) or total < 0:
        errors.add('total', 'must be a non-negative number')
        return None
    total = to_decimal(total).quantize(CENT)
    if items and not errors.details and total != items_total(items):
        errors.add('total', 'must equal the sum of price * quantity over items')
    return total


def _datetime_field(data: dict, name: str, errors: _Errors, required: bool) -> Optional[datetime]:
    value = data.get(name)
    if value is None:
        if required:
            errors.add(name, 'is required')
        return None
    if not isinstance(value, str):
        errors.add(name, 'must be an ISO 8601 string')
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        errors.add(name, 'must be an ISO 8601 string')
        return None


def parse_qr_payload(obj: dict) -> QRPayload:
    """Type/range checks for a decoded payload whose keys are all present."""
    errors = _Errors()
    for name in ('transaction_id', 'user_id'):
        if not is_uuid(obj.get(name)):
            errors.add(name, 'must be a valid UUID')
    items = parse_items(obj.get('items'), errors)
    timestamp = obj.get('timestamp')
    if not _is_int(timestamp) or timestamp <= 0:
        errors.add('timestamp', 'must be a positive integer (unix ms)')
    for name in ('signature', 'version'):
        value = obj.get(name)
        if not isinstance(value, str) or not value:
            errors.add(name, 'must be a non-empty string')
    errors.raise_if_any(message='QR payload violates schema')
    return QRPayload(
        transaction_id=obj['transaction_id'],
        user_id=obj['user_id'],
        items=items,
        timestamp=timestamp,
        signature=obj['signature'],
        version=obj['version'],
    )


def _require_object(data: Any) -> dict:
    if not isinstance(data, dict):
        raise SchemaViolation('request body must be a JSON object', {'body': 'must be an object'})
    return data


def parse_create_transaction(data: Any) -> CreateTransactionDto:
    data = _require_object(data)
    errors = _Errors()
    txn_id = _uuid_field(data, 'id', errors)
    user_id = _uuid_field(data, 'user_id', errors)
    items = parse_items(data.get('items'), errors)
    total = _total_field(data, items, errors)
    created_at = _datetime_field(data, 'created_at', errors, required=False)
    parent_id = _uuid_field(data, 'parent_transaction_id', errors, required=False)
    errors.raise_if_any(message='invalid transaction')
    return CreateTransactionDto(
        id=txn_id,
        user_id=user_id,
        items=items,
        total=total,
        created_at=created_at,
        parent_transaction_id=parent_id,
    )


def parse_sync_transaction(data: Any) -> SyncTransactionDto:
    data = _require_object(data)
    errors = _Errors()
    txn_id = _uuid_field(data, 'transaction_id', errors)
    user_id = _uuid_field(data, 'user_id', errors)
    items = parse_items(data.get('items'), errors)
    total = _total_field(data, items, errors)
    created_at = _datetime_field(data, 'created_at', errors, required=True)
    parent_id = _uuid_field(data, 'parent_transaction_id', errors, required=False)
    errors.raise_if_any(message='invalid transaction')
    return SyncTransactionDto(
        transaction_id=txn_id,
        user_id=user_id,
        items=items,
        total=total,
        created_at=created_at,
        parent_transaction_id=parent_id,
    )


def parse_verify_request(data: Any) -> VerifyQRRequest:
    data = _require_object(data)
    errors = _Errors()
    qr_data = data.get('qr_data')
    if not isinstance(qr_data, str) or not qr_data.strip():
        errors.add('qr_data', 'is required')
    location_id = _uuid_field(data, 'location_id', errors)
    scanned_by = _uuid_field(data, 'scanned_by', errors, required=False)
    errors.raise_if_any(message='invalid verification request')
    return VerifyQRRequest(qr_data=qr_data.strip(), location_id=location_id, scanned_by=scanned_by)


def _int_arg(args, name: str, default: int, errors: _Errors) -> int:
    raw = args.get(name)
    if raw in (None, ''):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        errors.add(name, 'must be an integer')
        return default


def parse_access_log_query(args) -> AccessLogQuery:
    """Parse `GET /access/logs` query args (any mapping of strings)."""
    errors = _Errors()
    page = _int_arg(args, 'page', 1, errors)
    limit = _int_arg(args, 'limit', DEFAULT_PAGE_SIZE, errors)
    filters = {}
    for name in ('user_id', 'location_id', 'transaction_id'):
        filters[name] = _uuid_field(args, name, errors, required=False)
    result = args.get('validation_result') or None
    if result is not None and result not in VALIDATION_RESULTS:
        errors.add('validation_result', f"must be one of {', '.join(VALIDATION_RESULTS)}")
    date_from = _datetime_field(args, 'from', errors, required=False)
    date_to = _datetime_field(args, 'to', errors, required=False)
    errors.raise_if_any(InvalidQuery, 'invalid access log query')
    query = AccessLogQuery(
        page=page,
        limit=limit,
        validation_result=result,
        date_from=date_from,
        date_to=date_to,
        **filters,
    )
    check_access_log_query(query)
    return query


def check_access_log_query(query: AccessLogQuery):
    errors = _Errors()
    if query.page < 1:
        errors.add('page', 'must be >= 1')
    elif (query.page - 1) * query.limit > MAX_OFFSET:
        errors.add('page', 'is too large')
    if not (1 <= query.limit <= MAX_PAGE_SIZE):
        errors.add('limit', f'must be between 1 and {MAX_PAGE_SIZE}')
    if query.date_from and query.date_to and query.date_from > query.date_to:
        errors.add('from', 'must not be after "to"')
    errors.raise_if_any(InvalidQuery, 'invalid access log query')


def parse_create_return(data: Any) -> CreateReturnDto:
    data = _require_object(data)
    errors = _Errors()
    original_id = _uuid_field(data, 'original_transaction_id', errors)
    new_id = _uuid_field(data, 'new_transaction_id', errors, required=False)

    returned = []
    raw_items = data.get('returned_items')
    if not isinstance(raw_items, list) or not raw_items:
        errors.add('returned_items', 'must be a non-empty list')
    else:
        for n, raw in enumerate(raw_items):
            prefix = f'returned_items[{n}]'
            if not isinstance(raw, dict):
                errors.add(prefix, 'must be an object')
                continue
            if not is_uuid(raw.get('item_id')):
                errors.add(f'{prefix}.item_id', 'must be a valid UUID')
                continue
            quantity = raw.get('quantity')
            if not _is_int(quantity) or quantity < 1:
                errors.add(f'{prefix}.quantity', 'must be an integer >= 1')
                continue
            returned.append(ReturnedItem(item_id=raw['item_id'], quantity=quantity))

    reason = data.get('reason')
    if reason is not None and (not isinstance(reason, str) or len(reason) > MAX_REASON):
        errors.add('reason', f'must be a string of at most {MAX_REASON} characters')

    refund = data.get('refund_amount')
    if refund is not None:
        if not _is_number(refund) or refund < 0:
            errors.add('refund_amount', 'must be a non-negative number')
        else:
            try:
                refund = to_decimal(refund).quantize(CENT)
            except InvalidOperation:
                errors.add('refund_amount', 'must be a non-negative number')

    errors.raise_if_any(message='invalid return')
    return CreateReturnDto(
        original_transaction_id=original_id,
        returned_items=tuple(returned),
        reason=reason,
        refund_amount=refund,
        new_transaction_id=new_id,
    )
