import base64
import binascii
import hashlib
import hmac
import json
import re
from decimal import Decimal

from ..errors import MalformedPayload
from ..schemas import QRPayload, TransactionItem, parse_qr_payload

PAYLOAD_VERSION = '1.0'
REQUIRED_FIELDS = ('transaction_id', 'user_id', 'items', 'timestamp', 'signature', 'version')
_LONE_SURROGATE = re.compile(r'[\ud800-\udfff]')


def _js_number(value):
    # JSON.stringify(3.0) == "3"; keep signatures identical across platforms
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def js_number_text(value) -> str:
    """
    Format a number the way JavaScript's Number#toString does.

    repr() already gives the shortest round-tripping digits; only the
    placement of the decimal point and the exponent style differ
    (1e-07 -> 1e-7, 1e+16 -> 10000000000000000).
    """
    if isinstance(value, int):
        return str(value)
    if value == 0:
        return '0'
    sign, raw_digits, exponent = Decimal(repr(value)).as_tuple()
    # value == digits * 10 ** (n - k), as in the ECMAScript definition
    n = len(raw_digits) + exponent
    digits = ''.join(map(str, raw_digits)).rstrip('0')
    k = len(digits)
    prefix = '-' if sign else ''
    if k <= n <= 21:
        return prefix + digits + '0' * (n - k)
    if 0 < n <= 21:
        return prefix + digits[:n] + '.' + digits[n:]
    if -6 < n <= 0:
        return prefix + '0.' + '0' * -n + digits
    e = n - 1
    mantissa = digits if k == 1 else digits[0] + '.' + digits[1:]
    return f"{prefix}{mantissa}e{'+' if e > 0 else '-'}{abs(e)}"


def _js_json(value) -> str:
    """Compact JSON.stringify-compatible text for the signed message."""
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, (int, float)):
        return js_number_text(value)
    if isinstance(value, str):
        # lone surrogates cannot be UTF-8 encoded; JSON.stringify escapes them
        return _LONE_SURROGATE.sub(lambda m: '\\u%04x' % ord(m.group()), json.dumps(value, ensure_ascii=False))
    if isinstance(value, dict):
        return '{' + ','.join(f'{_js_json(k)}:{_js_json(v)}' for k, v in value.items()) + '}'
    if isinstance(value, (list, tuple)):
        return '[' + ','.join(_js_json(v) for v in value) + ']'
    raise TypeError(f'cannot sign value of type {type(value).__name__}')


def _item_dict(item) -> dict:
    if isinstance(item, TransactionItem):
        item = item.to_dict()
    return {
        'type': item['type'],
        'id': item['id'],
        'name': item['name'],
        'quantity': _js_number(item['quantity']),
        'price': _js_number(item['price']),
    }


def canonical_message(transaction_id: str, user_id: str, items, timestamp: int) -> bytes:
    body = {
        'transaction_id': transaction_id,
        'user_id': user_id,
        'items': [_item_dict(i) for i in items],
        'timestamp': timestamp,
    }
    return _js_json(body).encode('utf-8')


def sign(secret: str, transaction_id: str, user_id: str, items, timestamp: int) -> str:
    msg = canonical_message(transaction_id, user_id, items, timestamp)
    return hmac.new(secret.encode('utf-8'), msg, hashlib.sha256).hexdigest()


def verify(secret: str, payload: QRPayload) -> bool:
    expected = sign(secret, payload.transaction_id, payload.user_id, payload.items, payload.timestamp)
    return hmac.compare_digest(expected.encode('ascii'), payload.signature.lower().encode('utf-8'))


def build_payload(secret: str, transaction_id: str, user_id: str, items, timestamp: int,
                  version: str = PAYLOAD_VERSION) -> QRPayload:
    items = tuple(i if isinstance(i, TransactionItem) else TransactionItem(**_item_dict(i)) for i in items)
    return QRPayload(
        transaction_id=transaction_id,
        user_id=user_id,
        items=items,
        timestamp=timestamp,
        signature=sign(secret, transaction_id, user_id, items, timestamp),
        version=version,
    )


def encode(payload: QRPayload) -> str:
    raw = json.dumps(payload.to_dict(), separators=(',', ':'), ensure_ascii=False).encode('utf-8')
    return base64.b64encode(raw).decode('ascii')


def decode(raw: str) -> QRPayload:
    """base64 -> JSON -> QRPayload. Accepts URL-safe alphabet and missing padding."""
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedPayload('empty QR data')
    s = ''.join(raw.split()).replace('-', '+').replace('_', '/')
    s += '=' * (-len(s) % 4)
    try:
        data = base64.b64decode(s, validate=True)
        obj = json.loads(data.decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayload('QR data is not base64-encoded JSON') from exc
    if not isinstance(obj, dict):
        raise MalformedPayload('QR payload must be a JSON object')
    missing = [f for f in REQUIRED_FIELDS if f not in obj]
    if missing:
        raise MalformedPayload('QR payload is missing fields', {f: 'is required' for f in missing})
    return parse_qr_payload(obj)
