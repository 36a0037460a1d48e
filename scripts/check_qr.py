#!/usr/bin/env python3
import sys, json, time, pathlib

# Usage: python scripts/check_qr.py <QR_DATA> <QR_SECRET>
# Decodes a QR payload offline and checks its signature and age

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from qr_gate.errors import InputError
from qr_gate.services import signing

MAX_AGE_S = 86400


def err(msg):
    print(f"ERROR: {msg}")
    sys.exit(1)


if len(sys.argv) < 3:
    err("Usage: check_qr.py <QR_DATA> <QR_SECRET>")

qr_data = sys.argv[1].strip()
secret = sys.argv[2].strip()

try:
    payload = signing.decode(qr_data)
except InputError as e:
    err(f"{e} {e.details or ''}")

age = int(time.time()) - payload.timestamp // 1000
print(json.dumps({
    'transaction_id': payload.transaction_id,
    'user_id': payload.user_id,
    'items': len(payload.items),
    'version': payload.version,
    'signature_ok': signing.verify(secret, payload),
    'age_s': age,
    'stale_>1d': age > MAX_AGE_S,
}, indent=2))
