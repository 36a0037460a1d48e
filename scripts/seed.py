import os, sys, pathlib, uuid
from decimal import Decimal
# Ensure project root is on PYTHONPATH when running directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from qr_gate import create_app
from qr_gate.models import db, Profile, STATUS_COMPLETED
from qr_gate.schemas import CreateTransactionDto, TransactionItem, items_total
from qr_gate.services import signing
from qr_gate.services.profiles import generate_qr_secret
from qr_gate.services.qr import make_qr
from qr_gate.services.transactions import TransactionStore
from qr_gate.time_utils import to_unix_ms, utcnow

# Seeds one demo user with one purchase and prints a scannable payload.

app = create_app()
with app.app_context():
    profile = Profile(display_name='Demo pilgrim', qr_secret=generate_qr_secret())
    db.session.add(profile)
    db.session.commit()

    items = (
        TransactionItem(type='product', id=str(uuid.uuid4()), name='Bocadillo jamon', quantity=1, price=3.5),
        TransactionItem(type='product', id=str(uuid.uuid4()), name='Agua 500ml', quantity=2, price=1.5),
    )
    txn = TransactionStore(db.session).create(
        CreateTransactionDto(id=str(uuid.uuid4()), user_id=profile.id, items=items, total=items_total(items)),
        status=STATUS_COMPLETED,
    )

    payload = signing.build_payload(profile.qr_secret, txn.id, profile.id, items, to_unix_ms(utcnow()))
    qr_data = signing.encode(payload)
    out = os.environ.get('OUT', 'qr.png')
    make_qr(qr_data, out)

    print('user_id:', profile.id)
    print('qr_secret:', profile.qr_secret)
    print('transaction_id:', txn.id, 'total:', Decimal(txn.total))
    print('qr_data:', qr_data)
    print('PNG saved to', out)
