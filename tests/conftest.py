"""
Pytest fixtures for qr-gate tests.

Provides an in-memory database, a test client, a user profile with a signing
secret and helpers to build signed QR data for stored transactions.
"""
import uuid

import pytest

from qr_gate import create_app
from qr_gate.models import db, Profile, STATUS_COMPLETED
from qr_gate.schemas import CreateTransactionDto, TransactionItem, items_total
from qr_gate.services import signing
from qr_gate.services.transactions import TransactionStore
from qr_gate.time_utils import to_unix_ms, utcnow

ADMIN_KEY = 'test-admin-key'


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'USE_REDIS': False,
        'VERIFY_RATE_LIMIT': 0,
        'ADMIN_API_KEY': ADMIN_KEY,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def profile(db_session):
    """User with a known QR secret."""
    p = Profile(id=str(uuid.uuid4()), display_name='Ana', qr_secret='s3cret-for-tests')
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture(scope='function')
def other_profile(db_session):
    p = Profile(id=str(uuid.uuid4()), display_name='Bruno', qr_secret='another-secret')
    db_session.add(p)
    db_session.commit()
    return p


def make_items():
    return (
        TransactionItem(type='product', id=str(uuid.uuid4()), name='Agua', quantity=2, price=1.5),
        TransactionItem(type='service', id=str(uuid.uuid4()), name='Ducha', quantity=1, price=2.0),
    )


@pytest.fixture(scope='function')
def transaction(db_session, profile):
    """Completed transaction of `profile`: 2 x Agua @1.50 + 1 x Ducha @2.00."""
    items = make_items()
    dto = CreateTransactionDto(id=str(uuid.uuid4()), user_id=profile.id, items=items, total=items_total(items))
    return TransactionStore(db_session).create(dto, status=STATUS_COMPLETED)


def signed_qr(txn, secret, timestamp=None, items=None, user_id=None, version=signing.PAYLOAD_VERSION):
    """Encode a payload for `txn` the way the client app would."""
    if timestamp is None:
        timestamp = to_unix_ms(utcnow())
    payload = signing.build_payload(
        secret,
        txn.id,
        user_id or txn.user_id,
        items if items is not None else txn.items,
        timestamp,
        version,
    )
    return signing.encode(payload)


@pytest.fixture
def qr_for():
    return signed_qr


@pytest.fixture
def admin_headers():
    return {'X-Admin-Key': ADMIN_KEY}
