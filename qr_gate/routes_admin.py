from functools import wraps
import base64
import hmac
import io

from flask import Blueprint, jsonify, request, current_app, send_file

from .errors import NotFound
from .models import db, Profile
from .schemas import canonical_uuid, is_uuid
from .services import signing
from .services.profiles import ProfileSecretProvider, generate_qr_secret
from .services.qr import make_qr_bytes
from .services.transactions import TransactionStore
from .time_utils import to_unix_ms, utcnow

bp = Blueprint('admin', __name__)


def require_admin_key(view):
    # Simple API-key auth
    @wraps(view)
    def wrapper(*args, **kwargs):
        api_key = request.headers.get('X-Admin-Key') or ''
        expected = current_app.config.get('ADMIN_API_KEY') or ''
        if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
            return jsonify({'error': 'unauthorized'}), 401
        return view(*args, **kwargs)
    return wrapper


def _transaction_id(raw) -> str:
    if not is_uuid(raw):
        raise NotFound(f'transaction {raw} not found')
    return canonical_uuid(raw)


@bp.get('/ping')
def ping():
    return jsonify({'admin': 'ok'})


@bp.post('/profiles')
@require_admin_key
def create_profile():
    """Create a user profile with a fresh QR signing secret (returned once, for the client app)."""
    data = request.get_json(silent=True) or {}
    profile = Profile(display_name=data.get('display_name'), qr_secret=generate_qr_secret())
    db.session.add(profile)
    db.session.commit()
    return jsonify({'id': profile.id, 'display_name': profile.display_name, 'qr_secret': profile.qr_secret}), 201


@bp.post('/issue-qr')
@require_admin_key
def issue_qr():
    """Sign a fresh payload for a stored transaction, for clients that cannot sign themselves."""
    data = request.get_json(silent=True) or {}
    txn = TransactionStore(db.session).get(_transaction_id(data.get('transaction_id')))
    secret = ProfileSecretProvider(db.session).get(txn.user_id)
    if secret is None:
        return jsonify({'error': 'user has no QR secret'}), 409

    payload = signing.build_payload(secret, txn.id, txn.user_id, txn.items, to_unix_ms(utcnow()))
    qr_data = signing.encode(payload)
    png = make_qr_bytes(qr_data)

    accept = request.headers.get('Accept', '')
    if 'image/png' in accept:
        return send_file(
            io.BytesIO(png), mimetype='image/png', as_attachment=False, download_name=f"qr_{txn.id}.png",
            etag=False,
        )
    return jsonify({
        'ok': True,
        'transaction_id': txn.id,
        'qr_data': qr_data,
        'qr_png_b64': base64.b64encode(png).decode('ascii'),
    })


@bp.post('/transactions/<transaction_id>/invalidate')
@require_admin_key
def invalidate_transaction(transaction_id: str):
    data = request.get_json(silent=True) or {}
    reason = data.get('reason') or 'voided by operator'
    txn = TransactionStore(db.session).invalidate(_transaction_id(transaction_id), str(reason))
    return jsonify({'data': txn.to_dict()})
