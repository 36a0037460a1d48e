from flask import Blueprint, current_app, jsonify, request

from .errors import DuplicateId, NotFound, ReturnError
from .models import STATUS_COMPLETED, db
from .schemas import canonical_uuid, is_uuid, parse_create_return, parse_create_transaction, parse_sync_transaction
from .services.profiles import ProfileSecretProvider
from .services.returns import process_return
from .services.sync import TransactionSync
from .services.transactions import TransactionStore

bp = Blueprint('transactions', __name__)


@bp.post('/transactions/sync')
def sync_transaction():
    """
    Persist a transaction created offline. Safe to resubmit.

    Returns:
        201: stored now ({"accepted": true})
        200: already stored earlier ({"accepted": false})
        400: invalid body
        404: unknown user
    """
    dto = parse_sync_transaction(request.get_json(silent=True))
    result = TransactionSync(TransactionStore(db.session), ProfileSecretProvider(db.session)).sync(dto)
    body = {'data': result.transaction.to_dict(), 'accepted': result.accepted}
    return jsonify(body), 201 if result.accepted else 200


@bp.post('/transactions')
def create_transaction():
    dto = parse_create_transaction(request.get_json(silent=True))
    if not ProfileSecretProvider(db.session).exists(dto.user_id):
        raise NotFound(f'user {dto.user_id} not found')
    try:
        txn = TransactionStore(db.session).create(dto, status=STATUS_COMPLETED)
    except DuplicateId as e:
        return jsonify({'error': str(e)}), 409
    return jsonify({'data': txn.to_dict()}), 201


@bp.get('/transactions/<transaction_id>')
def get_transaction(transaction_id: str):
    if not is_uuid(transaction_id):
        raise NotFound(f'transaction {transaction_id} not found')
    txn = TransactionStore(db.session).get(canonical_uuid(transaction_id))
    return jsonify({'data': txn.to_dict()})


@bp.post('/returns')
def create_return():
    """
    Refund items of a redeemed transaction.

    The original QR is invalidated; remaining items move to a new transaction.

    Returns:
        201: {"data": <return>}
        400 / 404 / 409: rule violation, see "error"
    """
    dto = parse_create_return(request.get_json(silent=True))
    try:
        record = process_return(dto, TransactionStore(db.session), db.session)
    except ReturnError as e:
        current_app.logger.info('return rejected for %s: %s', dto.original_transaction_id, e)
        return jsonify({'error': str(e)}), e.status
    return jsonify({'data': record.to_dict()}), 201
