import math
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request

from .models import db
from .schemas import parse_access_log_query, parse_verify_request
from .services.access_log import AccessLogStore
from .services.profiles import ProfileSecretProvider
from .services.rate_limit import RateLimitExceeded, check_rate_ip
from .services.transactions import TransactionStore
from .services.verification import QRVerifier

bp = Blueprint('access', __name__)


def build_verifier() -> QRVerifier:
    cfg = current_app.config
    return QRVerifier(
        transactions=TransactionStore(db.session),
        access_log=AccessLogStore(db.session),
        secrets=ProfileSecretProvider(db.session),
        max_age=timedelta(seconds=cfg['QR_MAX_AGE_SECONDS']),
        max_future_skew=timedelta(seconds=cfg['QR_MAX_FUTURE_SKEW_SECONDS']),
        verify_totals=cfg['QR_VERIFY_TOTALS'],
        payload_version=cfg['QR_PAYLOAD_VERSION'],
        qr_data_chars=cfg['ACCESS_LOG_QR_DATA_CHARS'],
    )


@bp.post('/verify-qr')
def verify_qr():
    """
    Verify a scanned QR at a service point.

    Request body:
    {
        "qr_data": "<base64 payload>",
        "location_id": "<uuid>",
        "scanned_by": "<uuid>"  (optional)
    }

    Returns:
        200: {valid, validation_result, transaction, message} for every business outcome
        400: malformed request
        429: too many scans from this address
        503: transaction store unavailable; retry the whole verification
    """
    ip = request.remote_addr or '0.0.0.0'
    try:
        check_rate_ip(ip, current_app.config['VERIFY_RATE_LIMIT'], current_app.config['VERIFY_RATE_WINDOW'])
    except RateLimitExceeded:
        current_app.logger.warning('verify-qr rate limit hit by %s', ip)
        return jsonify({'error': 'rate_limited'}), 429

    req = parse_verify_request(request.get_json(silent=True))
    result = build_verifier().verify(req.qr_data, req.location_id, req.scanned_by)
    return jsonify(result.to_dict())


@bp.get('/logs')
def access_logs():
    query = parse_access_log_query(request.args)
    rows, total = AccessLogStore(db.session).find_with_filters(query)
    return jsonify({
        'data': [row.to_dict() for row in rows],
        'pagination': {
            'page': query.page,
            'limit': query.limit,
            'total': total,
            'totalPages': math.ceil(total / query.limit),
        },
    })


@bp.get('/stats')
def access_stats():
    return jsonify({'data': AccessLogStore(db.session).count_by_result()})
