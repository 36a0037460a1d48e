import logging
import uuid

from flask import g, has_request_context, request

LOG_FORMAT = '%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s'


class RequestIdFilter(logging.Filter):
    """Stamp each record with the id of the request being served, or '-'."""

    def filter(self, record):
        if has_request_context():
            record.request_id = g.get('request_id', '-')
        else:
            record.request_id = '-'
        return True


def configure_logging(app):
    # Flask's app.logger is the package logger ("qr_gate"); service modules log
    # to its children so one handler covers both.
    logger = logging.getLogger(app.import_name)
    logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    if not any(isinstance(f, RequestIdFilter) for h in logger.handlers for f in h.filters):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(RequestIdFilter())
        logger.addHandler(handler)

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex

    @app.after_request
    def echo_request_id(response):
        response.headers['X-Request-ID'] = g.get('request_id', '')
        return response
