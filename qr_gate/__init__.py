from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_migrate import Migrate
from werkzeug.exceptions import InternalServerError
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .errors import InputError, NotFound, StorageUnavailable
from .logging_config import configure_logging
from .models import db


def create_app(test_config=None):
    load_dotenv()
    app = Flask(__name__)
    app.config.from_object(Config())
    if test_config:
        app.config.update(test_config)
    configure_logging(app)

    db.init_app(app)
    Migrate(app, db)
    # Trust reverse proxy headers (Render/Heroku)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    with app.app_context():
        db.create_all()

    from .routes_access import bp as access_bp
    from .routes_transactions import bp as transactions_bp
    from .routes_admin import bp as admin_bp
    app.register_blueprint(access_bp, url_prefix='/access')
    app.register_blueprint(transactions_bp)
    app.register_blueprint(admin_bp, url_prefix='/admin')

    @app.errorhandler(InputError)
    def input_error(e):
        return jsonify({'error': str(e), 'details': e.details}), 400

    @app.errorhandler(NotFound)
    def not_found(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(StorageUnavailable)
    def storage_unavailable(e):
        app.logger.error('storage unavailable: %s', e)
        return jsonify({'error': 'storage_unavailable'}), 503

    @app.errorhandler(InternalServerError)
    def internal_error(e):
        return jsonify({'error': 'Internal server error'}), 500

    @app.get('/health')
    def health():
        return {'ok': True}

    return app
