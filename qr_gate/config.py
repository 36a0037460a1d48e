import os


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() not in ('0', 'false', 'no')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///local.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    USE_REDIS = _env_bool('USE_REDIS', '1')
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # QR policy
    QR_PAYLOAD_VERSION = '1.0'
    QR_MAX_AGE_SECONDS = int(os.environ.get('QR_MAX_AGE_SECONDS', '86400'))
    QR_MAX_FUTURE_SKEW_SECONDS = int(os.environ.get('QR_MAX_FUTURE_SKEW_SECONDS', '300'))
    QR_VERIFY_TOTALS = _env_bool('QR_VERIFY_TOTALS', '1')
    ACCESS_LOG_QR_DATA_CHARS = int(os.environ.get('ACCESS_LOG_QR_DATA_CHARS', '100'))

    # Per-IP limit on /access/verify-qr; 0 disables
    VERIFY_RATE_LIMIT = int(os.environ.get('VERIFY_RATE_LIMIT', '120'))
    VERIFY_RATE_WINDOW = int(os.environ.get('VERIFY_RATE_WINDOW', '60'))

    def __init__(self):
        # Optional fallbacks to support Secret Files on Render (/etc/secrets)
        if (not self.SECRET_KEY) or self.SECRET_KEY == 'dev':
            self.SECRET_KEY = _read_secret_file('/etc/secrets/secret_key') or self.SECRET_KEY
        if not self.ADMIN_API_KEY:
            self.ADMIN_API_KEY = _read_secret_file('/etc/secrets/admin_api_key')


def _read_secret_file(path: str):
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError:
        return None
