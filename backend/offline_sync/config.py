"""
Application configuration

All values can be overridden from the environment; a local .env file is
loaded first.
"""
import json
import os
import secrets

from dotenv import load_dotenv

load_dotenv()

# Absolute path of the backend directory
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _load_adapter_map(raw):
    """Parse SYNC_ADAPTERS ('{"appointment": "pkg.module:Adapter"}')."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


class Config:
    """Base configuration"""

    # ==================== Security ====================
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(32)

    # Device-facing API key; unset means development mode (no check)
    API_KEY = os.environ.get('API_KEY')

    # Maintenance endpoints (cleanup) require this key
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')

    # ==================== Database ====================
    DATABASE_URL = os.environ.get('DATABASE_URL')
    if DATABASE_URL:
        SQLALCHEMY_DATABASE_URI = DATABASE_URL
    else:
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(BASE_DIR, "offline_sync.db")}'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ==================== CORS ====================
    CORS_ORIGINS = os.environ.get(
        'CORS_ORIGINS',
        'http://localhost:5173,http://127.0.0.1:5173'
    ).split(',')

    # ==================== Logging ====================
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')
    # Separate file for device sync events only
    SYNC_EVENT_LOG_FILE = os.environ.get('SYNC_EVENT_LOG_FILE')

    # ==================== Sync engine ====================
    # Attempts before a failed item becomes permanently failed
    SYNC_MAX_ATTEMPTS = int(os.environ.get('SYNC_MAX_ATTEMPTS', '5'))
    # Default and upper bound for items claimed by one processing call
    SYNC_BATCH_LIMIT = int(os.environ.get('SYNC_BATCH_LIMIT', '50'))
    SYNC_MAX_BATCH_LIMIT = int(os.environ.get('SYNC_MAX_BATCH_LIMIT', '100'))
    # Records per incremental page
    SYNC_PAGE_SIZE = int(os.environ.get('SYNC_PAGE_SIZE', '100'))
    # Seconds before a device claim or a syncing item is considered orphaned
    SYNC_CLAIM_TIMEOUT = int(os.environ.get('SYNC_CLAIM_TIMEOUT', '300'))
    # Retention defaults
    SYNC_COMPLETED_RETENTION_DAYS = int(os.environ.get('SYNC_COMPLETED_RETENTION_DAYS', '7'))
    SYNC_STALE_DEVICE_DAYS = int(os.environ.get('SYNC_STALE_DEVICE_DAYS', '30'))
    # Recover orphaned claims when the app starts
    SYNC_RELEASE_CLAIMS_ON_STARTUP = os.environ.get('SYNC_RELEASE_CLAIMS_ON_STARTUP', 'true').lower() == 'true'
    # Entity adapters loaded at startup: {"entity_type": "module.path:ClassName"}
    SYNC_ADAPTERS = _load_adapter_map(os.environ.get('SYNC_ADAPTERS'))
    # Requests slower than this are logged as warnings
    SYNC_SLOW_REQUEST_MS = int(os.environ.get('SYNC_SLOW_REQUEST_MS', '1000'))

    @classmethod
    def get_cors_config(cls):
        """CORS settings for the /api/* routes"""
        return {
            "origins": cls.CORS_ORIGINS,
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "X-API-Key", "X-User-Id", "Authorization"],
            "supports_credentials": True,
        }


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    LOG_LEVEL = 'WARNING'

    @classmethod
    def validate(cls):
        """Warn about settings that must be provided in production"""
        errors = []

        if not os.environ.get('SECRET_KEY'):
            errors.append('SECRET_KEY is not set')

        if not os.environ.get('API_KEY'):
            errors.append('API_KEY is not set (device endpoints are unauthenticated)')

        if not os.environ.get('ADMIN_API_KEY'):
            errors.append('ADMIN_API_KEY is not set (maintenance endpoints are disabled)')

        if errors:
            print("Production configuration warnings:")
            for error in errors:
                print(f"  - {error}")
        return errors


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_LEVEL = 'WARNING'
    API_KEY = None
    ADMIN_API_KEY = 'test-admin-key'
    SYNC_MAX_ATTEMPTS = 3
    SYNC_PAGE_SIZE = 5
    SYNC_RELEASE_CLAIMS_ON_STARTUP = False
    SYNC_ADAPTERS = {}


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config():
    """Pick the configuration class from FLASK_ENV"""
    env = os.environ.get('FLASK_ENV', 'development')
    return config.get(env, config['default'])
