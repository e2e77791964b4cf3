"""
Offline sync service

create_app() wires configuration, logging, the database, entity adapters and
the /api/sync blueprint into a Flask application.
"""
import time
from flask import Flask, g, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .config import get_config
from .extensions import db, migrate
from .api import sync_bp
from .services.sync import SyncError, adapter_registry
from .utils.logger import setup_logger, get_logger
from .utils.responses import ApiResponse

# Machine readable codes for HTTP errors raised by Flask itself
_HTTP_ERROR_CODES = {
    400: 'BAD_REQUEST',
    404: 'NOT_FOUND',
    405: 'METHOD_NOT_ALLOWED',
}


def create_app(config_class=None):
    """Build the application.

    Args:
        config_class: Config subclass; picked from FLASK_ENV when omitted.

    Returns:
        Flask application with adapters from SYNC_ADAPTERS registered
    """
    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logger(
        log_level=app.config.get('LOG_LEVEL', 'INFO'),
        log_file=app.config.get('LOG_FILE'),
        event_log_file=app.config.get('SYNC_EVENT_LOG_FILE'),
    )
    logger = get_logger('app')

    CORS(app, resources={r"/api/*": config_class.get_cors_config()})

    # Schema is managed with `flask db upgrade`
    db.init_app(app)
    migrate.init_app(app, db)
    adapter_registry.init_app(app)

    app.register_blueprint(sync_bp, url_prefix='/api')

    if app.config.get('SYNC_RELEASE_CLAIMS_ON_STARTUP'):
        with app.app_context():
            _release_stale_claims(logger)

    _register_error_handlers(app)
    _register_request_hooks(app)

    @app.route('/api/health')
    def health_check():
        """Liveness probe; /api/sync/health also lists the registered entity types."""
        return jsonify({'status': 'healthy', 'service': 'offline-sync'})

    logger.info(
        f"Sync service ready: database={app.config.get('SQLALCHEMY_DATABASE_URI', '')}, "
        f"entity types={adapter_registry.entity_types(app) or 'none'}, "
        f"max attempts={app.config.get('SYNC_MAX_ATTEMPTS')}"
    )
    return app


def _release_stale_claims(logger):
    """Recover device and item claims left behind by a crashed worker."""
    from .services.sync_service import SyncService
    try:
        released = SyncService.release_stale_claims()
    except Exception as e:
        db.session.rollback()
        logger.warning(f"Startup claim release skipped: {e}")
        return
    if released['items'] or released['devices']:
        logger.info(
            f"Startup released {released['items']} stuck changes "
            f"and {released['devices']} device claims"
        )


def _register_error_handlers(app):
    """Every error leaves the API in the ApiResponse envelope."""

    @app.errorhandler(SyncError)
    def handle_sync_error(error):
        db.session.rollback()
        if error.http_status >= 500:
            get_logger('error').warning(f"{error.code}: {error}")
        return ApiResponse.from_sync_error(error)

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code == 405:
            message = 'Method not allowed'
        else:
            message = error.description or error.name
        return ApiResponse.error(message, error.code, _HTTP_ERROR_CODES.get(error.code, 'HTTP_ERROR'))

    @app.errorhandler(500)
    def handle_internal_error(error):
        db.session.rollback()
        get_logger('error').exception(error)
        return ApiResponse.server_error('Internal server error')


def _register_request_hooks(app):
    """Warn about sync calls slower than SYNC_SLOW_REQUEST_MS."""
    threshold_ms = app.config.get('SYNC_SLOW_REQUEST_MS', 1000)

    @app.before_request
    def start_timer():
        g.start_time = time.time()

    @app.after_request
    def log_slow_request(response):
        started = g.pop('start_time', None)
        if started is None:
            return response
        duration = (time.time() - started) * 1000
        if duration > threshold_ms:
            get_logger('slow_request').warning(
                f"{request.method} {request.path} took {duration:.0f}ms "
                f"(user={request.headers.get('X-User-Id')}, status={response.status_code})"
            )
        return response
