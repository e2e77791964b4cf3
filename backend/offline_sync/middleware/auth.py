"""
Authentication middleware
Protects the sync API endpoints
"""
from functools import wraps
from flask import current_app, g, request
from ..utils.responses import ApiResponse
from ..utils.validators import sanitize_string

USER_ID_HEADER = 'X-User-Id'
MAX_USER_ID_LENGTH = 64


def get_current_api_key() -> str:
    """Read the API key from the request headers"""
    return request.headers.get('X-API-Key', '')


def get_current_user_id() -> str:
    """Read the caller's user id set by the authenticating gateway"""
    return sanitize_string(request.headers.get(USER_ID_HEADER, ''), MAX_USER_ID_LENGTH)


def require_auth(f):
    """
    Basic authentication decorator

    Checks X-API-Key against the API_KEY setting (skipped when API_KEY is not
    set, development mode) and requires the X-User-Id header, exposed as
    g.user_id.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        expected_key = current_app.config.get('API_KEY')

        if expected_key:
            api_key = get_current_api_key()
            if not api_key:
                return ApiResponse.unauthorized('Missing API key, add the X-API-Key header')
            if api_key != expected_key:
                return ApiResponse.unauthorized('Invalid API key')

        user_id = get_current_user_id()
        if not user_id:
            return ApiResponse.unauthorized(f'Missing {USER_ID_HEADER} header')
        g.user_id = user_id

        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    """
    Administrator authentication decorator

    Guards maintenance operations. Requires the ADMIN_API_KEY setting.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = get_current_api_key()
        admin_key = current_app.config.get('ADMIN_API_KEY')

        # Without an admin key configured nobody gets in
        if not admin_key:
            return ApiResponse.forbidden(
                'This operation requires admin access, configure ADMIN_API_KEY'
            )

        if not api_key:
            return ApiResponse.unauthorized('Missing admin API key')

        if api_key != admin_key:
            return ApiResponse.forbidden('Invalid admin API key')

        return f(*args, **kwargs)
    return decorated
