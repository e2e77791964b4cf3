"""
Middleware
"""
from .auth import require_auth, require_admin, get_current_api_key, get_current_user_id

__all__ = ['require_auth', 'require_admin', 'get_current_api_key', 'get_current_user_id']
