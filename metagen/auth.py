"""
Request authentication for the HTTP API.

Users are authenticated by the upstream gateway, which forwards the user id in
``X-User-Id``. When ``API_ACCESS_KEY`` is configured the gateway must also
present it in ``X-API-Key``.
"""
import hmac
from datetime import datetime
from functools import wraps

from flask import g, jsonify, request

from .pipeline_config import config

USER_HEADER = 'X-User-Id'
API_KEY_HEADER = 'X-API-Key'


def _unauthorized(message: str):
    return jsonify({
        'success': False,
        'error': message,
        'error_code': 'Unauthorized',
        'timestamp': datetime.now().isoformat()
    }), 401


def current_user_id() -> str:
    return g.user_id


def require_user(view):
    """Reject requests without a user id (or with a wrong access key)"""
    @wraps(view)
    def wrapper(*args, **kwargs):
        if config.api_access_key:
            presented = request.headers.get(API_KEY_HEADER, '')
            if not hmac.compare_digest(presented.encode(), config.api_access_key.encode()):
                return _unauthorized('Invalid or missing API key')

        user_id = (request.headers.get(USER_HEADER) or '').strip()
        if not user_id:
            return _unauthorized(f'Missing {USER_HEADER} header')
        if len(user_id) > 64:
            return _unauthorized('Invalid user id')

        g.user_id = user_id
        return view(*args, **kwargs)

    return wrapper
