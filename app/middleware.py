from flask import request, jsonify, current_app
from flask_login import current_user
from functools import wraps
from threading import Lock
import logging
import time

logger = logging.getLogger(__name__)

# Path prefixes reachable without a session
LOGIN_WHITELIST_PREFIXES = (
    '/api/public/',
    '/api/payments/callback',
)


def setup_auth_middleware(app):

    @app.before_request
    def require_login():
        path = request.path

        if path.startswith(LOGIN_WHITELIST_PREFIXES):
            return None

        if path.startswith('/api/') and not current_user.is_authenticated:
            return jsonify({'error': 'Not logged in',
                            'login_required': True}), 401

        return None


def role_required(*allowed_roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({'error': 'Not logged in'}), 401

            # allowed_roles is a list of role names.
            if current_user.role.value not in allowed_roles:
                logger.warning(
                    "User %s attempted to access roles %s, current role: %s",
                    current_user.id,
                    allowed_roles,
                    current_user.role.value,
                )
                return jsonify({'error': 'Insufficient permissions'}), 403

            return f(*args, **kwargs)
        return decorated_function
    return decorator


class FixedWindowLimiter:
    """Per-key request counter over fixed time windows, held in memory."""

    def __init__(self):
        # key -> (window index, count, window end)
        self._hits = {}
        self._next_sweep = 0
        self._lock = Lock()

    def hit(self, key, limit, window_seconds, now=None):
        now = time.monotonic() if now is None else now
        window = int(now // window_seconds)
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + window_seconds
            start, count, _ = self._hits.get(key, (window, 0, None))
            if start != window:
                start, count = window, 0
            count += 1
            self._hits[key] = (start, count, (window + 1) * window_seconds)
        return count <= limit

    def _sweep(self, now):
        expired = [
            key for key, (_, _, ends_at) in self._hits.items()
            if ends_at <= now
        ]
        for key in expired:
            del self._hits[key]

    def __len__(self):
        return len(self._hits)

    def reset(self):
        with self._lock:
            self._hits.clear()
            self._next_sweep = 0


limiter = FixedWindowLimiter()


def rate_limited(scope, limit_key, window_key):
    """Limit an endpoint per client IP using two config entries."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            limit = current_app.config[limit_key]
            window = current_app.config[window_key]
            client = request.remote_addr or 'unknown'
            if not limiter.hit((scope, client), limit, window):
                logger.warning(
                    "Rate limit exceeded scope=%s client=%s", scope, client)
                return jsonify({
                    'error': 'Too many requests',
                    'code': 'RATE_LIMITED',
                }), 429
            return f(*args, **kwargs)
        return decorated_function
    return decorator
