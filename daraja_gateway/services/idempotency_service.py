"""
Request idempotency

Every mutating merchant endpoint requires an ``Idempotency-Key`` header. The
first request with a key reserves it in Redis, runs, and stores its 2xx
response; a replay gets that response back without touching Daraja again.
A replay that arrives while the first request is still running gets 409, and
reusing a key with a different body gets 422.
"""

import hashlib
import json
from functools import wraps

from flask import request, jsonify

from daraja_gateway.extensions import redis_client

IN_FLIGHT = 'in-flight'


def _fingerprint() -> str:
    return hashlib.sha256(request.get_data() or b'').hexdigest()


class IdempotencyService:
    """Handle request idempotency using Redis"""

    DEFAULT_TTL = 86400  # 24 hours
    LOCK_TTL = 120

    @staticmethod
    def get_key(idempotency_key: str, scope: str = '') -> str:
        if scope:
            return f'idempotency:{scope}:{idempotency_key}'
        return f'idempotency:{idempotency_key}'

    @staticmethod
    def get_cached_response(idempotency_key: str, scope: str = ''):
        """Stored entry: ``{'status_code', 'body', 'fingerprint'}`` or the in-flight marker"""
        cached = redis_client.get(IdempotencyService.get_key(idempotency_key, scope))
        if not cached:
            return None
        return json.loads(cached)

    @staticmethod
    def reserve(idempotency_key: str, fingerprint: str, scope: str = '') -> bool:
        """Claim the key for one running request; False if somebody holds it"""
        marker = json.dumps({'state': IN_FLIGHT, 'fingerprint': fingerprint})
        return bool(redis_client.set(
            IdempotencyService.get_key(idempotency_key, scope), marker,
            ex=IdempotencyService.LOCK_TTL, nx=True
        ))

    @staticmethod
    def cache_response(idempotency_key: str, response_data: dict, status_code: int = 200,
                       ttl: int = DEFAULT_TTL, scope: str = '', fingerprint: str = ''):
        entry = {'status_code': status_code, 'body': response_data, 'fingerprint': fingerprint}
        redis_client.set(IdempotencyService.get_key(idempotency_key, scope), json.dumps(entry), ex=ttl)

    @staticmethod
    def delete_cached_response(idempotency_key: str, scope: str = ''):
        redis_client.delete(IdempotencyService.get_key(idempotency_key, scope))


def _error(message, status_code):
    return jsonify({'success': False, 'error': message}), status_code


def idempotent(ttl: int = IdempotencyService.DEFAULT_TTL):
    """
    Make a mutating endpoint idempotent.

    Keys are scoped by merchant when the route carries ``merchant_id`` so two
    merchants may reuse the same Idempotency-Key value. Non-2xx responses
    release the key so the caller can retry.
    """

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            idempotency_key = request.headers.get('Idempotency-Key')
            if not idempotency_key:
                return _error('Missing Idempotency-Key header', 400)

            scope = str(kwargs.get('merchant_id', ''))
            fingerprint = _fingerprint()

            if not IdempotencyService.reserve(idempotency_key, fingerprint, scope):
                cached = IdempotencyService.get_cached_response(idempotency_key, scope) or {}
                if cached.get('fingerprint', fingerprint) != fingerprint:
                    return _error('Idempotency-Key was already used with a different request body', 422)
                if cached.get('state') == IN_FLIGHT or 'body' not in cached:
                    return _error('A request with this Idempotency-Key is still being processed', 409)
                return jsonify(cached['body']), cached['status_code']

            try:
                result = f(*args, **kwargs)
            except Exception:
                IdempotencyService.delete_cached_response(idempotency_key, scope)
                raise

            response_data, status_code = result if isinstance(result, tuple) else (result, 200)
            response_json = response_data.get_json() if hasattr(response_data, 'get_json') else response_data

            if 200 <= status_code < 300:
                IdempotencyService.cache_response(idempotency_key, response_json, status_code, ttl, scope,
                                                  fingerprint)
            else:
                IdempotencyService.delete_cached_response(idempotency_key, scope)

            return result

        return decorated_function

    return decorator
