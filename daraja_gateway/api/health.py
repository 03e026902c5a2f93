"""
Health Check Endpoints

``/health`` reports on the stores the gateway cannot work without and on
two gateway-specific signals: credentials still encrypted under a retired
vault key, and webhook deliveries sitting in the dead-letter queue.
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify

from daraja_gateway.extensions import db, redis_client
from daraja_gateway.gateway import get_gateway
from daraja_gateway.models import Credential, WebhookDelivery

health_bp = Blueprint('health', __name__)


def _now():
    return datetime.now(timezone.utc).isoformat()


def _probe(name, check):
    try:
        check()
        return {'status': 'healthy', 'message': f'{name} connection OK'}
    except Exception as e:
        return {'status': 'unhealthy', 'message': f'{name} error: {e}'}


def _vault_status():
    active = get_gateway().vault.keyring.active_key_id
    stale = Credential.query.filter(Credential.key_id != active).count()
    return {
        'status': 'healthy',
        'active_key_id': active,
        'credentials_pending_rotation': stale,
    }


def _webhook_status():
    dead = WebhookDelivery.query.filter(WebhookDelivery.failed_at.isnot(None)).count()
    return {
        'status': 'healthy' if dead == 0 else 'degraded',
        'dead_letter': dead,
    }


@health_bp.route('/health', methods=['GET'])
def health_check():
    """
    Gateway health

    Returns:
        200 while the database and Redis answer (webhook backlog only degrades)
        503 otherwise
    """
    checks = {
        'database': _probe('Database', lambda: db.session.execute(db.text('SELECT 1'))),
        'redis': _probe('Redis', redis_client.ping),
    }
    overall_healthy = all(check['status'] == 'healthy' for check in checks.values())

    if checks['database']['status'] == 'healthy':
        checks['vault'] = _vault_status()
        checks['webhooks'] = _webhook_status()

    return jsonify({
        'status': 'healthy' if overall_healthy else 'unhealthy',
        'timestamp': _now(),
        'service': 'daraja-gateway',
        'checks': checks
    }), 200 if overall_healthy else 503


@health_bp.route('/health/live', methods=['GET'])
def liveness_probe():
    """Process is up; touches no backing store"""
    return jsonify({'status': 'alive', 'timestamp': _now()}), 200
