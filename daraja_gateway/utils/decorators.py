"""
Custom Decorators
"""

from functools import wraps
from flask import request, jsonify, current_app

from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

# Addresses Safaricom sends Daraja callbacks from
SAFARICOM_IPS = frozenset([
    '196.201.214.200',
    '196.201.214.206',
    '196.201.213.114',
    '196.201.214.207',
    '196.201.214.208',
    '196.201.213.44',
    '196.201.212.127',
    '196.201.212.128',
    '196.201.212.129',
    '196.201.212.136',
    '196.201.212.138',
    '196.201.212.74',
    '196.201.212.69',
])


def client_ip() -> str:
    """Peer address; ProxyFix rewrites it from X-Forwarded-For only for trusted hops"""
    return request.remote_addr


def safaricom_only(f):
    """
    Reject callbacks that do not come from Safaricom's published addresses

    Only enforced when MPESA_ENFORCE_IP_WHITELIST is set.

    Usage:
        @safaricom_only
        def stk_callback():
            ...
    """

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_app.config.get('MPESA_ENFORCE_IP_WHITELIST'):
            ip = client_ip()
            if ip not in SAFARICOM_IPS:
                logger.warning('Rejected Daraja callback from %s to %s', ip, request.path)
                return jsonify({
                    'error': 'Forbidden',
                    'message': 'Callback source address is not allowed'
                }), 403

        return f(*args, **kwargs)

    return decorated_function
