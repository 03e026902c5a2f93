"""
API Blueprints Package
Registers all API blueprints
"""

from daraja_gateway.api.payments import payments_bp
from daraja_gateway.api.callbacks import callbacks_bp
from daraja_gateway.api.credentials import credentials_bp
from daraja_gateway.api.webhooks import webhooks_bp
from daraja_gateway.api.health import health_bp

__all__ = [
    'payments_bp',
    'callbacks_bp',
    'credentials_bp',
    'webhooks_bp',
    'health_bp',
    'register_blueprints'
]


def register_blueprints(app):
    """
    Register all blueprints with the Flask app

    Args:
        app: Flask application instance
    """

    url_base: str = '/api/v1'

    app.register_blueprint(payments_bp, url_prefix=f'{url_base}/merchants')
    app.register_blueprint(credentials_bp, url_prefix=f'{url_base}/merchants')
    app.register_blueprint(callbacks_bp, url_prefix=f'{url_base}/callbacks/mpesa')
    app.register_blueprint(webhooks_bp, url_prefix=url_base)
    app.register_blueprint(health_bp, url_prefix=url_base)
