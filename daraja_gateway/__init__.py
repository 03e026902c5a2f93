import click
from flask import Flask, jsonify
from flask.cli import AppGroup
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix

from daraja_gateway.config import config
from daraja_gateway.errors import AppError
from daraja_gateway.extensions import db, migrate, redis_client, celery_app
from daraja_gateway.extentions.celery_extention import init_celery
from daraja_gateway.utils.logger import RequestLogger, get_logger

logger = get_logger(__name__)


def create_app(config_name='development', test_config=None):
    """Application factory pattern"""
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    # Callers are only trusted through the configured number of proxy hops
    if app.config.get('PROXY_FIX_X_FOR'):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config['PROXY_FIX_X_FOR'])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    redis_client.init_app(app)
    CORS(app)
    init_celery(celery_app, app)
    RequestLogger(app)

    from daraja_gateway.gateway import Gateway
    Gateway(app.config).init_app(app)

    # Register blueprints
    from daraja_gateway.api import register_blueprints
    register_blueprints(app)

    # Error handlers
    register_error_handlers(app)

    register_commands(app)

    return app


def register_error_handlers(app):
    """Register error handlers"""

    @app.errorhandler(AppError)
    def app_error(error):
        if error.status_code >= 500:
            logger.error('%s: %r', error.error, error)
        return jsonify({'success': False, **error.to_dict()}), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({'success': False, 'error': 'Bad request', 'message': str(error)}), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'error': 'Not found', 'message': str(error)}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'success': False, 'error': 'Method not allowed', 'message': str(error)}), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({'success': False, 'error': 'Internal server error', 'message': str(error)}), 500


def register_commands(app):
    """Register ``flask vault`` maintenance commands"""
    app.cli.add_command(vault_cli)


vault_cli = AppGroup('vault', help='Credential vault maintenance')


@vault_cli.command('rotate-key')
@click.argument('key_id')
def rotate_key(key_id):
    """Re-encrypt every stored credential under KEY_ID"""
    from daraja_gateway.gateway import get_gateway
    count = get_gateway().vault.rotate_encryption_key(key_id, actor='cli')
    click.echo(f'Re-encrypted {count} credential set(s) under key {key_id}')
