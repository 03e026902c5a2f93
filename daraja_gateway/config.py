import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key')

    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'postgresql://localhost/daraja_gateway_dev')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

    # Celery
    CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', REDIS_URL)
    CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', REDIS_URL)
    CELERY_TASK_ALWAYS_EAGER = False

    # Credential vault: "key_id:base64key,key_id:base64key"
    VAULT_KEYS = os.getenv('VAULT_KEYS', '')
    VAULT_ACTIVE_KEY_ID = os.getenv('VAULT_ACTIVE_KEY_ID', '')

    # Daraja
    MPESA_CERTIFICATES = {
        'sandbox': os.getenv('MPESA_CERTIFICATE_SANDBOX', ''),
        'production': os.getenv('MPESA_CERTIFICATE_PRODUCTION', ''),
    }
    MPESA_CALLBACK_BASE_URL = os.getenv('MPESA_CALLBACK_BASE_URL', '')
    MPESA_ENFORCE_IP_WHITELIST = _env_bool('MPESA_ENFORCE_IP_WHITELIST', True)
    # Reverse proxies in front of the app; X-Forwarded-For is ignored when 0
    PROXY_FIX_X_FOR = int(os.getenv('PROXY_FIX_X_FOR', 0))
    TOKEN_REFRESH_MARGIN = int(os.getenv('TOKEN_REFRESH_MARGIN', 60))
    HTTP_TIMEOUT = int(os.getenv('HTTP_TIMEOUT', 30))

    # Outbound merchant webhooks
    WEBHOOK_MAX_ATTEMPTS = int(os.getenv('WEBHOOK_MAX_ATTEMPTS', 8))
    WEBHOOK_BACKOFF_BASE = int(os.getenv('WEBHOOK_BACKOFF_BASE', 30))
    WEBHOOK_BACKOFF_CAP = int(os.getenv('WEBHOOK_BACKOFF_CAP', 6 * 3600))
    WEBHOOK_TIMEOUT = int(os.getenv('WEBHOOK_TIMEOUT', 10))
    WEBHOOK_RESPONSE_BODY_LIMIT = 2048


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False
    MPESA_ENFORCE_IP_WHITELIST = _env_bool('MPESA_ENFORCE_IP_WHITELIST', False)


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    CELERY_TASK_ALWAYS_EAGER = True
    MPESA_ENFORCE_IP_WHITELIST = False
    MPESA_CALLBACK_BASE_URL = 'https://gateway.test'
    # 32 zero bytes and 32 0x01 bytes, base64 encoded
    VAULT_KEYS = (
        'k1:AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=,'
        'k2:AQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQE='
    )
    VAULT_ACTIVE_KEY_ID = 'k1'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
