"""
Logging Configuration

Every gateway module logs through ``get_logger(__name__)``. Handlers are
attached once per logger name: stdout for the console and, when the log
directory is writable, a rotating ``daraja-gateway.log``.

Credentials travel through this service on almost every request, so each
handler carries a ``RedactingFilter`` that scrubs bearer tokens, security
credentials, STK passwords and full MSISDNs out of the formatted message.
"""

import logging
import os
import re
import sys
import time
from logging.handlers import RotatingFileHandler

LOG_DIR = os.getenv('LOG_DIR', 'logs')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_FILE = 'daraja-gateway.log'

_REDACTIONS = [
    (re.compile(r'(Bearer\s+)[A-Za-z0-9._\-]+'), r'\1***'),
    (re.compile(r'(Basic\s+)[A-Za-z0-9+/=]+'), r'\1***'),
    (re.compile(r'''(["']?(?:SecurityCredential|Password|passkey|consumer_secret|initiator_password)["']?\s*[:=]\s*["']?)[^"',\s}]+''',
                re.IGNORECASE), r'\1***'),
    (re.compile(r'\b(254[17]\d{2})\d{3}(\d{3})\b'), r'\1***\2'),
]


def redact(message: str) -> str:
    """Scrub secrets and phone numbers out of a log line"""
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message


class RedactingFilter(logging.Filter):
    """Rewrites the record so no handler ever sees the raw secret"""

    def filter(self, record):
        message = redact(record.getMessage())
        record.msg = message
        record.args = None
        return True


def _file_handler():
    try:
        os.makedirs(LOG_DIR, exist_ok=True)
    except OSError:
        return None

    handler = RotatingFileHandler(
        os.path.join(LOG_DIR, LOG_FILE),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    return handler


def get_logger(name: str) -> logging.Logger:
    """
    Get a gateway logger

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger with console, optional file handler and redaction
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL)
    # every gateway logger has its own handlers
    logger.propagate = False
    redacting = RedactingFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter('%(levelname)s - %(name)s - %(message)s'))
    console_handler.addFilter(redacting)
    logger.addHandler(console_handler)

    file_handler = _file_handler()
    if file_handler is not None:
        file_handler.addFilter(redacting)
        logger.addHandler(file_handler)

    return logger


class RequestLogger:
    """Access log for the HTTP surface: one line per request with its latency"""

    def __init__(self, app=None):
        self.app = app
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        from flask import g, request

        logger = get_logger('daraja_gateway.access')

        @app.before_request
        def start_timer():
            g.request_started = time.monotonic()

        @app.after_request
        def log_response(response):
            started = g.pop('request_started', None)
            elapsed_ms = (time.monotonic() - started) * 1000 if started is not None else 0.0
            logger.info(
                '%s %s %s %.1fms ip=%s',
                request.method, request.path, response.status_code, elapsed_ms, request.remote_addr
            )
            return response
