"""
Utils Package
Utility functions and helpers
"""

from daraja_gateway.utils.encryption import Keyring, parse_keyring, hmac_sha256_hex
from daraja_gateway.utils.logger import get_logger, RequestLogger
from daraja_gateway.utils.locks import KeyedLock
from daraja_gateway.utils.phone import normalize_strict, normalize_permissive, msisdn_to_int

__all__ = [
    'Keyring',
    'parse_keyring',
    'hmac_sha256_hex',
    'get_logger',
    'RequestLogger',
    'KeyedLock',
    'normalize_strict',
    'normalize_permissive',
    'msisdn_to_int',
]
