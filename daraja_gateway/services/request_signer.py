"""
Request Signer
Derives the password, timestamp and security credential fields Daraja requires.

Password = Base64(BusinessShortCode + Passkey + Timestamp)
Timestamp = YYYYMMDDHHMMSS in East Africa Time (UTC+3)
SecurityCredential = Base64(RSA-PKCS#1 v1.5(initiator password, M-Pesa certificate))
"""

import base64
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from daraja_gateway.errors import EncryptionError
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

EAT = timezone(timedelta(hours=3), 'EAT')
TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'


class RequestSigner:
    """Computes per-request signing material; holds no secrets of its own"""

    def __init__(self, certificate_paths: Optional[Dict[str, str]] = None):
        """
        Args:
            certificate_paths: environment name ('sandbox' / 'production') -> PEM file path
        """
        self.certificate_paths = dict(certificate_paths or {})
        self._pem_cache: Dict[str, bytes] = {}

    @staticmethod
    def timestamp(now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(EAT).strftime(TIMESTAMP_FORMAT)

    @staticmethod
    def stk_password(short_code: str, passkey: str, timestamp: str) -> str:
        raw = f'{short_code}{passkey}{timestamp}'
        return base64.b64encode(raw.encode('utf-8')).decode('utf-8')

    def signed_fields(self, short_code: str, passkey: str, now: Optional[datetime] = None) -> Tuple[str, str]:
        """Return ``(timestamp, password)`` built from one clock reading."""
        if not passkey:
            raise EncryptionError('Lipa na M-Pesa passkey is not configured')
        timestamp = self.timestamp(now)
        return timestamp, self.stk_password(short_code, passkey, timestamp)

    def security_credential(self, initiator_password: str, environment: str,
                            certificate_pem: Optional[str] = None) -> str:
        """
        Encrypt the initiator password with the M-Pesa public certificate.

        An explicit ``certificate_pem`` always wins over the environment's
        configured certificate file.

        Raises:
            EncryptionError: no certificate resolves or encryption fails
        """
        if not initiator_password:
            raise EncryptionError('Initiator password is not configured')

        pem = certificate_pem.encode() if certificate_pem else self._environment_pem(environment)

        try:
            public_key = self._load_public_key(pem)
            encrypted = public_key.encrypt(initiator_password.encode('utf-8'), padding.PKCS1v15())
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f'Failed to build security credential: {exc}') from exc

        return base64.b64encode(encrypted).decode('utf-8')

    def _environment_pem(self, environment: str) -> bytes:
        if environment in self._pem_cache:
            return self._pem_cache[environment]

        path = self.certificate_paths.get(environment)
        if not path:
            raise EncryptionError(f'No M-Pesa certificate configured for environment "{environment}"')

        try:
            with open(path, 'rb') as fh:
                pem = fh.read()
        except OSError as exc:
            raise EncryptionError(f'Cannot read M-Pesa certificate for "{environment}": {exc}') from exc

        logger.info('Loaded M-Pesa %s certificate from %s', environment, os.path.basename(path))
        self._pem_cache[environment] = pem
        return pem

    @staticmethod
    def _load_public_key(pem: bytes) -> rsa.RSAPublicKey:
        if b'BEGIN CERTIFICATE' in pem:
            public_key = x509.load_pem_x509_certificate(pem).public_key()
        else:
            public_key = load_pem_public_key(pem)

        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError('certificate does not carry an RSA public key')
        return public_key
