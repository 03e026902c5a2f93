import base64
import hashlib
import hmac
import os
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from daraja_gateway.errors import EncryptionError

NONCE_SIZE = 12


def parse_keyring(raw: str) -> Dict[str, bytes]:
    """
    Parse a "key_id:base64key,key_id:base64key" string into a keyring.

    Every key must decode to exactly 32 bytes (AES-256).
    """
    keyring = {}
    for entry in filter(None, (part.strip() for part in (raw or '').split(','))):
        key_id, _, encoded = entry.partition(':')
        try:
            key = base64.b64decode(encoded, validate=True)
        except ValueError as exc:
            raise EncryptionError(f'Vault key "{key_id}" is not valid base64') from exc
        if len(key) != 32:
            raise EncryptionError(f'Vault key "{key_id}" must be 32 bytes, got {len(key)}')
        keyring[key_id] = key
    return keyring


class Keyring:
    """AES-256-GCM keys addressed by id; one of them is active for new writes."""

    def __init__(self, keys: Dict[str, bytes], active_key_id: str):
        self.keys = dict(keys)
        self.active_key_id = active_key_id

    @classmethod
    def from_config(cls, config) -> 'Keyring':
        return cls(parse_keyring(config.get('VAULT_KEYS', '')), config.get('VAULT_ACTIVE_KEY_ID', ''))

    def _key(self, key_id: str) -> bytes:
        key = self.keys.get(key_id)
        if key is None:
            raise EncryptionError(f'Unknown vault key id "{key_id}"')
        return key

    def encrypt(self, plaintext: Optional[str], key_id: Optional[str] = None, aad: bytes = b'') -> Optional[str]:
        """Encrypt a string; returns base64(nonce + ciphertext)."""
        if plaintext is None:
            return None
        aesgcm = AESGCM(self._key(key_id or self.active_key_id))

        # Generate random IV (12 bytes for GCM)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = aesgcm.encrypt(nonce, plaintext.encode(), aad or None)
        return base64.b64encode(nonce + ciphertext).decode()

    def decrypt(self, token: Optional[str], key_id: str, aad: bytes = b'') -> Optional[str]:
        if token is None:
            return None
        aesgcm = AESGCM(self._key(key_id))
        try:
            raw = base64.b64decode(token, validate=True)
            plaintext = aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], aad or None)
        except (InvalidTag, ValueError) as exc:
            raise EncryptionError('Unable to decrypt credential: wrong key or corrupted ciphertext') from exc
        return plaintext.decode()


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
