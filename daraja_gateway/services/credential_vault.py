"""
Credential Vault
Encrypts merchant Daraja credentials at rest and reveals them to the signed-request path only.
"""

import uuid
from dataclasses import dataclass, fields, replace
from typing import Optional

from daraja_gateway.errors import EncryptionError, ValidationError
from daraja_gateway.extensions import db
from daraja_gateway.models import Credential
from daraja_gateway.services.audit_service import AuditService
from daraja_gateway.utils.encryption import Keyring
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

SECRET_FIELDS = ('consumer_key', 'consumer_secret', 'passkey', 'initiator_password')


@dataclass(frozen=True)
class CredentialSet:
    consumer_key: str
    consumer_secret: str
    passkey: Optional[str] = None
    initiator_name: Optional[str] = None
    initiator_password: Optional[str] = None
    certificate_pem: Optional[str] = None

    def __repr__(self):
        shown = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in SECRET_FIELDS and value is not None:
                value = '***'
            shown.append(f'{f.name}={value!r}')
        return f'CredentialSet({", ".join(shown)})'

    __str__ = __repr__


class CredentialVault:
    """Stores one credential set per merchant, encrypted with the keyring's active key"""

    def __init__(self, keyring: Keyring):
        self.keyring = keyring

    @staticmethod
    def _aad(merchant_id) -> bytes:
        # Binds each ciphertext to its merchant so rows cannot be swapped
        return str(merchant_id).encode()

    def store(self, merchant_id: uuid.UUID, credentials: CredentialSet, actor: Optional[str] = None) -> Credential:
        """
        Encrypt and persist a credential set, replacing any previous set as a whole.
        """
        if not credentials.consumer_key or not credentials.consumer_secret:
            raise ValidationError('consumer_key and consumer_secret are required',
                                  operation='store_credentials', merchant_id=merchant_id)

        key_id = self.keyring.active_key_id
        aad = self._aad(merchant_id)

        record = Credential.query.filter_by(merchant_id=merchant_id).first()
        if record is None:
            record = Credential(merchant_id=merchant_id)
            db.session.add(record)

        for name in SECRET_FIELDS:
            setattr(record, name, self.keyring.encrypt(getattr(credentials, name), key_id, aad))
        record.initiator_name = credentials.initiator_name
        record.certificate_pem = credentials.certificate_pem
        record.key_id = key_id

        AuditService.log_event(
            event_type='credentials.stored',
            event_data={'key_id': key_id, 'fields': [n for n in SECRET_FIELDS if getattr(credentials, n)]},
            merchant_id=merchant_id,
            actor=actor,
            commit=False
        )
        db.session.commit()

        logger.info('Stored credentials for merchant %s under key %s', merchant_id, key_id)
        return record

    def has_credentials(self, merchant_id: uuid.UUID) -> bool:
        return Credential.query.filter_by(merchant_id=merchant_id).count() > 0

    def reveal(self, merchant_id: uuid.UUID, actor: str = 'system', purpose: Optional[str] = None) -> CredentialSet:
        """
        Decrypt a merchant's credentials for a single signed call.

        Every reveal is written to the audit log without any plaintext.

        Raises:
            ValidationError: merchant has no credentials configured
            EncryptionError: ciphertext cannot be decrypted with the recorded key
        """
        record = Credential.query.filter_by(merchant_id=merchant_id).first()
        if record is None:
            raise ValidationError('M-Pesa credentials are not configured for this merchant',
                                  operation=purpose, merchant_id=merchant_id)

        try:
            credentials = self._decrypt_record(record)
        except EncryptionError as exc:
            exc.operation = purpose
            exc.merchant_id = merchant_id
            logger.error('Credential decrypt failed for merchant %s (key %s)', merchant_id, record.key_id)
            raise

        AuditService.log_event(
            event_type='credentials.revealed',
            event_data={'purpose': purpose, 'key_id': record.key_id},
            merchant_id=merchant_id,
            actor=actor
        )
        return credentials

    def rotate_encryption_key(self, new_key_id: str, actor: Optional[str] = None) -> int:
        """
        Re-encrypt every stored credential under ``new_key_id``.

        Runs in one database transaction; rows go from old ciphertext straight
        to new ciphertext. Returns the number of rows re-encrypted.
        """
        if new_key_id not in self.keyring.keys:
            raise EncryptionError(f'Unknown vault key id "{new_key_id}"', operation='rotate_encryption_key')

        rotated = 0
        try:
            for record in Credential.query.filter(Credential.key_id != new_key_id).all():
                plain = self._decrypt_record(record)
                aad = self._aad(record.merchant_id)
                for name in SECRET_FIELDS:
                    setattr(record, name, self.keyring.encrypt(getattr(plain, name), new_key_id, aad))
                record.key_id = new_key_id
                rotated += 1

            AuditService.log_event(
                event_type='credentials.key_rotated',
                event_data={'key_id': new_key_id, 'rotated': rotated},
                actor=actor,
                commit=False
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.error('Key rotation to %s aborted; no credential was changed', new_key_id)
            raise

        self.keyring.active_key_id = new_key_id
        logger.info('Rotated %d credential set(s) to key %s', rotated, new_key_id)
        return rotated

    def _decrypt_record(self, record: Credential) -> CredentialSet:
        aad = self._aad(record.merchant_id)
        plain = {name: self.keyring.decrypt(getattr(record, name), record.key_id, aad) for name in SECRET_FIELDS}
        return replace(
            CredentialSet(consumer_key='', consumer_secret=''),
            initiator_name=record.initiator_name,
            certificate_pem=record.certificate_pem,
            **plain
        )
