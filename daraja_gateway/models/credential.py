import uuid
from datetime import datetime

from daraja_gateway.extensions import db


class Credential(db.Model):
    """
    Daraja API credentials for one merchant.

    Secret columns hold vault ciphertext only; use CredentialVault to write
    or read them. ``key_id`` names the vault key the row is encrypted with.
    """
    __tablename__ = 'credentials'

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id = db.Column(db.Uuid, db.ForeignKey('merchants.id'), unique=True, nullable=False)

    # Encrypted credentials
    consumer_key = db.Column(db.Text, nullable=False)
    consumer_secret = db.Column(db.Text, nullable=False)
    passkey = db.Column(db.Text)
    initiator_password = db.Column(db.Text)

    # Not secret
    initiator_name = db.Column(db.String(255))
    certificate_pem = db.Column(db.Text)

    key_id = db.Column(db.String(50), nullable=False)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'merchant_id': str(self.merchant_id),
            'has_passkey': self.passkey is not None,
            'has_initiator': bool(self.initiator_name and self.initiator_password),
            'has_certificate': self.certificate_pem is not None,
            'key_id': self.key_id,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<Credential merchant={self.merchant_id} key={self.key_id}>'
