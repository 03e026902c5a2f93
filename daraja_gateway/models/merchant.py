import uuid
from datetime import datetime

from daraja_gateway.extensions import db


class Merchant(db.Model):
    __tablename__ = 'merchants'

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)

    name = db.Column(db.String(255), nullable=False)
    environment = db.Column(db.String(20), nullable=False, default='sandbox')

    # Lipa na M-Pesa shortcode (Paybill) and optional Buy Goods till
    short_code = db.Column(db.String(20), nullable=False, index=True)
    till_number = db.Column(db.String(20))

    #Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    credential = db.relationship('Credential', backref='merchant', uselist=False, cascade='all, delete-orphan')
    webhooks = db.relationship('Webhook', backref='merchant', lazy='dynamic', cascade='all, delete-orphan')

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'name': self.name,
            'environment': self.environment,
            'short_code': self.short_code,
            'till_number': self.till_number,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<Merchant {self.id} - {self.short_code}>'
