import uuid
from datetime import datetime

from daraja_gateway.extensions import db


class Webhook(db.Model):
    __tablename__ = 'webhooks'

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id = db.Column(db.Uuid, db.ForeignKey('merchants.id'), nullable=False, index=True)

    url = db.Column(db.String(2048), nullable=False)
    secret = db.Column(db.String(255), nullable=False)
    events = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    deliveries = db.relationship('WebhookDelivery', backref='webhook', lazy='dynamic')

    def is_subscribed_to(self, event_kind: str) -> bool:
        return event_kind in (self.events or [])

    def to_dict(self):
        return {
            'id': str(self.id),
            'merchant_id': str(self.merchant_id),
            'url': self.url,
            'events': self.events,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Webhook {self.id} - {self.url}>'
