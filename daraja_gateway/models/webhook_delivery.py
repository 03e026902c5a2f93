import uuid
from datetime import datetime

from daraja_gateway.extensions import db


class WebhookDelivery(db.Model):
    """One event delivered (or being delivered) to one merchant webhook. Rows are never deleted."""
    __tablename__ = 'webhook_deliveries'
    __table_args__ = (
        db.UniqueConstraint('webhook_id', 'event_id', name='uq_webhook_delivery_event'),
    )

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    webhook_id = db.Column(db.Uuid, db.ForeignKey('webhooks.id'), nullable=False, index=True)
    transaction_id = db.Column(db.Uuid, db.ForeignKey('transactions.id'), index=True)

    event_id = db.Column(db.String(64), nullable=False, index=True)
    event_type = db.Column(db.String(50), nullable=False)
    payload = db.Column(db.JSON, nullable=False)

    # Last attempt
    response_status = db.Column(db.Integer)
    response_body = db.Column(db.Text)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    attempt_log = db.Column(db.JSON, nullable=False, default=list)
    last_attempt_at = db.Column(db.DateTime)
    next_attempt_at = db.Column(db.DateTime, index=True)

    delivered_at = db.Column(db.DateTime)
    failed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_finished(self) -> bool:
        return self.delivered_at is not None or self.failed_at is not None

    def to_dict(self):
        return {
            'id': str(self.id),
            'webhook_id': str(self.webhook_id),
            'transaction_id': str(self.transaction_id) if self.transaction_id else None,
            'event_id': self.event_id,
            'event_type': self.event_type,
            'payload': self.payload,
            'response_status': self.response_status,
            'response_body': self.response_body,
            'attempts': self.attempts,
            'attempt_log': self.attempt_log,
            'last_attempt_at': self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            'next_attempt_at': self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            'delivered_at': self.delivered_at.isoformat() if self.delivered_at else None,
            'failed_at': self.failed_at.isoformat() if self.failed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<WebhookDelivery {self.event_id} - attempts={self.attempts}>'
