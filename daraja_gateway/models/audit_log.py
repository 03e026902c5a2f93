import uuid
from datetime import datetime

from daraja_gateway.extensions import db


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id = db.Column(db.Uuid, db.ForeignKey('merchants.id'), index=True)
    transaction_id = db.Column(db.Uuid, db.ForeignKey('transactions.id'), index=True)

    # Event details
    event_type = db.Column(db.String(100), nullable=False, index=True)
    event_data = db.Column(db.JSON)

    # Request context
    actor = db.Column(db.String(255))
    ip_address = db.Column(db.String(45))

    # Timestamp
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': str(self.id),
            'merchant_id': str(self.merchant_id) if self.merchant_id else None,
            'transaction_id': str(self.transaction_id) if self.transaction_id else None,
            'event_type': self.event_type,
            'event_data': self.event_data,
            'actor': self.actor,
            'ip_address': self.ip_address,
            'timestamp': self.timestamp.isoformat()
        }

    def __repr__(self):
        return f'<AuditLog {self.id} - {self.event_type}>'
