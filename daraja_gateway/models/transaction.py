import uuid
from datetime import datetime
from enum import Enum

from daraja_gateway.extensions import db


class TransactionStatus(str, Enum):
    PENDING = 'pending'
    SUCCESS = 'success'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class TransactionKind(str, Enum):
    STK_PUSH = 'stk_push'
    STK_QUERY = 'stk_query'
    B2C = 'b2c'
    B2B = 'b2b'
    C2B = 'c2b'
    QR_CODE = 'qr_code'
    TRANSACTION_STATUS = 'transaction_status'
    REVERSAL = 'reversal'


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id = db.Column(db.Uuid, db.ForeignKey('merchants.id'), nullable=False, index=True)

    # CheckoutRequestID / ConversationID / TransID depending on the operation
    provider_transaction_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    kind = db.Column(db.String(30), nullable=False)

    # Payment details
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)

    phone_number = db.Column(db.String(20))
    account_reference = db.Column(db.String(255))
    description = db.Column(db.String(255))

    provider_metadata = db.Column(db.JSON)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    merchant = db.relationship('Merchant', backref=db.backref('transactions', lazy='dynamic'))

    @property
    def is_terminal(self) -> bool:
        return TransactionStatus(self.status).is_terminal

    def to_dict(self):
        return {
            'id': str(self.id),
            'merchant_id': str(self.merchant_id),
            'provider_transaction_id': self.provider_transaction_id,
            'kind': self.kind,
            'amount': float(self.amount) if self.amount is not None else None,
            'status': self.status,
            'phone_number': self.phone_number,
            'account_reference': self.account_reference,
            'description': self.description,
            'metadata': self.provider_metadata,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }

    def __repr__(self):
        return f'<Transaction {self.provider_transaction_id} - {self.status}>'
