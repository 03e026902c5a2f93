from daraja_gateway.models.merchant import Merchant
from daraja_gateway.models.credential import Credential
from daraja_gateway.models.webhook import Webhook
from daraja_gateway.models.transaction import Transaction, TransactionStatus, TransactionKind
from daraja_gateway.models.webhook_delivery import WebhookDelivery
from daraja_gateway.models.audit_log import AuditLog

__all__ = ['Merchant', 'Credential', 'Webhook', 'Transaction', 'TransactionStatus', 'TransactionKind',
           'WebhookDelivery', 'AuditLog']
