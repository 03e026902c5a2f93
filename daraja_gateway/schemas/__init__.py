"""
Schemas Package
Marshmallow schemas for request/response validation
"""

from daraja_gateway.schemas.payment_schema import (
    ChargeSchema,
    PayoutSchema,
    BusinessPaymentSchema,
    SimulateC2BSchema,
    RegisterUrlSchema,
    ReversalSchema,
    TransactionStatusQuerySchema,
    QRCodeSchema,
    TransactionSchema
)
from daraja_gateway.schemas.credential_schema import StoreCredentialsSchema
from daraja_gateway.schemas.webhook_schema import (
    WebhookDeliverySchema,
    StkCallbackSchema,
    ResultCallbackSchema,
    C2BConfirmationSchema
)

__all__ = [
    'ChargeSchema',
    'PayoutSchema',
    'BusinessPaymentSchema',
    'SimulateC2BSchema',
    'RegisterUrlSchema',
    'ReversalSchema',
    'TransactionStatusQuerySchema',
    'QRCodeSchema',
    'TransactionSchema',
    'StoreCredentialsSchema',
    'WebhookDeliverySchema',
    'StkCallbackSchema',
    'ResultCallbackSchema',
    'C2BConfirmationSchema'
]
