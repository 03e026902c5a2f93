"""
Webhook Validation Schemas
"""

from marshmallow import INCLUDE, Schema, fields, validates, ValidationError


class WebhookDeliverySchema(Schema):
    """Webhook delivery schema for responses"""
    id = fields.UUID(dump_only=True)
    webhook_id = fields.UUID(dump_only=True)
    transaction_id = fields.UUID(dump_only=True)
    event_id = fields.Str(dump_only=True)
    event_type = fields.Str(dump_only=True)
    payload = fields.Dict(dump_only=True)
    response_status = fields.Int(dump_only=True)
    response_body = fields.Str(dump_only=True)
    attempts = fields.Int(dump_only=True)
    attempt_log = fields.List(fields.Dict(), dump_only=True)
    last_attempt_at = fields.DateTime(dump_only=True)
    next_attempt_at = fields.DateTime(dump_only=True)
    delivered_at = fields.DateTime(dump_only=True)
    failed_at = fields.DateTime(dump_only=True)
    created_at = fields.DateTime(dump_only=True)


class StkCallbackSchema(Schema):
    """M-Pesa STK callback validation schema"""
    Body = fields.Dict(required=True)

    @validates('Body')
    def validate_body(self, value, **kwargs):
        if 'stkCallback' not in value:
            raise ValidationError('Missing stkCallback in Body')


class ResultCallbackSchema(Schema):
    """B2C / B2B / reversal / status result validation schema"""
    Result = fields.Dict(required=True)

    @validates('Result')
    def validate_result(self, value, **kwargs):
        if 'ResultCode' not in value:
            raise ValidationError('Missing ResultCode in Result')


class C2BConfirmationSchema(Schema):
    """C2B confirmation validation schema; unknown Daraja fields are kept"""
    TransID = fields.Str(required=True)
    TransAmount = fields.Raw(required=True)
    BusinessShortCode = fields.Raw(required=True)

    class Meta:
        unknown = INCLUDE
