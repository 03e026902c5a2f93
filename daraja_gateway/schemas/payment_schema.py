from marshmallow import Schema, fields, validate, validates, ValidationError


class _AmountMixin:

    @validates('amount')
    def validate_amount(self, value, **kwargs):
        if value is not None and value <= 0:
            raise ValidationError('Amount must be greater than 0')


class ChargeSchema(_AmountMixin, Schema):
    """STK Push charge schema"""
    amount = fields.Decimal(required=True, places=2)
    phone = fields.Str(required=True)
    account_reference = fields.Str(required=True, validate=validate.Length(min=1))
    description = fields.Str(required=False)
    transaction_type = fields.Str(
        required=False,
        load_default='CustomerPayBillOnline',
        validate=validate.OneOf(['CustomerPayBillOnline', 'CustomerBuyGoodsOnline'])
    )


class PayoutSchema(_AmountMixin, Schema):
    """B2C payout schema"""
    amount = fields.Decimal(required=True, places=2)
    phone = fields.Str(required=True)
    command_id = fields.Str(
        required=False,
        load_default='BusinessPayment',
        validate=validate.OneOf(['SalaryPayment', 'BusinessPayment', 'PromotionPayment'])
    )
    remarks = fields.Str(required=False)
    occasion = fields.Str(required=False)


class BusinessPaymentSchema(_AmountMixin, Schema):
    """B2B payment schema"""
    amount = fields.Decimal(required=True, places=2)
    receiver_short_code = fields.Str(required=True)
    account_reference = fields.Str(required=True)
    command_id = fields.Str(required=False, load_default='BusinessPayBill')
    sender_identifier_type = fields.Str(required=False, load_default='4')
    receiver_identifier_type = fields.Str(required=False, load_default='4')
    remarks = fields.Str(required=False)


class SimulateC2BSchema(_AmountMixin, Schema):
    """Sandbox C2B simulation schema"""
    amount = fields.Decimal(required=True, places=2)
    phone = fields.Str(required=True)
    bill_ref_number = fields.Str(required=False)
    command_id = fields.Str(
        required=False,
        load_default='CustomerPayBillOnline',
        validate=validate.OneOf(['CustomerPayBillOnline', 'CustomerBuyGoodsOnline'])
    )


class RegisterUrlSchema(Schema):
    """C2B URL registration schema"""
    response_type = fields.Str(
        required=False,
        load_default='Completed',
        validate=validate.OneOf(['Completed', 'Cancelled'])
    )
    confirmation_url = fields.Url(required=False)
    validation_url = fields.Url(required=False)


class ReversalSchema(_AmountMixin, Schema):
    """Reversal schema"""
    transaction_id = fields.Str(required=True)
    amount = fields.Decimal(required=True, places=2)
    remarks = fields.Str(required=False)
    occasion = fields.Str(required=False)


class TransactionStatusQuerySchema(Schema):
    """Transaction status query schema"""
    transaction_id = fields.Str(required=True)
    identifier_type = fields.Str(required=False, load_default='4')
    remarks = fields.Str(required=False)


class QRCodeSchema(_AmountMixin, Schema):
    """Dynamic QR schema"""
    amount = fields.Decimal(required=True, places=2)
    ref_no = fields.Str(required=True)
    trx_code = fields.Str(required=False, load_default='PB', validate=validate.OneOf(['BG', 'WA', 'PB', 'SM', 'SB']))
    merchant_name = fields.Str(required=False)
    cpi = fields.Str(required=False)
    size = fields.Str(required=False, load_default='300')


class TransactionSchema(Schema):
    """Transaction response schema"""
    id = fields.UUID(dump_only=True)
    merchant_id = fields.UUID(dump_only=True)
    provider_transaction_id = fields.Str(dump_only=True)
    kind = fields.Str(dump_only=True)
    amount = fields.Float(dump_only=True)
    status = fields.Str(dump_only=True)
    phone_number = fields.Str(dump_only=True)
    account_reference = fields.Str(dump_only=True)
    description = fields.Str(dump_only=True)
    metadata = fields.Dict(attribute='provider_metadata', dump_only=True)
    created_at = fields.DateTime(dump_only=True)
    updated_at = fields.DateTime(dump_only=True)
    completed_at = fields.DateTime(dump_only=True)
