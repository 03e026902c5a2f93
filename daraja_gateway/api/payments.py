from flask import Blueprint, request, jsonify
from marshmallow import ValidationError

from daraja_gateway.gateway import get_gateway
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
from daraja_gateway.services.idempotency_service import idempotent

payments_bp = Blueprint('payments', __name__)

charge_schema = ChargeSchema()
payout_schema = PayoutSchema()
business_payment_schema = BusinessPaymentSchema()
simulate_schema = SimulateC2BSchema()
register_url_schema = RegisterUrlSchema()
reversal_schema = ReversalSchema()
status_query_schema = TransactionStatusQuerySchema()
qr_code_schema = QRCodeSchema()
transaction_schema = TransactionSchema()


def _load(schema):
    return schema.load(request.get_json(silent=True) or {})


def _validation_failed(e: ValidationError):
    return jsonify({
        'success': False,
        'error': 'Validation error',
        'details': e.messages
    }), 400


def _created(transaction):
    return jsonify({
        'success': True,
        'data': transaction_schema.dump(transaction)
    }), 201


@payments_bp.route('/<uuid:merchant_id>/charges', methods=['POST'])
@idempotent(ttl=86400)
def initiate_charge(merchant_id):
    """
    Initiate an STK Push charge

    Headers:
        - Idempotency-Key: UUID v4 for request idempotency

    Body:
        {
            "amount": 100,
            "phone": "0712345678",
            "account_reference": "ORDER1",
            "description": "Order 1"
        }
    """
    try:
        data = _load(charge_schema)
    except ValidationError as e:
        return _validation_failed(e)

    transaction = get_gateway().payments.initiate_charge(
        merchant_id=merchant_id,
        amount=data['amount'],
        phone=data['phone'],
        account_reference=data['account_reference'],
        description=data.get('description'),
        transaction_type=data['transaction_type'],
        actor='api'
    )
    return _created(transaction)


@payments_bp.route('/<uuid:merchant_id>/charges/<checkout_request_id>/query', methods=['POST'])
def query_charge_status(merchant_id, checkout_request_id):
    """
    Poll Daraja for the outcome of an STK Push

    Path Parameters:
        - checkout_request_id: CheckoutRequestID returned by the charge
    """
    transaction = get_gateway().payments.query_charge_status(merchant_id, checkout_request_id, actor='api')

    return jsonify({
        'success': True,
        'data': transaction_schema.dump(transaction)
    }), 200


@payments_bp.route('/<uuid:merchant_id>/payouts', methods=['POST'])
@idempotent(ttl=86400)
def initiate_payout(merchant_id):
    """
    B2C payout to a customer's phone

    Headers:
        - Idempotency-Key: UUID v4 for request idempotency
    """
    try:
        data = _load(payout_schema)
    except ValidationError as e:
        return _validation_failed(e)

    transaction = get_gateway().payments.initiate_payout(
        merchant_id=merchant_id,
        amount=data['amount'],
        phone=data['phone'],
        command_id=data['command_id'],
        remarks=data.get('remarks'),
        occasion=data.get('occasion'),
        actor='api'
    )
    return _created(transaction)


@payments_bp.route('/<uuid:merchant_id>/business-payments', methods=['POST'])
@idempotent(ttl=86400)
def initiate_business_payment(merchant_id):
    """B2B payment to another shortcode"""
    try:
        data = _load(business_payment_schema)
    except ValidationError as e:
        return _validation_failed(e)

    transaction = get_gateway().payments.initiate_business_payment(
        merchant_id=merchant_id,
        amount=data['amount'],
        receiver_short_code=data['receiver_short_code'],
        account_reference=data['account_reference'],
        command_id=data['command_id'],
        sender_identifier_type=data['sender_identifier_type'],
        receiver_identifier_type=data['receiver_identifier_type'],
        remarks=data.get('remarks'),
        actor='api'
    )
    return _created(transaction)


@payments_bp.route('/<uuid:merchant_id>/c2b/simulate', methods=['POST'])
@idempotent(ttl=86400)
def simulate_incoming_payment(merchant_id):
    """Simulate a customer payment (sandbox merchants only)"""
    try:
        data = _load(simulate_schema)
    except ValidationError as e:
        return _validation_failed(e)

    transaction = get_gateway().payments.simulate_incoming_payment(
        merchant_id=merchant_id,
        amount=data['amount'],
        phone=data['phone'],
        bill_ref_number=data.get('bill_ref_number'),
        command_id=data['command_id']
    )
    return _created(transaction)


@payments_bp.route('/<uuid:merchant_id>/c2b/register-urls', methods=['POST'])
@idempotent(ttl=86400)
def register_callback_url(merchant_id):
    """
    Register C2B confirmation/validation URLs

    Defaults to this gateway's own callback endpoints.
    """
    try:
        data = _load(register_url_schema)
    except ValidationError as e:
        return _validation_failed(e)

    result = get_gateway().payments.register_callback_url(
        merchant_id=merchant_id,
        response_type=data['response_type'],
        confirmation_url=data.get('confirmation_url'),
        validation_url=data.get('validation_url'),
        actor='api'
    )

    return jsonify({
        'success': True,
        'data': result
    }), 200


@payments_bp.route('/<uuid:merchant_id>/reversals', methods=['POST'])
@idempotent(ttl=86400)
def reverse_transaction(merchant_id):
    """
    Reverse an M-Pesa transaction

    Body:
        {
            "transaction_id": "OEI2AK4Q16",
            "amount": 100,
            "remarks": "Customer refund"
        }
    """
    try:
        data = _load(reversal_schema)
    except ValidationError as e:
        return _validation_failed(e)

    transaction = get_gateway().payments.reverse_transaction(
        merchant_id=merchant_id,
        mpesa_transaction_id=data['transaction_id'],
        amount=data['amount'],
        remarks=data.get('remarks'),
        occasion=data.get('occasion'),
        actor='api'
    )
    return _created(transaction)


@payments_bp.route('/<uuid:merchant_id>/transaction-status', methods=['POST'])
@idempotent(ttl=86400)
def query_transaction_status(merchant_id):
    """Query any M-Pesa transaction by receipt number"""
    try:
        data = _load(status_query_schema)
    except ValidationError as e:
        return _validation_failed(e)

    transaction = get_gateway().payments.query_transaction_status(
        merchant_id=merchant_id,
        mpesa_transaction_id=data['transaction_id'],
        identifier_type=data['identifier_type'],
        remarks=data.get('remarks'),
        actor='api'
    )
    return _created(transaction)


@payments_bp.route('/<uuid:merchant_id>/qr-codes', methods=['POST'])
@idempotent(ttl=86400)
def generate_qr_code(merchant_id):
    """Generate a dynamic LIPA NA M-PESA QR code"""
    try:
        data = _load(qr_code_schema)
    except ValidationError as e:
        return _validation_failed(e)

    transaction = get_gateway().payments.generate_qr_code(
        merchant_id=merchant_id,
        amount=data['amount'],
        ref_no=data['ref_no'],
        trx_code=data['trx_code'],
        merchant_name=data.get('merchant_name'),
        cpi=data.get('cpi'),
        size=data['size']
    )
    return _created(transaction)


@payments_bp.route('/<uuid:merchant_id>/transactions', methods=['GET'])
def list_transactions(merchant_id):
    """
    List a merchant's transactions

    Query Parameters:
        - status: pending | success | failed | cancelled
        - kind: stk_push | b2c | b2b | c2b | qr_code | transaction_status | reversal
        - page: Page number (default: 1)
        - per_page: Items per page (default: 20, max: 100)
    """
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('per_page', 20, type=int), 100)

    pagination = get_gateway().payments.list_transactions(
        merchant_id,
        status=request.args.get('status'),
        kind=request.args.get('kind'),
        page=page,
        per_page=per_page
    )

    return jsonify({
        'success': True,
        'data': transaction_schema.dump(pagination.items, many=True),
        'pagination': {
            'page': pagination.page,
            'per_page': pagination.per_page,
            'total': pagination.total,
            'pages': pagination.pages
        }
    }), 200


@payments_bp.route('/<uuid:merchant_id>/transactions/<uuid:transaction_id>', methods=['GET'])
def get_transaction(merchant_id, transaction_id):
    """Get one transaction"""
    transaction = get_gateway().payments.get_transaction(merchant_id, transaction_id)

    return jsonify({
        'success': True,
        'data': transaction_schema.dump(transaction)
    }), 200
