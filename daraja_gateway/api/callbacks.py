"""
Daraja callback endpoints

Safaricom POSTs asynchronous results here. Every parsed callback is
acknowledged with ResultCode 0 so Daraja stops retrying.
"""

from flask import Blueprint, request, jsonify
from marshmallow import ValidationError

from daraja_gateway.errors import NotFound
from daraja_gateway.gateway import get_gateway
from daraja_gateway.models import TransactionKind
from daraja_gateway.schemas.webhook_schema import (
    StkCallbackSchema,
    ResultCallbackSchema,
    C2BConfirmationSchema
)
from daraja_gateway.utils.decorators import safaricom_only
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

callbacks_bp = Blueprint('callbacks', __name__)

stk_callback_schema = StkCallbackSchema()
result_callback_schema = ResultCallbackSchema()
c2b_confirmation_schema = C2BConfirmationSchema()

RESULT_KINDS = {
    'b2c': TransactionKind.B2C,
    'b2b': TransactionKind.B2B,
    'reversal': TransactionKind.REVERSAL,
    'status': TransactionKind.TRANSACTION_STATUS,
}

ACCEPTED = {'ResultCode': 0, 'ResultDesc': 'Accepted'}


def _payload(schema=None):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError('Callback body must be a JSON object')
    if schema is not None:
        schema.load(payload)
    return payload


def _rejected(e: ValidationError):
    logger.warning('Malformed Daraja callback on %s: %s', request.path, e.messages)
    return jsonify({
        'ResultCode': 1,
        'ResultDesc': 'Rejected',
        'details': e.messages
    }), 400


def _result_kind(kind: str) -> TransactionKind:
    if kind not in RESULT_KINDS:
        raise NotFound(f'Unknown callback type "{kind}"')
    return RESULT_KINDS[kind]


@callbacks_bp.route('/stk', methods=['POST'])
@safaricom_only
def stk_callback():
    """
    STK Push result

    Body:
        {"Body": {"stkCallback": {"CheckoutRequestID": "...", "ResultCode": 0, ...}}}
    """
    try:
        payload = _payload(stk_callback_schema)
    except ValidationError as e:
        return _rejected(e)

    get_gateway().callbacks.handle_stk_callback(payload)
    return jsonify(ACCEPTED), 200


@callbacks_bp.route('/<kind>/result', methods=['POST'])
@safaricom_only
def result_callback(kind):
    """B2C, B2B, reversal and transaction status results"""
    transaction_kind = _result_kind(kind)
    try:
        payload = _payload(result_callback_schema)
    except ValidationError as e:
        return _rejected(e)

    get_gateway().callbacks.handle_result(transaction_kind, payload)
    return jsonify(ACCEPTED), 200


@callbacks_bp.route('/<kind>/timeout', methods=['POST'])
@safaricom_only
def timeout_callback(kind):
    """Queue timeout; the transaction is marked failed"""
    transaction_kind = _result_kind(kind)
    try:
        payload = _payload()
    except ValidationError as e:
        return _rejected(e)

    get_gateway().callbacks.handle_timeout(transaction_kind, payload)
    return jsonify(ACCEPTED), 200


@callbacks_bp.route('/c2b/confirmation', methods=['POST'])
@safaricom_only
def c2b_confirmation():
    """Completed customer payment to a merchant shortcode"""
    try:
        payload = _payload(c2b_confirmation_schema)
    except ValidationError as e:
        return _rejected(e)

    get_gateway().callbacks.handle_c2b_confirmation(payload)
    return jsonify(ACCEPTED), 200


@callbacks_bp.route('/c2b/validation', methods=['POST'])
@safaricom_only
def c2b_validation():
    """Accept or reject a customer payment before M-Pesa completes it"""
    try:
        payload = _payload()
    except ValidationError as e:
        return _rejected(e)

    return jsonify(get_gateway().callbacks.validate_c2b(payload)), 200
