"""
Daraja callback parsing.

Handles three callback shapes:
  1. STK Push callback    (Body.stkCallback)
  2. Result notification  (Result) for B2C, B2B, reversal and transaction status
  3. C2B confirmation     (flat body with TransID / TransAmount etc.)
"""

from typing import Any, Dict, Optional

from daraja_gateway.errors import ValidationError
from daraja_gateway.models.transaction import TransactionKind, TransactionStatus
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

RESULT_CODE_CANCELLED = '1032'


def map_result_code(code: Any) -> TransactionStatus:
    """0 -> success, 1032 (cancelled by user) -> cancelled, anything else -> failed"""
    code = str(code).strip()
    if code == '0':
        return TransactionStatus.SUCCESS
    if code == RESULT_CODE_CANCELLED:
        return TransactionStatus.CANCELLED
    return TransactionStatus.FAILED


def parse_callback(payload: Dict[str, Any], kind: Optional[TransactionKind] = None) -> Dict[str, Any]:
    """
    Normalise a callback body into
    ``{transaction_id, alternate_id, kind, status, amount, metadata}``.

    ``kind`` is the operation the callback URL was registered for; it is
    required to tell B2C, B2B, reversal and status results apart since
    they share one shape.

    Raises:
        ValidationError: the payload matches none of the known shapes
    """
    if not isinstance(payload, dict):
        raise ValidationError('Callback body must be a JSON object', operation='callback')

    stk = (payload.get('Body') or {}).get('stkCallback')
    if stk:
        return _parse_stk_callback(stk)

    result = payload.get('Result')
    if result:
        return _parse_result_callback(result, kind or TransactionKind.B2C)

    if 'TransID' in payload:
        return _parse_c2b_confirmation(payload)

    logger.warning('Unrecognised callback payload shape: %s', list(payload.keys()))
    raise ValidationError('Unrecognised callback payload', operation='callback')


def _parse_stk_callback(stk: Dict[str, Any]) -> Dict[str, Any]:
    result_code = str(stk.get('ResultCode', ''))

    # Extract CallbackMetadata items into a flat dict
    items = {}
    for item in (stk.get('CallbackMetadata') or {}).get('Item', []):
        items[item.get('Name', '')] = item.get('Value')

    metadata = {
        'merchant_request_id': stk.get('MerchantRequestID'),
        'checkout_request_id': stk.get('CheckoutRequestID'),
        'result_code': result_code,
        'result_desc': stk.get('ResultDesc'),
    }
    if items.get('MpesaReceiptNumber'):
        metadata['mpesa_receipt_number'] = items['MpesaReceiptNumber']
    if items.get('TransactionDate'):
        metadata['transaction_date'] = str(items['TransactionDate'])
    if items.get('PhoneNumber'):
        metadata['phone_number'] = str(items['PhoneNumber'])

    return {
        'transaction_id': stk.get('CheckoutRequestID', ''),
        'alternate_id': None,
        'kind': TransactionKind.STK_PUSH,
        'status': map_result_code(result_code),
        'amount': items.get('Amount'),
        'metadata': metadata,
    }


def _parse_result_callback(result: Dict[str, Any], kind: TransactionKind) -> Dict[str, Any]:
    result_code = str(result.get('ResultCode', ''))

    # Flatten ResultParameters; Daraja sends a single object when there is one entry
    raw_params = (result.get('ResultParameters') or {}).get('ResultParameter', [])
    if isinstance(raw_params, dict):
        raw_params = [raw_params]
    params = {p.get('Key', ''): p.get('Value') for p in raw_params}

    metadata = {
        'conversation_id': result.get('ConversationID'),
        'originator_conversation_id': result.get('OriginatorConversationID'),
        'result_code': result_code,
        'result_desc': result.get('ResultDesc'),
        'result_type': result.get('ResultType'),
        'mpesa_transaction_id': result.get('TransactionID'),
    }
    if params:
        metadata['result_parameters'] = params

    return {
        'transaction_id': result.get('ConversationID', ''),
        'alternate_id': result.get('OriginatorConversationID'),
        'kind': kind,
        'status': map_result_code(result_code),
        'amount': params.get('TransactionAmount') or params.get('Amount'),
        'metadata': metadata,
    }


def _parse_c2b_confirmation(payload: Dict[str, Any]) -> Dict[str, Any]:
    names = ' '.join(filter(None, (payload.get('FirstName'), payload.get('MiddleName'), payload.get('LastName'))))
    metadata = {
        'transaction_type': payload.get('TransactionType'),
        'trans_time': payload.get('TransTime'),
        'business_short_code': str(payload.get('BusinessShortCode', '')),
        'bill_ref_number': payload.get('BillRefNumber'),
        'invoice_number': payload.get('InvoiceNumber'),
        'org_account_balance': payload.get('OrgAccountBalance'),
        'third_party_trans_id': payload.get('ThirdPartyTransID'),
        'msisdn': payload.get('MSISDN'),
    }
    if names:
        metadata['customer_name'] = names

    return {
        'transaction_id': payload.get('TransID', ''),
        'alternate_id': None,
        'kind': TransactionKind.C2B,
        'status': TransactionStatus.SUCCESS,
        'amount': payload.get('TransAmount'),
        'metadata': metadata,
    }
