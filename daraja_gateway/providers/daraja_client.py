"""
Daraja Client
HTTPS client for the Safaricom Daraja API.

Supported operations
--------------------
STK Push (Lipa na M-Pesa Online)
    POST /mpesa/stkpush/v1/processrequest
    POST /mpesa/stkpushquery/v1/query         (status poll)

B2C (business to customer / disbursements)
    POST /mpesa/b2c/v3/paymentrequest

B2B (business to business)
    POST /mpesa/b2b/v1/paymentrequest

C2B (till / paybill, server-to-server confirmation)
    POST /mpesa/c2b/v1/registerurl
    POST /mpesa/c2b/v1/simulate               (sandbox only)

Transaction Status (generic query)
    POST /mpesa/transactionstatus/v1/query

Reversal
    POST /mpesa/reversal/v1/request

Dynamic QR
    POST /mpesa/qrcode/v1/generate

Every call is authenticated with a Bearer token from the TokenCache.
The client performs no persistence; PaymentService records the outcome.
"""

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

from daraja_gateway.errors import ApiError, NetworkError, ValidationError
from daraja_gateway.models import Merchant, TransactionKind, TransactionStatus
from daraja_gateway.providers.callbacks import map_result_code
from daraja_gateway.services.credential_vault import CredentialSet
from daraja_gateway.services.request_signer import RequestSigner
from daraja_gateway.services.token_cache import BASE_URLS, TokenCache
from daraja_gateway.utils.logger import get_logger
from daraja_gateway.utils.phone import msisdn_to_int, normalize_permissive, normalize_strict

logger = get_logger(__name__)

# STK query answers with this code while the customer has not yet responded
STK_QUERY_PROCESSING = '500.001.1001'

ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13

# Callback path segment per asynchronous operation
RESULT_PATHS = {
    TransactionKind.B2C: 'b2c',
    TransactionKind.B2B: 'b2b',
    TransactionKind.REVERSAL: 'reversal',
    TransactionKind.TRANSACTION_STATUS: 'status',
}


def _is_rejection(code: Any) -> bool:
    # QR generation answers with a non-numeric request id in ResponseCode
    code = str(code).strip()
    return code.isdigit() and int(code) != 0


class DarajaClient:
    """One method per Daraja operation; returns normalised result dicts"""

    EP_STK_PUSH = '/mpesa/stkpush/v1/processrequest'
    EP_STK_QUERY = '/mpesa/stkpushquery/v1/query'
    EP_B2C = '/mpesa/b2c/v3/paymentrequest'
    EP_B2B = '/mpesa/b2b/v1/paymentrequest'
    EP_C2B_REGISTER = '/mpesa/c2b/v1/registerurl'
    EP_C2B_SIMULATE = '/mpesa/c2b/v1/simulate'
    EP_TX_STATUS = '/mpesa/transactionstatus/v1/query'
    EP_REVERSAL = '/mpesa/reversal/v1/request'
    EP_QR_CODE = '/mpesa/qrcode/v1/generate'

    def __init__(
            self,
            token_cache: TokenCache,
            signer: RequestSigner,
            callback_base_url: str = '',
            timeout: int = 30,
            session: Optional[requests.Session] = None
    ):
        self.token_cache = token_cache
        self.signer = signer
        self.callback_base_url = (callback_base_url or '').rstrip('/')
        self.timeout = timeout

        self._session = session or requests.Session()
        self._session.headers.update({'Content-Type': 'application/json'})

    # Callback URLs

    def stk_callback_url(self) -> str:
        return f'{self.callback_base_url}/api/v1/callbacks/mpesa/stk'

    def result_url(self, kind: TransactionKind) -> str:
        return f'{self.callback_base_url}/api/v1/callbacks/mpesa/{RESULT_PATHS[kind]}/result'

    def timeout_url(self, kind: TransactionKind) -> str:
        return f'{self.callback_base_url}/api/v1/callbacks/mpesa/{RESULT_PATHS[kind]}/timeout'

    def c2b_urls(self) -> Dict[str, str]:
        return {
            'confirmation': f'{self.callback_base_url}/api/v1/callbacks/mpesa/c2b/confirmation',
            'validation': f'{self.callback_base_url}/api/v1/callbacks/mpesa/c2b/validation',
        }

    # Operations

    def stk_push(
            self,
            merchant: Merchant,
            credentials: CredentialSet,
            amount,
            phone: str,
            account_reference: str,
            description: Optional[str] = None,
            transaction_type: str = 'CustomerPayBillOnline'
    ) -> Dict[str, Any]:
        """
        Prompt the customer's handset to authorise a charge.

        Returns:
            transaction_id  - CheckoutRequestID
            status          - pending
            additional_data - MerchantRequestID, customer message, raw response
        """
        operation = 'stk_push'
        amount = self._validate_amount(amount, merchant, operation)
        phone = normalize_strict(phone, {'field': 'phone', 'operation': operation, 'merchant_id': merchant.id})
        if not account_reference:
            raise ValidationError('account_reference is required', operation=operation, merchant_id=merchant.id)
        self._require(credentials.passkey, 'passkey', merchant, operation)

        token = self.token_cache.get_token(merchant.id)
        timestamp, password = self.signer.signed_fields(merchant.short_code, credentials.passkey)

        payload = {
            'BusinessShortCode': merchant.short_code,
            'Password': password,
            'Timestamp': timestamp,
            'TransactionType': transaction_type,
            'Amount': amount,
            'PartyA': phone,
            'PartyB': merchant.short_code,
            'PhoneNumber': phone,
            'CallBackURL': self.stk_callback_url(),
            'AccountReference': account_reference[:ACCOUNT_REFERENCE_MAX],
            'TransactionDesc': (description or 'Payment')[:TRANSACTION_DESC_MAX],
        }

        resp = self._post(merchant, token, self.EP_STK_PUSH, payload, operation)
        checkout_request_id = self._correlation_id(resp, ('CheckoutRequestID',), merchant, operation)

        return {
            'transaction_id': checkout_request_id,
            'status': TransactionStatus.PENDING,
            'phone_number': phone,
            'amount': amount,
            'additional_data': {
                'checkout_request_id': resp.get('CheckoutRequestID'),
                'merchant_request_id': resp.get('MerchantRequestID'),
                'response_code': resp.get('ResponseCode'),
                'response_description': resp.get('ResponseDescription'),
                'customer_message': resp.get('CustomerMessage'),
            },
        }

    def stk_query(self, merchant: Merchant, credentials: CredentialSet, checkout_request_id: str) -> Dict[str, Any]:
        """
        Poll the outcome of an STK Push by CheckoutRequestID.

        While the customer has not answered Daraja replies with error
        ``500.001.1001``; that surfaces as an ApiError the caller may treat
        as still pending.
        """
        operation = 'stk_query'
        if not checkout_request_id:
            raise ValidationError('checkout_request_id is required', operation=operation, merchant_id=merchant.id)
        self._require(credentials.passkey, 'passkey', merchant, operation)

        token = self.token_cache.get_token(merchant.id)
        timestamp, password = self.signer.signed_fields(merchant.short_code, credentials.passkey)

        payload = {
            'BusinessShortCode': merchant.short_code,
            'Password': password,
            'Timestamp': timestamp,
            'CheckoutRequestID': checkout_request_id,
        }

        resp = self._post(merchant, token, self.EP_STK_QUERY, payload, operation,
                          provider_transaction_id=checkout_request_id)

        result_code = str(resp.get('ResultCode', ''))
        return {
            'transaction_id': resp.get('CheckoutRequestID', checkout_request_id),
            'status': map_result_code(result_code),
            'additional_data': {
                'merchant_request_id': resp.get('MerchantRequestID'),
                'result_code': result_code,
                'result_desc': resp.get('ResultDesc'),
            },
        }

    def b2c_payment(
            self,
            merchant: Merchant,
            credentials: CredentialSet,
            amount,
            phone: str,
            command_id: str = 'BusinessPayment',
            remarks: Optional[str] = None,
            occasion: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send money from the merchant's shortcode to a customer.

        command_id options: "SalaryPayment", "BusinessPayment", "PromotionPayment".
        The final outcome is delivered to the b2c result URL.
        """
        operation = 'b2c'
        amount = self._validate_amount(amount, merchant, operation)
        phone = normalize_permissive(phone, {'field': 'phone', 'operation': operation, 'merchant_id': merchant.id})
        self._require_initiator(credentials, merchant, operation)

        token = self.token_cache.get_token(merchant.id)
        security_credential = self.signer.security_credential(
            credentials.initiator_password, merchant.environment, credentials.certificate_pem)

        payload = {
            'OriginatorConversationID': self._originator_conversation_id(),
            'InitiatorName': credentials.initiator_name,
            'SecurityCredential': security_credential,
            'CommandID': command_id,
            'Amount': amount,
            'PartyA': merchant.short_code,
            'PartyB': phone,
            'Remarks': remarks or 'Payment',
            'QueueTimeOutURL': self.timeout_url(TransactionKind.B2C),
            'ResultURL': self.result_url(TransactionKind.B2C),
            'Occasion': occasion or '',
        }

        resp = self._post(merchant, token, self.EP_B2C, payload, operation)
        return self._async_result(resp, merchant, operation, payload['OriginatorConversationID'],
                                  phone_number=phone, amount=amount)

    def b2b_payment(
            self,
            merchant: Merchant,
            credentials: CredentialSet,
            amount,
            receiver_short_code: str,
            account_reference: str,
            command_id: str = 'BusinessPayBill',
            sender_identifier_type: str = '4',
            receiver_identifier_type: str = '4',
            remarks: Optional[str] = None
    ) -> Dict[str, Any]:
        """Pay another business shortcode (paybill or till)."""
        operation = 'b2b'
        amount = self._validate_amount(amount, merchant, operation)
        if not receiver_short_code:
            raise ValidationError('receiver_short_code is required', operation=operation, merchant_id=merchant.id)
        if not account_reference:
            raise ValidationError('account_reference is required', operation=operation, merchant_id=merchant.id)
        self._require_initiator(credentials, merchant, operation)

        token = self.token_cache.get_token(merchant.id)
        security_credential = self.signer.security_credential(
            credentials.initiator_password, merchant.environment, credentials.certificate_pem)

        payload = {
            'Initiator': credentials.initiator_name,
            'SecurityCredential': security_credential,
            'CommandID': command_id,
            'SenderIdentifierType': sender_identifier_type,
            'RecieverIdentifierType': receiver_identifier_type,
            'Amount': amount,
            'PartyA': merchant.short_code,
            'PartyB': str(receiver_short_code),
            'AccountReference': account_reference,
            'Remarks': remarks or 'Payment',
            'QueueTimeOutURL': self.timeout_url(TransactionKind.B2B),
            'ResultURL': self.result_url(TransactionKind.B2B),
        }

        resp = self._post(merchant, token, self.EP_B2B, payload, operation)
        return self._async_result(resp, merchant, operation, amount=amount)

    def c2b_register_urls(
            self,
            merchant: Merchant,
            response_type: str = 'Completed',
            confirmation_url: Optional[str] = None,
            validation_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Register C2B confirmation and validation URLs for the merchant's shortcode.

        response_type: "Completed" (auto-accept) | "Cancelled" (reject when validation is unreachable)
        """
        operation = 'c2b_register'
        if response_type not in ('Completed', 'Cancelled'):
            raise ValidationError('response_type must be "Completed" or "Cancelled"',
                                  operation=operation, merchant_id=merchant.id)

        urls = self.c2b_urls()
        token = self.token_cache.get_token(merchant.id)

        payload = {
            'ShortCode': merchant.short_code,
            'ResponseType': response_type,
            'ConfirmationURL': confirmation_url or urls['confirmation'],
            'ValidationURL': validation_url or urls['validation'],
        }

        resp = self._post(merchant, token, self.EP_C2B_REGISTER, payload, operation)
        return {
            'short_code': merchant.short_code,
            'confirmation_url': payload['ConfirmationURL'],
            'validation_url': payload['ValidationURL'],
            # Daraja spells this field without the "n"
            'originator_conversation_id': resp.get('OriginatorCoversationID') or resp.get('OriginatorConversationID'),
            'response_code': resp.get('ResponseCode'),
            'response_description': resp.get('ResponseDescription'),
        }

    def c2b_simulate(
            self,
            merchant: Merchant,
            amount,
            phone: str,
            bill_ref_number: Optional[str] = None,
            command_id: str = 'CustomerPayBillOnline'
    ) -> Dict[str, Any]:
        """Simulate a customer paying the merchant's shortcode (sandbox only)."""
        operation = 'c2b_simulate'
        if merchant.environment != 'sandbox':
            raise ValidationError('C2B simulate is only available in the sandbox environment',
                                  operation=operation, merchant_id=merchant.id)
        amount = self._validate_amount(amount, merchant, operation)
        msisdn = msisdn_to_int(phone, {'field': 'phone', 'operation': operation, 'merchant_id': merchant.id})

        token = self.token_cache.get_token(merchant.id)

        payload = {
            'ShortCode': merchant.short_code,
            'CommandID': command_id,
            'Amount': amount,
            'Msisdn': msisdn,
        }
        # Buy Goods tills take no bill reference
        if command_id != 'CustomerBuyGoodsOnline':
            payload['BillRefNumber'] = bill_ref_number or ''

        resp = self._post(merchant, token, self.EP_C2B_SIMULATE, payload, operation)
        return self._async_result(resp, merchant, operation, phone_number=str(msisdn), amount=amount)

    def transaction_status(
            self,
            merchant: Merchant,
            credentials: CredentialSet,
            mpesa_transaction_id: str,
            identifier_type: str = '4',
            remarks: Optional[str] = None,
            occasion: Optional[str] = None
    ) -> Dict[str, Any]:
        """Query any M-Pesa transaction by its receipt number; the result arrives asynchronously."""
        operation = 'transaction_status'
        if not mpesa_transaction_id:
            raise ValidationError('transaction_id is required', operation=operation, merchant_id=merchant.id)
        self._require_initiator(credentials, merchant, operation)

        token = self.token_cache.get_token(merchant.id)
        security_credential = self.signer.security_credential(
            credentials.initiator_password, merchant.environment, credentials.certificate_pem)

        payload = {
            'Initiator': credentials.initiator_name,
            'SecurityCredential': security_credential,
            'CommandID': 'TransactionStatusQuery',
            'TransactionID': mpesa_transaction_id,
            'PartyA': merchant.short_code,
            'IdentifierType': identifier_type,
            'ResultURL': self.result_url(TransactionKind.TRANSACTION_STATUS),
            'QueueTimeOutURL': self.timeout_url(TransactionKind.TRANSACTION_STATUS),
            'Remarks': remarks or 'Status query',
            'Occasion': occasion or '',
        }

        resp = self._post(merchant, token, self.EP_TX_STATUS, payload, operation)
        return self._async_result(resp, merchant, operation)

    def reversal(
            self,
            merchant: Merchant,
            credentials: CredentialSet,
            mpesa_transaction_id: str,
            amount,
            remarks: Optional[str] = None,
            occasion: Optional[str] = None
    ) -> Dict[str, Any]:
        """Reverse a completed M-Pesa transaction; the result arrives asynchronously."""
        operation = 'reversal'
        if not mpesa_transaction_id:
            raise ValidationError('transaction_id is required', operation=operation, merchant_id=merchant.id)
        amount = self._validate_amount(amount, merchant, operation)
        self._require_initiator(credentials, merchant, operation)

        token = self.token_cache.get_token(merchant.id)
        security_credential = self.signer.security_credential(
            credentials.initiator_password, merchant.environment, credentials.certificate_pem)

        payload = {
            'Initiator': credentials.initiator_name,
            'SecurityCredential': security_credential,
            'CommandID': 'TransactionReversal',
            'TransactionID': mpesa_transaction_id,
            'Amount': amount,
            'ReceiverParty': merchant.short_code,
            'RecieverIdentifierType': '4',
            'ResultURL': self.result_url(TransactionKind.REVERSAL),
            'QueueTimeOutURL': self.timeout_url(TransactionKind.REVERSAL),
            'Remarks': remarks or 'Reversal',
            'Occasion': occasion or '',
        }

        resp = self._post(merchant, token, self.EP_REVERSAL, payload, operation,
                          provider_transaction_id=mpesa_transaction_id)
        return self._async_result(resp, merchant, operation, amount=amount)

    def dynamic_qr(
            self,
            merchant: Merchant,
            merchant_name: str,
            ref_no: str,
            amount,
            trx_code: str = 'PB',
            cpi: Optional[str] = None,
            size: str = '300'
    ) -> Dict[str, Any]:
        """
        Generate a LIPA NA M-PESA QR code.

        trx_code: BG (buy goods), WA (withdraw at agent), PB (paybill), SM (send money), SB (send to business)
        """
        operation = 'qr_code'
        if trx_code not in ('BG', 'WA', 'PB', 'SM', 'SB'):
            raise ValidationError(f'Unsupported TrxCode "{trx_code}"', operation=operation, merchant_id=merchant.id)
        if not merchant_name or not ref_no:
            raise ValidationError('merchant_name and ref_no are required', operation=operation, merchant_id=merchant.id)
        amount = self._validate_amount(amount, merchant, operation)

        token = self.token_cache.get_token(merchant.id)

        payload = {
            'MerchantName': merchant_name,
            'RefNo': ref_no,
            'Amount': amount,
            'TrxCode': trx_code,
            'CPI': cpi or merchant.short_code,
            'Size': str(size),
        }

        resp = self._post(merchant, token, self.EP_QR_CODE, payload, operation)
        return {
            'transaction_id': resp.get('RequestID') or f'qr-{uuid.uuid4()}',
            'status': TransactionStatus.SUCCESS,
            'amount': amount,
            'additional_data': {
                'request_id': resp.get('RequestID'),
                'response_code': resp.get('ResponseCode'),
                'response_description': resp.get('ResponseDescription'),
                'qr_code': resp.get('QRCode'),
            },
        }

    # Private helpers

    def _base_url(self, merchant: Merchant) -> str:
        base_url = BASE_URLS.get(merchant.environment)
        if not base_url:
            raise ValidationError(f'Unknown environment "{merchant.environment}"', merchant_id=merchant.id)
        return base_url

    def _post(
            self,
            merchant: Merchant,
            token: str,
            endpoint: str,
            payload: Dict[str, Any],
            operation: str,
            provider_transaction_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Execute an authenticated POST to a Daraja endpoint."""
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
        }

        url = f'{self._base_url(merchant)}{endpoint}'
        try:
            resp = self._session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning('Daraja [%s] network error for merchant %s: %s', operation, merchant.id, exc)
            raise NetworkError(
                f'Daraja [{operation}] network error: {exc}',
                operation=operation,
                merchant_id=merchant.id,
                provider_transaction_id=provider_transaction_id
            ) from exc

        return self._handle_response(resp, merchant, operation, provider_transaction_id)

    def _handle_response(
            self,
            resp: requests.Response,
            merchant: Merchant,
            operation: str,
            provider_transaction_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Parse a Daraja response, raising ApiError on any rejection."""
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        logger.info('Daraja [%s] HTTP %s for merchant %s', operation, resp.status_code, merchant.id)

        if resp.status_code == 401:
            # Token revoked or expired early; the next call fetches a new one
            self.token_cache.invalidate(merchant.id)

        # Daraja sometimes returns 200 with an error in the body
        error_code = data.get('errorCode')
        response_code = data.get('ResponseCode')

        if not resp.ok or error_code or (response_code is not None and _is_rejection(response_code)):
            code = error_code or (str(response_code) if response_code is not None else str(resp.status_code))
            description = (
                    data.get('errorMessage')
                    or data.get('ResponseDescription')
                    or resp.text[:300]
            )
            raise ApiError(
                f'Daraja [{operation}] rejected the request: {code} {description}',
                operation=operation,
                merchant_id=merchant.id,
                provider_transaction_id=provider_transaction_id,
                provider_code=code,
                provider_description=description,
                http_status=resp.status_code,
                context={'request_id': data.get('requestId')}
            )

        return data

    @staticmethod
    def _correlation_id(resp: Dict[str, Any], fields, merchant: Merchant, operation: str,
                        fallback: Optional[str] = None) -> str:
        """
        First non-empty id among ``fields``. An accepted request without one
        could never be matched to its callback, so it is treated as a rejection.
        """
        for field in fields:
            value = resp.get(field)
            if value:
                return str(value)
        if fallback:
            return fallback
        raise ApiError(
            f'Daraja [{operation}] accepted the request but returned no {" or ".join(fields)}',
            operation=operation,
            merchant_id=merchant.id,
            provider_code=str(resp.get('ResponseCode', '')),
            provider_description=resp.get('ResponseDescription')
        )

    def _async_result(self, resp: Dict[str, Any], merchant: Merchant, operation: str,
                      originator_id: Optional[str] = None, **extra) -> Dict[str, Any]:
        # c2b simulate and register answer with Daraja's misspelt OriginatorCoversationID
        originator = resp.get('OriginatorConversationID') or resp.get('OriginatorCoversationID') or originator_id
        transaction_id = self._correlation_id(
            resp, ('ConversationID', 'OriginatorConversationID', 'OriginatorCoversationID'),
            merchant, operation, fallback=originator_id
        )
        result = {
            'transaction_id': transaction_id,
            'status': TransactionStatus.PENDING,
            'additional_data': {
                'conversation_id': resp.get('ConversationID'),
                'originator_conversation_id': originator,
                'response_code': resp.get('ResponseCode'),
                'response_description': resp.get('ResponseDescription'),
            },
        }
        result.update(extra)
        return result

    @staticmethod
    def _originator_conversation_id() -> str:
        stamp = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
        return f'AG_{stamp}_{uuid.uuid4().hex[:20]}'

    @staticmethod
    def _validate_amount(amount, merchant: Merchant, operation: str) -> int:
        """Daraja takes whole shillings as a JSON number"""
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError('amount must be a number', operation=operation, merchant_id=merchant.id)
        if not value.is_finite() or value <= 0:
            raise ValidationError('amount must be greater than zero', operation=operation, merchant_id=merchant.id)

        rounded = int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
        if rounded < 1:
            raise ValidationError('amount must be at least 1', operation=operation, merchant_id=merchant.id)
        return rounded

    @staticmethod
    def _require(value, field: str, merchant: Merchant, operation: str) -> None:
        if not value:
            raise ValidationError(f'Merchant credential "{field}" is not configured',
                                  operation=operation, merchant_id=merchant.id)

    def _require_initiator(self, credentials: CredentialSet, merchant: Merchant, operation: str) -> None:
        self._require(credentials.initiator_name, 'initiator_name', merchant, operation)
        self._require(credentials.initiator_password, 'initiator_password', merchant, operation)
