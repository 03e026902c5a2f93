"""
Payment Service
Merchant-facing operations: reveal credentials, call Daraja, record the
transaction and notify webhooks on state changes.
"""

import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from daraja_gateway.errors import ApiError, NotFound
from daraja_gateway.models import Merchant, Transaction, TransactionKind, TransactionStatus
from daraja_gateway.providers import DarajaClient, STK_QUERY_PROCESSING
from daraja_gateway.services.audit_service import AuditService
from daraja_gateway.services.credential_vault import CredentialVault
from daraja_gateway.services.transaction_store import TransactionStore
from daraja_gateway.services.webhook_dispatcher import WebhookDispatcher
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)


class PaymentService:
    """Core payment processing service"""

    def __init__(self, vault: CredentialVault, client: DarajaClient,
                 store: TransactionStore, dispatcher: WebhookDispatcher):
        self.vault = vault
        self.client = client
        self.store = store
        self.dispatcher = dispatcher

    # Charges (STK Push)

    def initiate_charge(
            self,
            merchant_id: uuid.UUID,
            amount,
            phone: str,
            account_reference: str,
            description: Optional[str] = None,
            transaction_type: str = 'CustomerPayBillOnline',
            actor: Optional[str] = None
    ) -> Transaction:
        """
        Send an STK Push to the customer's phone.

        Returns:
            Pending transaction keyed by CheckoutRequestID
        """
        merchant = self._get_merchant(merchant_id)
        credentials = self.vault.reveal(merchant.id, actor=actor or 'api', purpose='stk_push')

        return self._execute(
            merchant,
            TransactionKind.STK_PUSH,
            lambda: self.client.stk_push(merchant, credentials, amount, phone, account_reference,
                                         description, transaction_type),
            amount=amount,
            phone_number=phone,
            account_reference=account_reference,
            description=description
        )

    def query_charge_status(self, merchant_id: uuid.UUID, checkout_request_id: str,
                            actor: Optional[str] = None) -> Transaction:
        """
        Poll Daraja for the outcome of an STK Push and apply it.

        Goes through the same TransactionStore entry point as the STK
        callback, so a poll racing the callback applies the outcome once.
        """
        merchant = self._get_merchant(merchant_id)
        transaction = self.store.get(checkout_request_id)
        if transaction is None or transaction.merchant_id != merchant.id:
            raise NotFound(f'Transaction {checkout_request_id} not found')

        if transaction.is_terminal:
            return transaction

        credentials = self.vault.reveal(merchant.id, actor=actor or 'api', purpose='stk_query')

        try:
            result = self.client.stk_query(merchant, credentials, checkout_request_id)
        except ApiError as exc:
            if exc.provider_code == STK_QUERY_PROCESSING:
                logger.info('STK %s still being processed', checkout_request_id)
                return transaction
            raise

        if not result['additional_data'].get('result_code'):
            return transaction

        return self._apply(checkout_request_id, result['status'], {'stk_query': result['additional_data']})

    # Payouts and business payments

    def initiate_payout(
            self,
            merchant_id: uuid.UUID,
            amount,
            phone: str,
            command_id: str = 'BusinessPayment',
            remarks: Optional[str] = None,
            occasion: Optional[str] = None,
            actor: Optional[str] = None
    ) -> Transaction:
        """B2C disbursement; the outcome arrives on the b2c result callback."""
        merchant = self._get_merchant(merchant_id)
        credentials = self.vault.reveal(merchant.id, actor=actor or 'api', purpose='b2c')

        return self._execute(
            merchant,
            TransactionKind.B2C,
            lambda: self.client.b2c_payment(merchant, credentials, amount, phone, command_id, remarks, occasion),
            amount=amount,
            phone_number=phone,
            description=remarks
        )

    def initiate_business_payment(
            self,
            merchant_id: uuid.UUID,
            amount,
            receiver_short_code: str,
            account_reference: str,
            command_id: str = 'BusinessPayBill',
            sender_identifier_type: str = '4',
            receiver_identifier_type: str = '4',
            remarks: Optional[str] = None,
            actor: Optional[str] = None
    ) -> Transaction:
        """B2B payment to another shortcode."""
        merchant = self._get_merchant(merchant_id)
        credentials = self.vault.reveal(merchant.id, actor=actor or 'api', purpose='b2b')

        return self._execute(
            merchant,
            TransactionKind.B2B,
            lambda: self.client.b2b_payment(merchant, credentials, amount, receiver_short_code, account_reference,
                                            command_id, sender_identifier_type, receiver_identifier_type, remarks),
            amount=amount,
            account_reference=account_reference,
            description=remarks
        )

    # C2B

    def simulate_incoming_payment(
            self,
            merchant_id: uuid.UUID,
            amount,
            phone: str,
            bill_ref_number: Optional[str] = None,
            command_id: str = 'CustomerPayBillOnline'
    ) -> Transaction:
        """Sandbox-only C2B payment; the confirmation callback completes it."""
        merchant = self._get_merchant(merchant_id)

        return self._execute(
            merchant,
            TransactionKind.C2B,
            lambda: self.client.c2b_simulate(merchant, amount, phone, bill_ref_number, command_id),
            amount=amount,
            phone_number=phone,
            account_reference=bill_ref_number
        )

    def register_callback_url(
            self,
            merchant_id: uuid.UUID,
            response_type: str = 'Completed',
            confirmation_url: Optional[str] = None,
            validation_url: Optional[str] = None,
            actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Register C2B confirmation/validation URLs. Registration is not a
        transaction, so the provider acknowledgement is returned as-is.
        """
        merchant = self._get_merchant(merchant_id)
        result = self.client.c2b_register_urls(merchant, response_type, confirmation_url, validation_url)

        AuditService.log_event(
            event_type='c2b.urls_registered',
            event_data={'confirmation_url': result['confirmation_url'],
                        'validation_url': result['validation_url'],
                        'response_type': response_type},
            merchant_id=merchant.id,
            actor=actor
        )
        return result

    # Reversal and status

    def reverse_transaction(
            self,
            merchant_id: uuid.UUID,
            mpesa_transaction_id: str,
            amount,
            remarks: Optional[str] = None,
            occasion: Optional[str] = None,
            actor: Optional[str] = None
    ) -> Transaction:
        merchant = self._get_merchant(merchant_id)
        credentials = self.vault.reveal(merchant.id, actor=actor or 'api', purpose='reversal')

        return self._execute(
            merchant,
            TransactionKind.REVERSAL,
            lambda: self.client.reversal(merchant, credentials, mpesa_transaction_id, amount, remarks, occasion),
            amount=amount,
            account_reference=mpesa_transaction_id,
            description=remarks
        )

    def query_transaction_status(
            self,
            merchant_id: uuid.UUID,
            mpesa_transaction_id: str,
            identifier_type: str = '4',
            remarks: Optional[str] = None,
            actor: Optional[str] = None
    ) -> Transaction:
        merchant = self._get_merchant(merchant_id)
        credentials = self.vault.reveal(merchant.id, actor=actor or 'api', purpose='transaction_status')

        return self._execute(
            merchant,
            TransactionKind.TRANSACTION_STATUS,
            lambda: self.client.transaction_status(merchant, credentials, mpesa_transaction_id,
                                                   identifier_type, remarks),
            amount=0,
            account_reference=mpesa_transaction_id,
            description=remarks
        )

    # QR codes

    def generate_qr_code(
            self,
            merchant_id: uuid.UUID,
            amount,
            ref_no: str,
            trx_code: str = 'PB',
            merchant_name: Optional[str] = None,
            cpi: Optional[str] = None,
            size: str = '300'
    ) -> Transaction:
        merchant = self._get_merchant(merchant_id)

        return self._execute(
            merchant,
            TransactionKind.QR_CODE,
            lambda: self.client.dynamic_qr(merchant, merchant_name or merchant.name, ref_no, amount,
                                           trx_code, cpi, size),
            amount=amount,
            account_reference=ref_no
        )

    # Reads

    def get_transaction(self, merchant_id: uuid.UUID, transaction_id: uuid.UUID) -> Transaction:
        return self.store.get_for_merchant(merchant_id, transaction_id)

    def list_transactions(self, merchant_id: uuid.UUID, status: Optional[str] = None,
                          kind: Optional[str] = None, page: int = 1, per_page: int = 20):
        self._get_merchant(merchant_id)
        return self.store.list_for_merchant(merchant_id, status, kind, page, per_page)

    # Private helpers

    @staticmethod
    def _get_merchant(merchant_id: uuid.UUID) -> Merchant:
        merchant = Merchant.query.get(merchant_id)
        if merchant is None:
            raise NotFound('Merchant not found')
        return merchant

    def _execute(self, merchant: Merchant, kind: TransactionKind, call: Callable[[], Dict[str, Any]],
                 **fields) -> Transaction:
        """
        Run a Daraja call and record its outcome.

        Provider rejections are recorded as a failed transaction before the
        ApiError is re-raised. Transport failures record nothing since the
        provider may or may not have acted.
        """
        try:
            result = call()
        except ApiError as exc:
            self._record_rejection(merchant, kind, exc, fields)
            raise

        record = {
            'kind': kind,
            'amount': result.get('amount', fields.get('amount')),
            'status': result['status'],
            'phone_number': result.get('phone_number', fields.get('phone_number')),
            'account_reference': fields.get('account_reference'),
            'description': fields.get('description'),
            'metadata': result.get('additional_data'),
        }
        transaction, created = self.store.create(merchant.id, result['transaction_id'], record)

        if created and transaction.is_terminal:
            self._notify(transaction)
        return transaction

    def _record_rejection(self, merchant: Merchant, kind: TransactionKind, exc: ApiError,
                          fields: Dict[str, Any]) -> None:
        record = {
            'kind': kind,
            'amount': Decimal(str(fields.get('amount') or 0)),
            'status': TransactionStatus.FAILED,
            'phone_number': fields.get('phone_number'),
            'account_reference': fields.get('account_reference'),
            'description': fields.get('description'),
            'metadata': {
                'operation': exc.operation,
                'provider_code': exc.provider_code,
                'provider_description': exc.provider_description,
                'http_status': exc.http_status,
            },
        }
        transaction, _ = self.store.create(merchant.id, f'failed-{uuid.uuid4()}', record)
        exc.context['transaction_id'] = str(transaction.id)
        self._notify(transaction)

    def _apply(self, provider_transaction_id: str, status: TransactionStatus,
               metadata_patch: Dict[str, Any]) -> Transaction:
        transaction, changed = self.store.apply_outcome(provider_transaction_id, status, metadata_patch)
        if changed:
            self._notify(transaction)
        return transaction

    def _notify(self, transaction: Transaction) -> None:
        try:
            self.dispatcher.notify(transaction)
        except Exception:
            # Webhook fan-out never fails the merchant's request
            logger.exception('Webhook fan-out failed for %s', transaction.provider_transaction_id)
