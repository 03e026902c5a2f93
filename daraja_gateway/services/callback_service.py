"""
Callback Service
Applies Daraja's asynchronous result notifications to stored transactions.
"""

from typing import Any, Dict, Optional

from daraja_gateway.errors import NotFound
from daraja_gateway.models import Merchant, Transaction, TransactionKind, TransactionStatus
from daraja_gateway.providers.callbacks import parse_callback
from daraja_gateway.services.transaction_store import TransactionStore
from daraja_gateway.services.webhook_dispatcher import WebhookDispatcher
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

# Daraja C2B validation rejection codes
C2B_INVALID_SHORTCODE = 'C2B00015'


class CallbackService:
    """Correlates callbacks to transactions by provider id and applies the outcome"""

    def __init__(self, store: TransactionStore, dispatcher: WebhookDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    def handle_stk_callback(self, payload: Dict[str, Any]) -> Optional[Transaction]:
        return self._apply(parse_callback(payload))

    def handle_result(self, kind: TransactionKind, payload: Dict[str, Any]) -> Optional[Transaction]:
        """B2C, B2B, reversal and transaction status results"""
        return self._apply(parse_callback(payload, kind))

    def handle_timeout(self, kind: TransactionKind, payload: Dict[str, Any]) -> Optional[Transaction]:
        """Queue timeout: Daraja gave up on the request, so it is failed."""
        body = payload.get('Result') or payload
        parsed = {
            'transaction_id': body.get('ConversationID', ''),
            'alternate_id': body.get('OriginatorConversationID'),
            'kind': kind,
            'status': TransactionStatus.FAILED,
            'metadata': {
                'timeout': True,
                'result_code': str(body.get('ResultCode', '')) or None,
                'result_desc': body.get('ResultDesc') or 'Request timed out in the Daraja queue',
            },
        }
        return self._apply(parsed)

    def handle_c2b_confirmation(self, payload: Dict[str, Any]) -> Optional[Transaction]:
        """
        Record a confirmed C2B payment.

        Confirmations carry the M-Pesa receipt (TransID), which no outbound
        request ever returned. A pending simulated payment with the same bill
        reference and amount is completed; otherwise a new transaction is
        recorded for the merchant owning the shortcode.
        """
        parsed = parse_callback(payload)

        if self.store.get(parsed['transaction_id']) is not None:
            return self._apply(parsed)

        merchant = Merchant.query.filter_by(short_code=parsed['metadata']['business_short_code']).first()
        if merchant is None:
            logger.warning('C2B confirmation %s for unknown shortcode %s',
                           parsed['transaction_id'], parsed['metadata']['business_short_code'])
            return None

        simulated = self._find_simulated(merchant, parsed)
        if simulated is not None:
            parsed = dict(parsed, transaction_id=simulated.provider_transaction_id)
            parsed['metadata'] = dict(parsed['metadata'], mpesa_receipt_number=payload.get('TransID'))
            return self._apply(parsed)

        transaction, created = self.store.create(merchant.id, parsed['transaction_id'], {
            'kind': TransactionKind.C2B,
            'amount': parsed['amount'] or 0,
            'status': TransactionStatus.SUCCESS,
            'phone_number': parsed['metadata'].get('msisdn'),
            'account_reference': parsed['metadata'].get('bill_ref_number'),
            'metadata': parsed['metadata'],
        })
        if created:
            self._notify(transaction)
        return transaction

    @staticmethod
    def validate_c2b(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Accept payments only for shortcodes that belong to a merchant."""
        short_code = str(payload.get('BusinessShortCode', ''))
        if Merchant.query.filter_by(short_code=short_code).first() is None:
            logger.info('Rejecting C2B validation for unknown shortcode %s', short_code)
            return {'ResultCode': C2B_INVALID_SHORTCODE, 'ResultDesc': 'Rejected'}
        return {'ResultCode': 0, 'ResultDesc': 'Accepted'}

    # Private helpers

    def _apply(self, parsed: Dict[str, Any]) -> Optional[Transaction]:
        provider_transaction_id = self._resolve(parsed)
        if provider_transaction_id is None:
            logger.warning('Callback for unknown transaction %s (%s)',
                           parsed['transaction_id'], parsed.get('alternate_id'))
            return None

        try:
            transaction, changed = self.store.apply_outcome(
                provider_transaction_id, parsed['status'], {'callback': parsed['metadata']})
        except NotFound:
            logger.warning('Transaction %s disappeared before callback applied', provider_transaction_id)
            return None

        if changed:
            self._notify(transaction)
        return transaction

    def _resolve(self, parsed: Dict[str, Any]) -> Optional[str]:
        # ConversationID first, then OriginatorConversationID
        for candidate in (parsed.get('transaction_id'), parsed.get('alternate_id')):
            if candidate and self.store.get(candidate) is not None:
                return candidate
        return None

    @staticmethod
    def _find_simulated(merchant: Merchant, parsed: Dict[str, Any]) -> Optional[Transaction]:
        bill_ref = parsed['metadata'].get('bill_ref_number')
        if not bill_ref or parsed['amount'] is None:
            return None
        candidates = Transaction.query.filter_by(
            merchant_id=merchant.id,
            kind=TransactionKind.C2B.value,
            status=TransactionStatus.PENDING.value,
            account_reference=bill_ref
        ).order_by(Transaction.created_at.asc()).all()
        for transaction in candidates:
            if float(transaction.amount) == float(parsed['amount']):
                return transaction
        return None

    def _notify(self, transaction: Transaction) -> None:
        try:
            self.dispatcher.notify(transaction)
        except Exception:
            logger.exception('Webhook fan-out failed for %s', transaction.provider_transaction_id)
