"""
Unit Tests for Callback Service
"""

from decimal import Decimal

import pytest

from daraja_gateway.models import Transaction, TransactionKind, TransactionStatus, WebhookDelivery


def stk_payload(checkout_request_id='ws_CO_999', result_code=0):
    return {
        'Body': {
            'stkCallback': {
                'MerchantRequestID': '29115-34620561-1',
                'CheckoutRequestID': checkout_request_id,
                'ResultCode': result_code,
                'ResultDesc': 'The service request is processed successfully.',
                'CallbackMetadata': {
                    'Item': [
                        {'Name': 'Amount', 'Value': 100},
                        {'Name': 'MpesaReceiptNumber', 'Value': 'NLJ7RT61SV'},
                    ]
                }
            }
        }
    }


def c2b_payload(trans_id='RKTQDM7W6S', amount='10.00', bill_ref='INV-1', short_code='174379'):
    return {
        'TransactionType': 'Pay Bill',
        'TransID': trans_id,
        'TransTime': '20191122063845',
        'TransAmount': amount,
        'BusinessShortCode': short_code,
        'BillRefNumber': bill_ref,
        'MSISDN': '254712345678',
        'FirstName': 'John',
    }


@pytest.fixture
def pending(gateway, merchant):
    def _create(provider_transaction_id, kind=TransactionKind.STK_PUSH, **fields):
        transaction, _ = gateway.store.create(merchant.id, provider_transaction_id,
                                              dict({'kind': kind, 'amount': 100}, **fields))
        return transaction
    return _create


class TestStkAndResults:

    def test_stk_success(self, gateway, pending, webhook, scheduled):
        pending('ws_CO_999')

        transaction = gateway.callbacks.handle_stk_callback(stk_payload())

        assert transaction.status == 'success'
        assert transaction.provider_metadata['callback']['mpesa_receipt_number'] == 'NLJ7RT61SV'
        assert len(scheduled.calls) == 1

    def test_duplicate_callback_notifies_once(self, gateway, pending, webhook, scheduled):
        pending('ws_CO_999')

        gateway.callbacks.handle_stk_callback(stk_payload())
        gateway.callbacks.handle_stk_callback(stk_payload())
        transaction = gateway.callbacks.handle_stk_callback(stk_payload(result_code=1))

        assert transaction.status == 'success'
        assert WebhookDelivery.query.count() == 1
        assert len(scheduled.calls) == 1

    def test_unknown_transaction_is_ignored(self, gateway, scheduled):
        assert gateway.callbacks.handle_stk_callback(stk_payload('ws_CO_unknown')) is None
        assert scheduled.calls == []

    def test_result_resolves_by_originator_id(self, gateway, pending):
        pending('orig-b2c-1', kind=TransactionKind.B2C)
        payload = {
            'Result': {
                'ResultCode': 0,
                'ResultDesc': 'The service request is processed successfully.',
                'OriginatorConversationID': 'orig-b2c-1',
                'ConversationID': 'AG_unknown_to_us',
                'TransactionID': 'NLJ41HAY6Q',
            }
        }

        transaction = gateway.callbacks.handle_result(TransactionKind.B2C, payload)

        assert transaction.provider_transaction_id == 'orig-b2c-1'
        assert transaction.status == 'success'

    def test_timeout_marks_failed(self, gateway, pending):
        pending('AG_REV_1', kind=TransactionKind.REVERSAL)

        transaction = gateway.callbacks.handle_timeout(TransactionKind.REVERSAL, {
            'Result': {'ConversationID': 'AG_REV_1', 'OriginatorConversationID': 'orig-rev-1'}
        })

        assert transaction.status == 'failed'
        assert transaction.provider_metadata['callback']['timeout'] is True


class TestC2B:

    def test_confirmation_completes_simulated_payment(self, gateway, pending, merchant):
        simulated = pending('sim-1', kind=TransactionKind.C2B, amount=10, account_reference='INV-1')

        transaction = gateway.callbacks.handle_c2b_confirmation(c2b_payload())

        assert transaction.id == simulated.id
        assert transaction.status == 'success'
        assert transaction.provider_metadata['callback']['mpesa_receipt_number'] == 'RKTQDM7W6S'
        assert Transaction.query.count() == 1

    def test_confirmation_without_match_records_new_payment(self, gateway, merchant, webhook, scheduled):
        transaction = gateway.callbacks.handle_c2b_confirmation(c2b_payload(bill_ref='WALK-IN'))

        assert transaction.provider_transaction_id == 'RKTQDM7W6S'
        assert transaction.kind == 'c2b'
        assert transaction.status == 'success'
        assert transaction.amount == Decimal('10.00')
        assert transaction.merchant_id == merchant.id
        assert len(scheduled.calls) == 1

    def test_repeated_confirmation_is_harmless(self, gateway, merchant, webhook, scheduled):
        gateway.callbacks.handle_c2b_confirmation(c2b_payload(bill_ref='WALK-IN'))
        gateway.callbacks.handle_c2b_confirmation(c2b_payload(bill_ref='WALK-IN'))

        assert Transaction.query.count() == 1
        assert len(scheduled.calls) == 1

    def test_confirmation_for_unknown_shortcode(self, gateway, merchant):
        assert gateway.callbacks.handle_c2b_confirmation(c2b_payload(short_code='999999')) is None
        assert Transaction.query.count() == 0

    def test_validation(self, gateway, merchant):
        assert gateway.callbacks.validate_c2b({'BusinessShortCode': '174379'}) == {
            'ResultCode': 0, 'ResultDesc': 'Accepted'}
        assert gateway.callbacks.validate_c2b({'BusinessShortCode': '999999'})['ResultCode'] == 'C2B00015'
