"""
Integration Tests for Payment Flow
End-to-end testing through the HTTP API with Daraja and merchant webhooks mocked
"""

import json

from daraja_gateway.models import Transaction, WebhookDelivery
from daraja_gateway.services.webhook_dispatcher import SIGNATURE_HEADER, verify_signature


def _post(client, url, body, key=None):
    headers = {'Content-Type': 'application/json'}
    if key:
        headers['Idempotency-Key'] = key
    return client.post(url, headers=headers, data=json.dumps(body))


class TestPaymentFlowIntegration:
    """Integration tests for complete payment flows"""

    def test_complete_stk_flow(self, client, gateway, merchant, webhook, payouts_webhook, daraja, webhook_http,
                               make_response, scheduled, credential_set):
        """Store credentials, charge, receive the callback, deliver the webhook"""

        # Step 1: Store credentials
        response = client.put(
            f'/api/v1/merchants/{merchant.id}/credentials',
            headers={'Content-Type': 'application/json'},
            data=json.dumps({
                'consumer_key': credential_set.consumer_key,
                'consumer_secret': credential_set.consumer_secret,
                'passkey': credential_set.passkey,
            })
        )
        assert response.status_code == 200
        assert credential_set.consumer_secret not in response.get_data(as_text=True)

        # Step 2: Initiate charge
        daraja.post.return_value = make_response({
            'MerchantRequestID': '29115-34620561-1',
            'CheckoutRequestID': 'ws_CO_999',
            'ResponseCode': '0',
            'ResponseDescription': 'Success. Request accepted for processing',
            'CustomerMessage': 'Success. Request accepted for processing'
        })

        response = _post(client, f'/api/v1/merchants/{merchant.id}/charges',
                         {'amount': 100, 'phone': '0712345678', 'account_reference': 'ORDER1'},
                         key='charge-order-1')

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['data']['status'] == 'pending'
        assert data['data']['phone_number'] == '254712345678'
        assert data['data']['provider_transaction_id'] == 'ws_CO_999'
        transaction_id = data['data']['id']

        # Step 3: Daraja calls back
        response = _post(client, '/api/v1/callbacks/mpesa/stk', {
            'Body': {
                'stkCallback': {
                    'MerchantRequestID': '29115-34620561-1',
                    'CheckoutRequestID': 'ws_CO_999',
                    'ResultCode': 0,
                    'ResultDesc': 'The service request is processed successfully.',
                    'CallbackMetadata': {
                        'Item': [
                            {'Name': 'Amount', 'Value': 100},
                            {'Name': 'MpesaReceiptNumber', 'Value': 'NLJ7RT61SV'},
                            {'Name': 'PhoneNumber', 'Value': 254712345678},
                        ]
                    }
                }
            }
        })

        assert response.status_code == 200
        assert json.loads(response.data) == {'ResultCode': 0, 'ResultDesc': 'Accepted'}

        # Step 4: Transaction is complete
        response = client.get(f'/api/v1/merchants/{merchant.id}/transactions/{transaction_id}')
        assert response.status_code == 200
        data = json.loads(response.data)['data']
        assert data['status'] == 'success'
        assert data['metadata']['callback']['mpesa_receipt_number'] == 'NLJ7RT61SV'

        # Step 5: Exactly one delivery, for the webhook subscribed to stk_push
        deliveries = WebhookDelivery.query.all()
        assert len(deliveries) == 1
        assert deliveries[0].webhook_id == webhook.id
        assert scheduled.delivery_ids == [deliveries[0].id]

        # Step 6: Deliver it
        webhook_http.post.return_value = make_response({'received': True})
        delivery = gateway.dispatcher.deliver(deliveries[0].id)

        assert delivery.delivered_at is not None
        _, kwargs = webhook_http.post.call_args
        assert verify_signature(webhook.secret, kwargs['data'], kwargs['headers'][SIGNATURE_HEADER])
        assert json.loads(kwargs['data'])['type'] == 'stk_push.success'

    def test_retried_charge_is_not_sent_twice(self, client, merchant, credentials, daraja, make_response):
        daraja.post.return_value = make_response({'CheckoutRequestID': 'ws_CO_1', 'ResponseCode': '0'})
        body = {'amount': 100, 'phone': '0712345678', 'account_reference': 'ORDER1'}

        first = _post(client, f'/api/v1/merchants/{merchant.id}/charges', body, key='same-key')
        second = _post(client, f'/api/v1/merchants/{merchant.id}/charges', body, key='same-key')

        assert first.status_code == second.status_code == 201
        assert json.loads(second.data) == json.loads(first.data)
        assert daraja.post.call_count == 1
        assert Transaction.query.count() == 1

    def test_charge_requires_idempotency_key(self, client, merchant, credentials, daraja):
        response = _post(client, f'/api/v1/merchants/{merchant.id}/charges',
                         {'amount': 100, 'phone': '0712345678', 'account_reference': 'ORDER1'})

        assert response.status_code == 400
        daraja.post.assert_not_called()

    def test_invalid_body(self, client, merchant, credentials, daraja):
        response = _post(client, f'/api/v1/merchants/{merchant.id}/charges',
                         {'amount': -1, 'phone': '0712345678'}, key='bad-body')

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error'] == 'Validation error'
        assert 'amount' in data['details']
        assert 'account_reference' in data['details']

    def test_invalid_phone_is_a_gateway_validation_error(self, client, merchant, credentials, daraja):
        response = _post(client, f'/api/v1/merchants/{merchant.id}/charges',
                         {'amount': 100, 'phone': '0201234567', 'account_reference': 'ORDER1'}, key='bad-phone')

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['success'] is False
        assert data['kind'] == 'validation'
        assert data['operation'] == 'stk_push'

    def test_provider_rejection(self, client, merchant, credentials, daraja, make_response):
        daraja.post.return_value = make_response({
            'errorCode': '400.002.02',
            'errorMessage': 'Bad Request - Invalid PhoneNumber'
        }, status_code=400)

        response = _post(client, f'/api/v1/merchants/{merchant.id}/charges',
                         {'amount': 100, 'phone': '0712345678', 'account_reference': 'ORDER1'}, key='rejected')

        assert response.status_code == 502
        data = json.loads(response.data)
        assert data['kind'] == 'api'
        assert data['provider_code'] == '400.002.02'
        assert Transaction.query.filter_by(status='failed').count() == 1

    def test_missing_credentials(self, client, merchant, daraja):
        response = _post(client, f'/api/v1/merchants/{merchant.id}/charges',
                         {'amount': 100, 'phone': '0712345678', 'account_reference': 'ORDER1'}, key='no-creds')

        assert response.status_code == 400
        assert json.loads(response.data)['kind'] == 'validation'

    def test_poll_then_list(self, client, merchant, credentials, daraja, make_response):
        daraja.post.return_value = make_response({'CheckoutRequestID': 'ws_CO_7', 'ResponseCode': '0'})
        _post(client, f'/api/v1/merchants/{merchant.id}/charges',
              {'amount': 50, 'phone': '0712345678', 'account_reference': 'ORDER7'}, key='order-7')

        daraja.post.return_value = make_response({
            'ResponseCode': '0',
            'CheckoutRequestID': 'ws_CO_7',
            'ResultCode': '0',
            'ResultDesc': 'The service request is processed successfully.'
        })
        response = client.post(f'/api/v1/merchants/{merchant.id}/charges/ws_CO_7/query')

        assert response.status_code == 200
        assert json.loads(response.data)['data']['status'] == 'success'

        response = client.get(f'/api/v1/merchants/{merchant.id}/transactions?status=success')
        data = json.loads(response.data)
        assert data['pagination']['total'] == 1
        assert data['data'][0]['provider_transaction_id'] == 'ws_CO_7'

    def test_payout_then_result_callback(self, client, merchant, credentials, daraja, make_response):
        daraja.post.return_value = make_response({
            'ConversationID': 'AG_20240101_b2c',
            'OriginatorConversationID': 'orig-b2c',
            'ResponseCode': '0'
        })

        response = _post(client, f'/api/v1/merchants/{merchant.id}/payouts',
                         {'amount': 500, 'phone': '0712345678'}, key='payout-1')
        assert response.status_code == 201

        response = _post(client, '/api/v1/callbacks/mpesa/b2c/result', {
            'Result': {
                'ResultType': 0,
                'ResultCode': 2001,
                'ResultDesc': 'The initiator information is invalid.',
                'OriginatorConversationID': 'orig-b2c',
                'ConversationID': 'AG_20240101_b2c',
                'TransactionID': 'NLJ0000000'
            }
        })
        assert response.status_code == 200

        assert Transaction.query.filter_by(provider_transaction_id='AG_20240101_b2c').one().status == 'failed'

    def test_register_urls_and_qr(self, client, merchant, daraja, make_response):
        daraja.post.return_value = make_response({'OriginatorCoversationID': 'reg-1', 'ResponseCode': '0',
                                                  'ResponseDescription': 'Success'})

        response = _post(client, f'/api/v1/merchants/{merchant.id}/c2b/register-urls', {}, key='register-1')
        assert response.status_code == 200
        assert json.loads(response.data)['data']['validation_url'].endswith('/callbacks/mpesa/c2b/validation')

        daraja.post.return_value = make_response({'RequestID': 'qr-req-1', 'ResponseCode': 'AG_1',
                                                  'QRCode': 'iVBORw0KGgo'})
        response = _post(client, f'/api/v1/merchants/{merchant.id}/qr-codes',
                         {'amount': 250, 'ref_no': 'INV-7'}, key='qr-1')
        assert response.status_code == 201
        assert json.loads(response.data)['data']['status'] == 'success'

    def test_unknown_transaction(self, client, merchant):
        response = client.get(f'/api/v1/merchants/{merchant.id}/transactions/00000000-0000-0000-0000-000000000000')

        assert response.status_code == 404
        assert json.loads(response.data)['success'] is False
