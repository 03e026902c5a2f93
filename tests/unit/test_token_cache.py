"""
Unit Tests for the per-merchant token cache
"""

import threading
import time
import uuid
from unittest.mock import Mock, patch

import pytest
import requests

from daraja_gateway.errors import AuthError, NetworkError
from daraja_gateway.services.token_cache import DarajaTokenFetcher, TokenCache


class FakeClock:

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestTokenCache:

    def test_token_is_cached(self):
        fetcher = Mock(return_value=('tok-1', 3599))
        cache = TokenCache(fetcher)
        merchant_id = uuid.uuid4()

        assert cache.get_token(merchant_id) == 'tok-1'
        assert cache.get_token(merchant_id) == 'tok-1'
        fetcher.assert_called_once_with(merchant_id)

    def test_refreshes_inside_margin(self):
        clock = FakeClock()
        fetcher = Mock(side_effect=[('tok-1', 3600), ('tok-2', 3600)])
        cache = TokenCache(fetcher, margin=60, clock=clock)
        merchant_id = uuid.uuid4()

        assert cache.get_token(merchant_id) == 'tok-1'

        clock.now += 3539
        assert cache.get_token(merchant_id) == 'tok-1'

        clock.now += 2
        assert cache.get_token(merchant_id) == 'tok-2'
        assert fetcher.call_count == 2

    def test_merchants_have_separate_tokens(self):
        fetcher = Mock(side_effect=lambda merchant_id: (f'tok-{merchant_id}', 3599))
        cache = TokenCache(fetcher)
        first, second = uuid.uuid4(), uuid.uuid4()

        assert cache.get_token(first) == f'tok-{first}'
        assert cache.get_token(second) == f'tok-{second}'

    def test_failed_fetch_caches_nothing(self):
        fetcher = Mock(side_effect=[NetworkError('down', operation='oauth'), ('tok-1', 3599)])
        cache = TokenCache(fetcher)
        merchant_id = uuid.uuid4()

        with pytest.raises(NetworkError):
            cache.get_token(merchant_id)

        assert cache.get_token(merchant_id) == 'tok-1'
        assert fetcher.call_count == 2

    def test_invalidate_forces_refetch(self):
        fetcher = Mock(side_effect=[('tok-1', 3599), ('tok-2', 3599)])
        cache = TokenCache(fetcher)
        merchant_id = uuid.uuid4()

        cache.get_token(merchant_id)
        cache.invalidate(merchant_id)

        assert cache.get_token(merchant_id) == 'tok-2'

    def test_concurrent_callers_share_one_fetch(self):
        calls = []

        def slow_fetcher(merchant_id):
            calls.append(merchant_id)
            time.sleep(0.05)
            return 'tok-shared', 3599

        cache = TokenCache(slow_fetcher)
        merchant_id = uuid.uuid4()
        barrier = threading.Barrier(50)
        results = []

        def worker():
            barrier.wait()
            results.append(cache.get_token(merchant_id))

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(calls) == 1
        assert results == ['tok-shared'] * 50


class TestDarajaTokenFetcher:

    def test_exchanges_consumer_credentials(self, gateway, merchant, credentials, make_response):
        fetcher = DarajaTokenFetcher(gateway.vault, timeout=5)

        with patch('daraja_gateway.services.token_cache.requests.get') as mock_get:
            mock_get.return_value = make_response({'access_token': 'abc', 'expires_in': '3599'})
            token, expires_in = fetcher(merchant.id)

        assert token == 'abc'
        assert expires_in == 3599
        args, kwargs = mock_get.call_args
        assert args[0] == 'https://sandbox.safaricom.co.ke/oauth/v1/generate'
        assert kwargs['params'] == {'grant_type': 'client_credentials'}
        assert kwargs['auth'] == ('ck-test', 'cs-test')

    def test_rejected_credentials_raise_auth_error(self, gateway, merchant, credentials, make_response):
        fetcher = DarajaTokenFetcher(gateway.vault)

        with patch('daraja_gateway.services.token_cache.requests.get') as mock_get:
            mock_get.return_value = make_response(
                {'errorCode': '400.008.01', 'errorMessage': 'Invalid Authentication passed'}, status_code=400)
            with pytest.raises(AuthError) as exc_info:
                fetcher(merchant.id)

        assert exc_info.value.provider_code == '400.008.01'
        assert exc_info.value.http_status == 400

    def test_transport_failure_raises_network_error(self, gateway, merchant, credentials):
        fetcher = DarajaTokenFetcher(gateway.vault)

        with patch('daraja_gateway.services.token_cache.requests.get',
                   side_effect=requests.ConnectionError('refused')):
            with pytest.raises(NetworkError) as exc_info:
                fetcher(merchant.id)

        assert exc_info.value.retryable is True
