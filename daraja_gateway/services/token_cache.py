"""
Token Cache
Per-merchant OAuth bearer tokens with single-flight refresh.
"""

import threading
import time
import uuid
from typing import Callable, Dict, Optional, Tuple

import requests

from daraja_gateway.errors import AuthError, NetworkError, ValidationError
from daraja_gateway.models import Merchant
from daraja_gateway.utils.locks import KeyedLock
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

BASE_URLS = {
    'sandbox': 'https://sandbox.safaricom.co.ke',
    'production': 'https://api.safaricom.co.ke',
}

AUTH_PATH = '/oauth/v1/generate'

# fetcher(merchant_id) -> (access_token, expires_in_seconds)
TokenFetcher = Callable[[uuid.UUID], Tuple[str, int]]


class TokenCache:
    """
    Keyed cache of ``merchant_id -> (token, expires_at)``.

    A token is served while more than ``margin`` seconds remain. When it is
    missing or about to expire, exactly one caller per merchant performs the
    fetch; concurrent callers wait on the merchant's lock and then read the
    freshly cached value. Failed fetches cache nothing.
    """

    def __init__(self, fetcher: TokenFetcher, margin: int = 60, clock: Callable[[], float] = time.time):
        self.fetcher = fetcher
        self.margin = margin
        self.clock = clock
        self._tokens: Dict[uuid.UUID, Tuple[str, float]] = {}
        self._tokens_guard = threading.Lock()
        self._refresh_locks = KeyedLock()

    def _cached(self, merchant_id) -> Optional[str]:
        with self._tokens_guard:
            entry = self._tokens.get(merchant_id)
        if entry and entry[1] - self.margin > self.clock():
            return entry[0]
        return None

    def get_token(self, merchant_id: uuid.UUID) -> str:
        token = self._cached(merchant_id)
        if token:
            return token

        with self._refresh_locks.hold(merchant_id):
            # Another caller may have refreshed while we waited
            token = self._cached(merchant_id)
            if token:
                return token

            access_token, expires_in = self.fetcher(merchant_id)
            with self._tokens_guard:
                self._tokens[merchant_id] = (access_token, self.clock() + int(expires_in))

            logger.info('Access token refreshed for merchant %s (expires in %ss)', merchant_id, expires_in)
            return access_token

    def invalidate(self, merchant_id: uuid.UUID) -> None:
        with self._tokens_guard:
            self._tokens.pop(merchant_id, None)

    def clear(self) -> None:
        with self._tokens_guard:
            self._tokens.clear()


class DarajaTokenFetcher:
    """Exchanges a merchant's consumer key/secret for a Daraja access token"""

    def __init__(self, vault, timeout: int = 30):
        self.vault = vault
        self.timeout = timeout

    def __call__(self, merchant_id: uuid.UUID) -> Tuple[str, int]:
        merchant = Merchant.query.get(merchant_id)
        if merchant is None:
            raise ValidationError('Unknown merchant', operation='oauth', merchant_id=merchant_id)

        credentials = self.vault.reveal(merchant_id, actor='token_cache', purpose='oauth')
        url = f'{BASE_URLS[merchant.environment]}{AUTH_PATH}'

        try:
            resp = requests.get(
                url,
                params={'grant_type': 'client_credentials'},
                auth=(credentials.consumer_key, credentials.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(f'Token request failed: {exc}', operation='oauth', merchant_id=merchant_id) from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if not resp.ok or not data.get('access_token'):
            logger.warning('Token exchange for merchant %s rejected with HTTP %s', merchant_id, resp.status_code)
            raise AuthError(
                'Daraja rejected the token request',
                operation='oauth',
                merchant_id=merchant_id,
                provider_code=data.get('errorCode'),
                provider_description=data.get('errorMessage'),
                http_status=resp.status_code,
            )

        return data['access_token'], int(data.get('expires_in', 3599))
