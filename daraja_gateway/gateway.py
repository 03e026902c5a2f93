"""
Gateway
Wires the vault, signer, token cache, client, store and dispatcher together
once per application and exposes them through ``app.extensions['gateway']``.
"""

from flask import current_app

from daraja_gateway.providers import DarajaClient
from daraja_gateway.services.callback_service import CallbackService
from daraja_gateway.services.credential_vault import CredentialVault
from daraja_gateway.services.payment_service import PaymentService
from daraja_gateway.services.request_signer import RequestSigner
from daraja_gateway.services.token_cache import DarajaTokenFetcher, TokenCache
from daraja_gateway.services.transaction_store import TransactionStore
from daraja_gateway.services.webhook_dispatcher import WebhookDispatcher
from daraja_gateway.utils.encryption import Keyring


class Gateway:

    def __init__(self, config):
        self.vault = CredentialVault(Keyring.from_config(config))
        self.signer = RequestSigner(config.get('MPESA_CERTIFICATES'))
        self.token_cache = TokenCache(
            DarajaTokenFetcher(self.vault, timeout=config.get('HTTP_TIMEOUT', 30)),
            margin=config.get('TOKEN_REFRESH_MARGIN', 60)
        )
        self.client = DarajaClient(
            self.token_cache,
            self.signer,
            callback_base_url=config.get('MPESA_CALLBACK_BASE_URL', ''),
            timeout=config.get('HTTP_TIMEOUT', 30)
        )
        self.store = TransactionStore()
        self.dispatcher = WebhookDispatcher.from_config(config)
        self.payments = PaymentService(self.vault, self.client, self.store, self.dispatcher)
        self.callbacks = CallbackService(self.store, self.dispatcher)

    def init_app(self, app):
        app.extensions['gateway'] = self


def get_gateway() -> Gateway:
    return current_app.extensions['gateway']
