"""
Pytest Configuration and Fixtures
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import fakeredis
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from daraja_gateway import create_app
from daraja_gateway.extensions import db as _db, redis_client as _redis_client
from daraja_gateway.models import Merchant, Webhook
from daraja_gateway.services.credential_vault import CredentialSet


class ScheduleRecorder:
    """Stands in for Celery: records (delivery_id, countdown) instead of enqueueing"""

    def __init__(self):
        self.calls = []

    def __call__(self, delivery_id, countdown):
        self.calls.append((delivery_id, countdown))

    @property
    def delivery_ids(self):
        return [delivery_id for delivery_id, _ in self.calls]


def http_response(json_data=None, status_code=200, text=None):
    """Mock requests.Response"""
    resp = Mock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    if json_data is None:
        resp.json.side_effect = ValueError('No JSON')
    else:
        resp.json.return_value = json_data
    resp.text = text if text is not None else str(json_data or '')
    return resp


@pytest.fixture(scope='session')
def make_response():
    return http_response


@pytest.fixture(scope='session')
def rsa_material():
    """RSA key pair and self-signed certificate standing in for the M-Pesa public certificate"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'apigee.test')])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    return private_key, cert_pem


@pytest.fixture(scope='function')
def app():
    """Create application for testing"""
    app = create_app('testing')

    # Establish application context
    ctx = app.app_context()
    ctx.push()

    _db.create_all()

    yield app

    _db.session.remove()
    _db.drop_all()
    ctx.pop()


@pytest.fixture(scope='function')
def redis_client(app):
    """
    Fake Redis for tests + patch the app redis client.
    """
    fake_redis = fakeredis.FakeRedis()

    with patch.object(_redis_client, 'client', fake_redis):
        yield fake_redis

    fake_redis.flushall()


@pytest.fixture(scope='function')
def client(app, redis_client):
    """Create a test client"""
    return app.test_client()


@pytest.fixture(scope='function')
def gateway(app):
    return app.extensions['gateway']


@pytest.fixture(autouse=True)
def scheduled(app):
    """Replace the Celery scheduler so no delivery runs implicitly"""
    recorder = ScheduleRecorder()
    app.extensions['gateway'].dispatcher.scheduler = recorder
    return recorder


@pytest.fixture(scope='function')
def daraja(gateway):
    """
    Mock Daraja HTTP session; tokens come from a stub fetcher.

    Set ``daraja.post.return_value`` (or ``side_effect``) per test.
    """
    session = Mock()
    gateway.client._session = session
    gateway.token_cache.fetcher = Mock(return_value=('test-access-token', 3599))
    return session


@pytest.fixture(scope='function')
def webhook_http(gateway):
    """Mock HTTP session for outbound merchant webhooks"""
    session = Mock()
    gateway.dispatcher._session = session
    return session


@pytest.fixture(scope='function')
def merchant(app):
    merchant = Merchant(name='Acme Stores', short_code='174379', environment='sandbox')
    _db.session.add(merchant)
    _db.session.commit()
    return merchant


@pytest.fixture(scope='function')
def credential_set(rsa_material):
    _, cert_pem = rsa_material
    return CredentialSet(
        consumer_key='ck-test',
        consumer_secret='cs-test',
        passkey='bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919',
        initiator_name='testapi',
        initiator_password='Safaricom999!*!',
        certificate_pem=cert_pem
    )


@pytest.fixture(scope='function')
def credentials(gateway, merchant, credential_set):
    gateway.vault.store(merchant.id, credential_set, actor='test')
    return credential_set


@pytest.fixture(scope='function')
def webhook(merchant):
    webhook = Webhook(
        merchant_id=merchant.id,
        url='https://merchant.test/hooks/mpesa',
        secret='whsec_test',
        events=['stk_push', 'b2c', 'c2b']
    )
    _db.session.add(webhook)
    _db.session.commit()
    return webhook


@pytest.fixture(scope='function')
def payouts_webhook(merchant):
    webhook = Webhook(
        merchant_id=merchant.id,
        url='https://merchant.test/hooks/payouts',
        secret='whsec_payouts',
        events=['b2c']
    )
    _db.session.add(webhook)
    _db.session.commit()
    return webhook
