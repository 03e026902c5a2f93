"""
Unit Tests for the transaction store
"""

import threading
import uuid
from decimal import Decimal

import pytest

from daraja_gateway import create_app
from daraja_gateway.errors import ApiError, NotFound, ValidationError
from daraja_gateway.extensions import db
from daraja_gateway.models import AuditLog, Merchant, Transaction, TransactionKind, TransactionStatus
from daraja_gateway.services.transaction_store import TransactionStore, merge_patch


def _fields(**overrides):
    fields = {
        'kind': TransactionKind.STK_PUSH,
        'amount': 100,
        'phone_number': '254712345678',
        'account_reference': 'ORDER1',
        'metadata': {'checkout_request_id': 'ws_CO_1'},
    }
    fields.update(overrides)
    return fields


class TestMergePatch:

    def test_nested_merge_and_removal(self):
        target = {'a': 1, 'b': {'c': 2, 'd': 3}, 'e': 'keep'}
        patch = {'a': 9, 'b': {'c': None, 'x': 1}, 'f': [1, 2]}

        assert merge_patch(target, patch) == {'a': 9, 'b': {'d': 3, 'x': 1}, 'e': 'keep', 'f': [1, 2]}

    def test_does_not_mutate_target(self):
        target = {'a': {'b': 1}}
        merge_patch(target, {'a': {'b': 2}})

        assert target == {'a': {'b': 1}}

    def test_none_target(self):
        assert merge_patch(None, {'a': 1}) == {'a': 1}


class TestCreate:

    def test_create_pending(self, gateway, merchant):
        transaction, created = gateway.store.create(merchant.id, 'ws_CO_1', _fields())

        assert created is True
        assert transaction.status == TransactionStatus.PENDING.value
        assert transaction.kind == 'stk_push'
        assert transaction.amount == Decimal('100.00')
        assert transaction.completed_at is None
        assert AuditLog.query.filter_by(event_type='transaction.created').count() == 1

    def test_create_is_idempotent(self, gateway, merchant):
        first, _ = gateway.store.create(merchant.id, 'ws_CO_1', _fields())
        second, created = gateway.store.create(merchant.id, 'ws_CO_1', _fields(amount=999))

        assert created is False
        assert second.id == first.id
        assert second.amount == Decimal('100.00')
        assert Transaction.query.count() == 1

    def test_create_terminal(self, gateway, merchant):
        transaction, _ = gateway.store.create(merchant.id, 'qr-1', _fields(kind=TransactionKind.QR_CODE,
                                                                         status=TransactionStatus.SUCCESS))

        assert transaction.status == 'success'
        assert transaction.completed_at is not None

    def test_empty_provider_id_is_rejected(self, gateway, merchant):
        with pytest.raises(ValidationError):
            gateway.store.create(merchant.id, '', _fields())

        assert Transaction.query.count() == 0

    def test_provider_id_of_another_merchant(self, gateway, merchant):
        other = Merchant(name='Bravo Hardware', short_code='600000', environment='sandbox')
        db.session.add(other)
        db.session.commit()
        gateway.store.create(merchant.id, 'AG_1', _fields(kind=TransactionKind.B2C))

        with pytest.raises(ApiError):
            gateway.store.create(other.id, 'AG_1', _fields(kind=TransactionKind.B2C))

        assert Transaction.query.filter_by(provider_transaction_id='AG_1').one().merchant_id == merchant.id


class TestApplyOutcome:

    def test_pending_to_success(self, gateway, merchant):
        gateway.store.create(merchant.id, 'ws_CO_1', _fields())

        transaction, changed = gateway.store.apply_outcome(
            'ws_CO_1', TransactionStatus.SUCCESS, {'callback': {'mpesa_receipt_number': 'NLJ7RT61SV'}})

        assert changed is True
        assert transaction.status == 'success'
        assert transaction.completed_at is not None
        assert transaction.provider_metadata == {
            'checkout_request_id': 'ws_CO_1',
            'callback': {'mpesa_receipt_number': 'NLJ7RT61SV'},
        }
        assert AuditLog.query.filter_by(event_type='transaction.success').count() == 1

    def test_terminal_state_is_final(self, gateway, merchant):
        gateway.store.create(merchant.id, 'ws_CO_1', _fields())
        gateway.store.apply_outcome('ws_CO_1', TransactionStatus.SUCCESS)

        transaction, changed = gateway.store.apply_outcome(
            'ws_CO_1', TransactionStatus.FAILED, {'callback': {'result_code': '1'}})

        assert changed is False
        assert transaction.status == 'success'
        assert 'callback' not in transaction.provider_metadata

    def test_duplicate_outcome_applies_once(self, gateway, merchant):
        gateway.store.create(merchant.id, 'ws_CO_1', _fields())

        results = [gateway.store.apply_outcome('ws_CO_1', TransactionStatus.SUCCESS)[1] for _ in range(3)]

        assert results == [True, False, False]
        assert AuditLog.query.filter_by(event_type='transaction.success').count() == 1

    def test_pending_outcome_only_merges_metadata(self, gateway, merchant):
        gateway.store.create(merchant.id, 'ws_CO_1', _fields())

        transaction, changed = gateway.store.apply_outcome('ws_CO_1', TransactionStatus.PENDING, {'polled': True})

        assert changed is False
        assert transaction.status == 'pending'
        assert transaction.provider_metadata['polled'] is True

    def test_unknown_transaction(self, gateway):
        with pytest.raises(NotFound):
            gateway.store.apply_outcome('ws_CO_missing', TransactionStatus.SUCCESS)


class TestReads:

    def test_get_for_merchant_is_scoped(self, gateway, merchant):
        transaction, _ = gateway.store.create(merchant.id, 'ws_CO_1', _fields())

        assert gateway.store.get_for_merchant(merchant.id, transaction.id).id == transaction.id

        with pytest.raises(NotFound):
            gateway.store.get_for_merchant(uuid.uuid4(), transaction.id)

    def test_list_filters(self, gateway, merchant):
        gateway.store.create(merchant.id, 'ws_CO_1', _fields())
        gateway.store.create(merchant.id, 'AG_1', _fields(kind=TransactionKind.B2C))
        gateway.store.apply_outcome('AG_1', TransactionStatus.FAILED)

        assert gateway.store.list_for_merchant(merchant.id).total == 2
        assert gateway.store.list_for_merchant(merchant.id, kind='b2c').total == 1
        assert gateway.store.list_for_merchant(merchant.id, status='pending').items[0].provider_transaction_id \
            == 'ws_CO_1'


class TestConcurrentWorkers:
    """
    Each worker gets its own TransactionStore, so no in-process lock is
    shared and the database alone has to settle the race.
    """

    WORKERS = 4

    @pytest.fixture
    def shared_db(self, tmp_path):
        app = create_app('testing', {
            'SQLALCHEMY_DATABASE_URI': f'sqlite:///{tmp_path / "gateway.db"}',
            'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30, 'check_same_thread': False}},
        })

        with app.app_context():
            db.create_all()
            merchant = Merchant(name='Acme Stores', short_code='174379', environment='sandbox')
            db.session.add(merchant)
            db.session.commit()
            merchant_id = merchant.id

        yield app, merchant_id

        with app.app_context():
            db.session.remove()
            db.drop_all()

    def _race(self, app, action):
        barrier = threading.Barrier(self.WORKERS)
        results = []
        errors = []

        def worker():
            with app.app_context():
                store = TransactionStore()
                barrier.wait()
                try:
                    results.append(action(store))
                except Exception as exc:
                    errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(self.WORKERS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        return results

    def test_one_insert_wins(self, shared_db):
        app, merchant_id = shared_db

        results = self._race(app, lambda store: store.create(merchant_id, 'ws_CO_race', _fields())[1])

        assert sorted(results) == [False] * (self.WORKERS - 1) + [True]
        with app.app_context():
            assert Transaction.query.filter_by(provider_transaction_id='ws_CO_race').count() == 1
            assert AuditLog.query.filter_by(event_type='transaction.created').count() == 1

    def test_one_outcome_wins(self, shared_db):
        app, merchant_id = shared_db
        with app.app_context():
            TransactionStore().create(merchant_id, 'ws_CO_race', _fields())

        results = self._race(
            app, lambda store: store.apply_outcome('ws_CO_race', TransactionStatus.SUCCESS)[1])

        assert results.count(True) == 1
        with app.app_context():
            transaction = Transaction.query.filter_by(provider_transaction_id='ws_CO_race').one()
            assert transaction.status == 'success'
            assert AuditLog.query.filter_by(event_type='transaction.success').count() == 1
