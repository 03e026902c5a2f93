"""
Transaction Store
Single entry point for every Transaction write, keyed by provider transaction id.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from daraja_gateway.errors import ApiError, NotFound, ValidationError
from daraja_gateway.extensions import db
from daraja_gateway.models import Transaction, TransactionStatus
from daraja_gateway.services.audit_service import AuditService
from daraja_gateway.utils.locks import KeyedLock
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)


def merge_patch(target: Optional[Dict[str, Any]], patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """RFC 7396 merge: nested dicts merge, ``None`` removes a key, anything else replaces."""
    result = dict(target or {})
    for key, value in (patch or {}).items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_patch(result[key], value)
        else:
            result[key] = value
    return result


class TransactionStore:
    """
    Idempotent create and compare-and-swap outcome application.

    Writes for one provider transaction id are serialised in-process by a
    per-id lock; across processes the conditional UPDATE on ``status='pending'``
    lets exactly one terminal transition win.
    """

    def __init__(self):
        self._locks = KeyedLock()

    def create(self, merchant_id: uuid.UUID, provider_transaction_id: str,
               fields: Dict[str, Any]) -> Tuple[Transaction, bool]:
        """
        Insert a transaction unless one with the same provider id exists.

        Args:
            fields: kind, amount, optional status (defaults to pending),
                    phone_number, account_reference, description, metadata

        Returns:
            (transaction, created) where ``created`` is False when an existing
            row was returned unchanged
        """
        if not provider_transaction_id:
            raise ValidationError('provider transaction id is required', merchant_id=merchant_id)

        with self._locks.hold(provider_transaction_id):
            existing = Transaction.query.filter_by(provider_transaction_id=provider_transaction_id).first()
            if existing is not None:
                if existing.merchant_id != merchant_id:
                    logger.error('Provider id %s already belongs to merchant %s', provider_transaction_id,
                                 existing.merchant_id)
                    raise ApiError(
                        f'Provider transaction {provider_transaction_id} is already recorded for another merchant',
                        merchant_id=merchant_id,
                        provider_transaction_id=provider_transaction_id
                    )
                logger.info('Transaction %s already recorded; returning existing row', provider_transaction_id)
                return existing, False

            status = TransactionStatus(fields.get('status', TransactionStatus.PENDING))
            transaction = Transaction(
                merchant_id=merchant_id,
                provider_transaction_id=provider_transaction_id,
                kind=str(getattr(fields['kind'], 'value', fields['kind'])),
                amount=Decimal(str(fields['amount'])),
                status=status.value,
                phone_number=fields.get('phone_number'),
                account_reference=fields.get('account_reference'),
                description=fields.get('description'),
                provider_metadata=fields.get('metadata') or {},
                completed_at=datetime.utcnow() if status.is_terminal else None
            )
            db.session.add(transaction)

            try:
                db.session.flush()
            except IntegrityError:
                # Another process inserted the same id first
                db.session.rollback()
                existing = Transaction.query.filter_by(provider_transaction_id=provider_transaction_id).first()
                logger.info('Lost insert race for %s; returning winner', provider_transaction_id)
                return existing, False

            AuditService.log_event(
                event_type='transaction.created',
                event_data={'provider_transaction_id': provider_transaction_id,
                            'kind': transaction.kind, 'status': transaction.status},
                merchant_id=merchant_id,
                transaction_id=transaction.id,
                commit=False
            )
            db.session.commit()

            logger.info('Transaction created: %s (%s, %s)', provider_transaction_id, transaction.kind, transaction.status)
            return transaction, True

    def apply_outcome(self, provider_transaction_id: str, status: TransactionStatus,
                      metadata_patch: Optional[Dict[str, Any]] = None) -> Tuple[Transaction, bool]:
        """
        Move a pending transaction to a terminal status and merge-patch its metadata.

        Applying an outcome to a transaction that is already terminal is a
        logged no-op so duplicate provider callbacks are harmless.

        Returns:
            (transaction, changed)

        Raises:
            NotFound: no transaction has this provider id
        """
        status = TransactionStatus(status)

        with self._locks.hold(provider_transaction_id):
            transaction = Transaction.query.filter_by(provider_transaction_id=provider_transaction_id).first()
            if transaction is None:
                raise NotFound(f'Transaction {provider_transaction_id} not found')

            if transaction.is_terminal:
                logger.info('Ignoring %s outcome for %s: already %s',
                            status.value, provider_transaction_id, transaction.status)
                return transaction, False

            if not status.is_terminal:
                # Still pending; keep whatever the provider told us
                if metadata_patch:
                    transaction.provider_metadata = merge_patch(transaction.provider_metadata, metadata_patch)
                    db.session.commit()
                return transaction, False

            now = datetime.utcnow()
            result = db.session.execute(
                db.update(Transaction)
                .where(Transaction.provider_transaction_id == provider_transaction_id)
                .where(Transaction.status == TransactionStatus.PENDING.value)
                .values(
                    status=status.value,
                    provider_metadata=merge_patch(transaction.provider_metadata, metadata_patch),
                    completed_at=now,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                db.session.rollback()
                transaction = Transaction.query.filter_by(provider_transaction_id=provider_transaction_id).first()
                logger.info('Concurrent outcome for %s won; now %s', provider_transaction_id, transaction.status)
                return transaction, False

            AuditService.log_event(
                event_type=f'transaction.{status.value}',
                event_data={'provider_transaction_id': provider_transaction_id, 'previous_status': 'pending'},
                merchant_id=transaction.merchant_id,
                transaction_id=transaction.id,
                commit=False
            )
            db.session.commit()
            db.session.refresh(transaction)

            logger.info('Transaction %s -> %s', provider_transaction_id, status.value)
            return transaction, True

    @staticmethod
    def get(provider_transaction_id: str) -> Optional[Transaction]:
        return Transaction.query.filter_by(provider_transaction_id=provider_transaction_id).first()

    @staticmethod
    def get_for_merchant(merchant_id: uuid.UUID, transaction_id: uuid.UUID) -> Transaction:
        transaction = Transaction.query.filter_by(id=transaction_id, merchant_id=merchant_id).first()
        if transaction is None:
            raise NotFound('Transaction not found')
        return transaction

    @staticmethod
    def list_for_merchant(merchant_id: uuid.UUID, status: Optional[str] = None, kind: Optional[str] = None,
                          page: int = 1, per_page: int = 20):
        query = Transaction.query.filter_by(merchant_id=merchant_id)

        if status:
            query = query.filter_by(status=status)

        if kind:
            query = query.filter_by(kind=kind)

        return query.order_by(Transaction.created_at.desc()).paginate(
            page=page,
            per_page=per_page,
            error_out=False
        )
