"""
Webhook Dispatcher
Fans transaction lifecycle events out to merchant webhooks with signed
payloads, exponential backoff and a permanent delivery record.
"""

import hmac
import json
import random
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests
from sqlalchemy.exc import IntegrityError

from daraja_gateway.errors import NotFound
from daraja_gateway.extensions import db
from daraja_gateway.models import Transaction, Webhook, WebhookDelivery
from daraja_gateway.utils.encryption import hmac_sha256_hex
from daraja_gateway.utils.locks import KeyedLock
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)

EVENT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, 'daraja-gateway/webhook-events')

SIGNATURE_HEADER = 'X-Webhook-Signature'
EVENT_HEADER = 'X-Webhook-Event'
ID_HEADER = 'X-Webhook-Id'

# Celery may run a countdown task a moment before the stored retry time
DUE_SLACK = timedelta(seconds=1)

# scheduler(delivery_id, countdown_seconds)
Scheduler = Callable[[uuid.UUID, float], Any]


def event_id_for(transaction: Transaction) -> str:
    """Same transaction and status always give the same event id."""
    return str(uuid.uuid5(EVENT_NAMESPACE, f'{transaction.id}:{transaction.status}'))


def sign_body(secret: str, body: bytes) -> str:
    return f'sha256={hmac_sha256_hex(secret, body)}'


def verify_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    """Receiver-side check of an ``X-Webhook-Signature`` header."""
    if not header:
        return False
    return hmac.compare_digest(sign_body(secret, body), header.strip())


def _celery_scheduler(delivery_id: uuid.UUID, countdown: float) -> None:
    from daraja_gateway.tasks.webhook_tasks import deliver_webhook_task
    deliver_webhook_task.apply_async(args=[str(delivery_id)], countdown=countdown)


class WebhookDispatcher:
    """Creates WebhookDelivery rows and drives their delivery attempts"""

    def __init__(
            self,
            max_attempts: int = 8,
            backoff_base: int = 30,
            backoff_cap: int = 6 * 3600,
            timeout: int = 10,
            body_limit: int = 2048,
            scheduler: Optional[Scheduler] = None,
            session: Optional[requests.Session] = None,
            jitter: Callable[[float, float], float] = random.uniform,
            clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.timeout = timeout
        self.body_limit = body_limit
        self.scheduler = scheduler or _celery_scheduler
        self.jitter = jitter
        self.clock = clock

        self._session = session or requests.Session()
        self._locks = KeyedLock()

    @classmethod
    def from_config(cls, config, **kwargs) -> 'WebhookDispatcher':
        return cls(
            max_attempts=config.get('WEBHOOK_MAX_ATTEMPTS', 8),
            backoff_base=config.get('WEBHOOK_BACKOFF_BASE', 30),
            backoff_cap=config.get('WEBHOOK_BACKOFF_CAP', 6 * 3600),
            timeout=config.get('WEBHOOK_TIMEOUT', 10),
            body_limit=config.get('WEBHOOK_RESPONSE_BODY_LIMIT', 2048),
            **kwargs
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped and jittered."""
        delay = min(self.backoff_base * 2 ** (attempt - 1), self.backoff_cap)
        return delay + self.jitter(0, delay * 0.1)

    def _schedule(self, delivery_id: uuid.UUID, countdown: float) -> None:
        try:
            self.scheduler(delivery_id, countdown)
        except Exception:
            # The row keeps next_attempt_at, so the retry sweep picks it up
            logger.exception('Could not schedule webhook delivery %s', delivery_id)

    @staticmethod
    def build_envelope(transaction: Transaction, event_id: str) -> Dict[str, Any]:
        return {
            'eventId': event_id,
            'transactionId': transaction.provider_transaction_id,
            'type': f'{transaction.kind}.{transaction.status}',
            'status': transaction.status,
            'amount': float(transaction.amount) if transaction.amount is not None else None,
            'occurredAt': (transaction.completed_at or transaction.updated_at or datetime.utcnow()).isoformat() + 'Z',
        }

    def notify(self, transaction: Transaction) -> List[WebhookDelivery]:
        """
        Enqueue one delivery per active webhook subscribed to the transaction's kind.

        Calling this again for the same transaction status creates nothing new.
        """
        event_id = event_id_for(transaction)
        envelope = self.build_envelope(transaction, event_id)

        webhooks = Webhook.query.filter_by(merchant_id=transaction.merchant_id, is_active=True).all()
        created = []

        for webhook in webhooks:
            if not webhook.is_subscribed_to(transaction.kind):
                continue

            if WebhookDelivery.query.filter_by(webhook_id=webhook.id, event_id=event_id).first():
                logger.info('Event %s already queued for webhook %s', event_id, webhook.id)
                continue

            delivery = WebhookDelivery(
                webhook_id=webhook.id,
                transaction_id=transaction.id,
                event_id=event_id,
                event_type=envelope['type'],
                payload=envelope,
                attempts=0,
                attempt_log=[],
                next_attempt_at=self.clock()
            )
            db.session.add(delivery)

            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                logger.info('Event %s queued concurrently for webhook %s', event_id, webhook.id)
                continue

            created.append(delivery)

        for delivery in created:
            self._schedule(delivery.id, 0)

        if created:
            logger.info('Queued %d webhook deliveries for %s (%s)',
                        len(created), transaction.provider_transaction_id, envelope['type'])
        return created

    def deliver(self, delivery_id: uuid.UUID) -> WebhookDelivery:
        """
        Make one delivery attempt.

        2xx marks the delivery delivered; anything else (including transport
        failures) schedules the next attempt until ``max_attempts`` is reached,
        after which the delivery is marked failed and kept.

        A task that arrives before ``next_attempt_at`` does nothing. Each
        attempt is claimed with a conditional UPDATE on the attempt counter,
        so the delayed retry and the sweep's copy of it POST only once.
        """
        delivery_id = uuid.UUID(str(delivery_id))

        with self._locks.hold(delivery_id):
            delivery = WebhookDelivery.query.get(delivery_id)
            if delivery is None:
                raise NotFound(f'Webhook delivery {delivery_id} not found')

            if delivery.is_finished:
                return delivery

            webhook = delivery.webhook
            now = self.clock()

            if delivery.next_attempt_at is not None and delivery.next_attempt_at > now + DUE_SLACK:
                logger.info('Delivery %s not due until %s; skipping', delivery.id, delivery.next_attempt_at)
                return delivery

            if not webhook.is_active:
                delivery.failed_at = now
                delivery.next_attempt_at = None
                db.session.commit()
                logger.warning('Webhook %s disabled; delivery %s abandoned', webhook.id, delivery.id)
                return delivery

            if not self._claim(delivery, now):
                db.session.rollback()
                delivery = WebhookDelivery.query.get(delivery_id)
                logger.info('Attempt for delivery %s already taken by another worker', delivery_id)
                return delivery

            body = json.dumps(delivery.payload, separators=(',', ':'), sort_keys=True).encode()
            headers = {
                'Content-Type': 'application/json',
                SIGNATURE_HEADER: sign_body(webhook.secret, body),
                EVENT_HEADER: delivery.event_type,
                ID_HEADER: delivery.event_id,
            }

            status_code = None
            response_text = None
            error = None
            try:
                resp = self._session.post(webhook.url, data=body, headers=headers, timeout=self.timeout)
                status_code = resp.status_code
                response_text = (resp.text or '')[:self.body_limit]
            except requests.RequestException as exc:
                error = str(exc)[:self.body_limit]

            delivery.response_status = status_code
            delivery.response_body = response_text if error is None else error

            # Reassign so the JSON column is flagged dirty
            delivery.attempt_log = list(delivery.attempt_log or []) + [{
                'attempt': delivery.attempts,
                'at': now.isoformat(),
                'status': status_code,
                'body': response_text,
                'error': error,
            }]

            countdown = None
            if status_code is not None and 200 <= status_code < 300:
                delivery.delivered_at = now
                delivery.next_attempt_at = None
                logger.info('Delivered %s to %s on attempt %d', delivery.event_id, webhook.url, delivery.attempts)
            elif delivery.attempts >= self.max_attempts:
                delivery.failed_at = now
                delivery.next_attempt_at = None
                logger.error('Giving up on %s to %s after %d attempts', delivery.event_id, webhook.url, delivery.attempts)
            else:
                countdown = self.backoff(delivery.attempts)
                delivery.next_attempt_at = now + timedelta(seconds=countdown)
                logger.warning('Delivery %s attempt %d failed (%s); retrying in %.0fs',
                               delivery.event_id, delivery.attempts, status_code or error, countdown)

            db.session.commit()

        if countdown is not None:
            self._schedule(delivery.id, countdown)
        return delivery

    def _claim(self, delivery: WebhookDelivery, now: datetime) -> bool:
        """Take the next attempt number; False when another worker took it first"""
        seen = delivery.attempts or 0
        result = db.session.execute(
            db.update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery.id)
            .where(db.func.coalesce(WebhookDelivery.attempts, 0) == seen)
            .where(WebhookDelivery.delivered_at.is_(None))
            .where(WebhookDelivery.failed_at.is_(None))
            .values(
                attempts=seen + 1,
                last_attempt_at=now,
                # held while the POST is in flight; the sweep retries it if this worker dies
                next_attempt_at=now + timedelta(seconds=self.timeout * 2)
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        db.session.commit()
        db.session.refresh(delivery)
        return True

    def retry_due_deliveries(self, now: Optional[datetime] = None, grace: int = 60) -> int:
        """
        Reschedule deliveries whose retry time passed without an attempt,
        e.g. because the broker lost the delayed task.
        """
        now = now or self.clock()
        due = WebhookDelivery.query.filter(
            WebhookDelivery.delivered_at.is_(None),
            WebhookDelivery.failed_at.is_(None),
            WebhookDelivery.next_attempt_at <= now - timedelta(seconds=grace)
        ).all()

        for delivery in due:
            self._schedule(delivery.id, 0)

        if due:
            logger.info('Rescheduled %d overdue webhook deliveries', len(due))
        return len(due)

    def redeliver(self, delivery_id: uuid.UUID) -> WebhookDelivery:
        """
        Manually retry a failed delivery. Attempts keep counting from where
        they stopped, so a dead-lettered delivery gets exactly one more try.
        """
        delivery = WebhookDelivery.query.get(uuid.UUID(str(delivery_id)))
        if delivery is None:
            raise NotFound(f'Webhook delivery {delivery_id} not found')

        if delivery.delivered_at is not None:
            logger.info('Delivery %s already delivered; not retrying', delivery.id)
            return delivery

        delivery.failed_at = None
        delivery.next_attempt_at = self.clock()
        db.session.commit()

        self._schedule(delivery.id, 0)
        return delivery

    @staticmethod
    def dead_letter() -> List[WebhookDelivery]:
        """Deliveries that exhausted their attempts"""
        return WebhookDelivery.query.filter(
            WebhookDelivery.failed_at.isnot(None)
        ).order_by(WebhookDelivery.failed_at.desc()).all()

    @staticmethod
    def list_deliveries(merchant_id: uuid.UUID, webhook_id: Optional[uuid.UUID] = None,
                        delivered: Optional[bool] = None, page: int = 1, per_page: int = 50):
        query = WebhookDelivery.query.join(Webhook).filter(Webhook.merchant_id == merchant_id)

        if webhook_id:
            query = query.filter(WebhookDelivery.webhook_id == webhook_id)

        if delivered is True:
            query = query.filter(WebhookDelivery.delivered_at.isnot(None))
        elif delivered is False:
            query = query.filter(WebhookDelivery.delivered_at.is_(None))

        return query.order_by(WebhookDelivery.created_at.desc()).paginate(
            page=page,
            per_page=per_page,
            error_out=False
        )
