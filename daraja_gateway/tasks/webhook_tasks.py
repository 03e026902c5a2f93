from daraja_gateway.extensions import celery_app
from daraja_gateway.gateway import get_gateway
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)


@celery_app.task(name='deliver_webhook_task')
def deliver_webhook_task(delivery_id: str) -> bool:
    """
    Make one delivery attempt for a webhook delivery

    Args:
        delivery_id: UUID of the WebhookDelivery row

    Returns:
        True once the delivery has been acknowledged with a 2xx
    """
    delivery = get_gateway().dispatcher.deliver(delivery_id)
    return delivery.delivered_at is not None


@celery_app.task(name='retry_due_webhook_deliveries_task')
def retry_due_webhook_deliveries_task() -> int:
    """
    Reschedule deliveries whose retry was due but never ran

    Runs periodically from celery beat.
    """
    count = get_gateway().dispatcher.retry_due_deliveries()
    logger.info('Retry sweep rescheduled %d deliveries', count)
    return count
