from celery import Celery

WEBHOOK_QUEUE = 'webhooks'
RETRY_SWEEP_INTERVAL = 300.0


def create_celery(app=None):
    celery = Celery('daraja_gateway', include=['daraja_gateway.tasks.webhook_tasks'])

    if app:
        init_celery(celery, app)

    return celery


def init_celery(celery, app):
    """Bind the worker to the Flask config; every task runs inside an app context"""
    celery.conf.update(
        broker_url=app.config['CELERY_BROKER_URL'],
        result_backend=app.config['CELERY_RESULT_BACKEND'],
        task_always_eager=app.config.get('CELERY_TASK_ALWAYS_EAGER', False),
        # a delivery is retried by the dispatcher, never re-run by the broker
        task_acks_late=False,
        task_time_limit=app.config['WEBHOOK_TIMEOUT'] * 6,
        task_routes={
            'deliver_webhook_task': {'queue': WEBHOOK_QUEUE},
            'retry_due_webhook_deliveries_task': {'queue': WEBHOOK_QUEUE},
        },
        beat_schedule={
            'retry-due-webhook-deliveries': {
                'task': 'retry_due_webhook_deliveries_task',
                'schedule': RETRY_SWEEP_INTERVAL,
            },
        },
    )

    class AppContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery.Task = AppContextTask
