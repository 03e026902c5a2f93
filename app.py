import os
from daraja_gateway import create_app
from daraja_gateway.extensions import db, celery_app

app = create_app(os.getenv('FLASK_ENV', 'development'))

@app.shell_context_processor
def make_shell_context():
    from daraja_gateway.gateway import get_gateway
    from daraja_gateway.models import Merchant, Transaction, Webhook, WebhookDelivery, AuditLog
    return {
        'db': db,
        'gateway': get_gateway(),
        'Merchant': Merchant,
        'Transaction': Transaction,
        'Webhook': Webhook,
        'WebhookDelivery': WebhookDelivery,
        'AuditLog': AuditLog
    }

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
