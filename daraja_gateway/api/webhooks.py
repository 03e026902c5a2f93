"""
Webhook delivery administration
"""

import uuid

from flask import Blueprint, request, jsonify

from daraja_gateway.gateway import get_gateway
from daraja_gateway.schemas.webhook_schema import WebhookDeliverySchema

webhooks_bp = Blueprint('webhooks', __name__)

delivery_schema = WebhookDeliverySchema()


@webhooks_bp.route('/merchants/<uuid:merchant_id>/webhook-deliveries', methods=['GET'])
def list_deliveries(merchant_id):
    """
    List a merchant's webhook deliveries

    Query Parameters:
        - webhook_id: Filter by webhook
        - delivered: true | false
        - page: Page number (default: 1)
        - per_page: Items per page (default: 50, max: 100)
    """
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('per_page', 50, type=int), 100)

    delivered = request.args.get('delivered')
    if delivered is not None:
        delivered = delivered.lower() == 'true'

    pagination = get_gateway().dispatcher.list_deliveries(
        merchant_id,
        webhook_id=request.args.get('webhook_id', type=uuid.UUID),
        delivered=delivered,
        page=page,
        per_page=per_page
    )

    return jsonify({
        'success': True,
        'data': delivery_schema.dump(pagination.items, many=True),
        'pagination': {
            'page': pagination.page,
            'per_page': pagination.per_page,
            'total': pagination.total,
            'pages': pagination.pages
        }
    }), 200


@webhooks_bp.route('/webhook-deliveries/dead-letter', methods=['GET'])
def dead_letter_queue():
    """Deliveries that exhausted every retry"""
    deliveries = get_gateway().dispatcher.dead_letter()

    return jsonify({
        'success': True,
        'data': delivery_schema.dump(deliveries, many=True),
        'count': len(deliveries)
    }), 200


@webhooks_bp.route('/webhook-deliveries/<uuid:delivery_id>/redeliver', methods=['POST'])
def redeliver(delivery_id):
    """Manually retry a delivery"""
    delivery = get_gateway().dispatcher.redeliver(delivery_id)

    return jsonify({
        'success': True,
        'data': delivery_schema.dump(delivery)
    }), 202
