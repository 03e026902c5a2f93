from flask import Blueprint, request, jsonify
from marshmallow import ValidationError

from daraja_gateway.errors import NotFound
from daraja_gateway.gateway import get_gateway
from daraja_gateway.models import Merchant
from daraja_gateway.schemas.credential_schema import StoreCredentialsSchema
from daraja_gateway.services.credential_vault import CredentialSet

credentials_bp = Blueprint('credentials', __name__)

store_schema = StoreCredentialsSchema()


@credentials_bp.route('/<uuid:merchant_id>/credentials', methods=['PUT'])
def store_credentials(merchant_id):
    """
    Replace a merchant's Daraja credentials

    Body:
        {
            "consumer_key": "...",
            "consumer_secret": "...",
            "passkey": "...",
            "initiator_name": "testapi",
            "initiator_password": "...",
            "certificate_pem": "-----BEGIN CERTIFICATE-----..."
        }

    The response reports which parts are configured; it never echoes secrets.
    """
    if Merchant.query.get(merchant_id) is None:
        raise NotFound('Merchant not found')

    try:
        data = store_schema.load(request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({
            'success': False,
            'error': 'Validation error',
            'details': e.messages
        }), 400

    record = get_gateway().vault.store(merchant_id, CredentialSet(**data), actor='api')

    return jsonify({
        'success': True,
        'data': record.to_dict()
    }), 200


@credentials_bp.route('/<uuid:merchant_id>/credentials', methods=['GET'])
def credentials_status(merchant_id):
    """Which credential parts are configured, without any secret values"""
    merchant = Merchant.query.get(merchant_id)
    if merchant is None:
        raise NotFound('Merchant not found')

    if merchant.credential is None:
        raise NotFound('Credentials not configured')

    return jsonify({
        'success': True,
        'data': merchant.credential.to_dict()
    }), 200
