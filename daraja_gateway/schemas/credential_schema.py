from marshmallow import Schema, fields, validate


class StoreCredentialsSchema(Schema):
    """Daraja credential set; every field is write-only"""
    consumer_key = fields.Str(required=True, load_only=True, validate=validate.Length(min=1))
    consumer_secret = fields.Str(required=True, load_only=True, validate=validate.Length(min=1))
    passkey = fields.Str(required=False, load_only=True)
    initiator_name = fields.Str(required=False, load_only=True)
    initiator_password = fields.Str(required=False, load_only=True)
    certificate_pem = fields.Str(required=False, load_only=True)
