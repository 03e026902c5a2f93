from enum import Enum
from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    error = "Application error"

    def __init__(self, message, status_code=None):
        super().__init__(message)
        if status_code:
            self.status_code = status_code
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.error, 'message': self.message}


class NotFound(AppError):
    status_code = 404
    error = "Not found"


class ErrorKind(str, Enum):
    VALIDATION = 'validation'
    AUTH = 'auth'
    ENCRYPTION = 'encryption'
    NETWORK = 'network'
    API = 'api'


class GatewayError(AppError):
    """
    Error raised by the Daraja integration layer.

    Every instance carries a ``kind`` from the closed ``ErrorKind`` set so that
    callers can branch on it exhaustively. The correlation fields never hold
    decrypted secret material.
    """

    kind: ErrorKind = ErrorKind.API

    def __init__(
            self,
            message: str,
            operation: Optional[str] = None,
            merchant_id: Optional[Any] = None,
            provider_transaction_id: Optional[str] = None,
            provider_code: Optional[str] = None,
            provider_description: Optional[str] = None,
            http_status: Optional[int] = None,
            context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.merchant_id = merchant_id
        self.provider_transaction_id = provider_transaction_id
        self.provider_code = provider_code
        self.provider_description = provider_description
        self.http_status = http_status
        self.context = context or {}

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.NETWORK

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'error': self.error,
            'kind': self.kind.value,
            'message': self.message,
            'operation': self.operation,
            'merchant_id': str(self.merchant_id) if self.merchant_id else None,
            'provider_transaction_id': self.provider_transaction_id,
        }
        if self.provider_code is not None:
            data['provider_code'] = self.provider_code
            data['provider_description'] = self.provider_description
        return data

    def __repr__(self):
        return f'<{self.__class__.__name__} kind={self.kind.value} operation={self.operation}>'


class ValidationError(GatewayError):
    kind = ErrorKind.VALIDATION
    status_code = 400
    error = "Validation error"


class AuthError(GatewayError):
    kind = ErrorKind.AUTH
    status_code = 502
    error = "Provider authentication failed"


class EncryptionError(GatewayError):
    kind = ErrorKind.ENCRYPTION
    status_code = 500
    error = "Encryption error"


class NetworkError(GatewayError):
    kind = ErrorKind.NETWORK
    status_code = 503
    error = "Provider unreachable"


class ApiError(GatewayError):
    kind = ErrorKind.API
    status_code = 502
    error = "Provider rejected the request"
