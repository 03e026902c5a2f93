from daraja_gateway.errors.exceptions import (
    AppError,
    NotFound,
    ErrorKind,
    GatewayError,
    ValidationError,
    AuthError,
    EncryptionError,
    NetworkError,
    ApiError,
)

__all__ = [
    'AppError',
    'NotFound',
    'ErrorKind',
    'GatewayError',
    'ValidationError',
    'AuthError',
    'EncryptionError',
    'NetworkError',
    'ApiError',
]
