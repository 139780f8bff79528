"""Core module containing shared exceptions and constants."""

from app.core.exceptions import (
    SolNumeriqueError,
    ValidationError,
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    ConflictError,
    ExternalServiceError,
    ServiceUnavailableError,
)

__all__ = [
    "SolNumeriqueError",
    "ValidationError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "ExternalServiceError",
    "ServiceUnavailableError",
]
