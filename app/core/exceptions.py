"""
Domain exceptions raised by the service layer.

Each exception carries the HTTP status it maps to. The handlers registered in
app/main.py turn them into `{"error": message}` JSON responses, so services
never import FastAPI.
"""
from typing import Optional


class SolNumeriqueError(Exception):
    """Base exception for service layer errors"""
    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)


class ValidationError(SolNumeriqueError):
    """Raised when input or state violates a business rule"""
    status_code = 400


class AuthenticationError(SolNumeriqueError):
    """Raised when credentials are missing or wrong"""
    status_code = 401


class PermissionDeniedError(SolNumeriqueError):
    """Raised when the user is authenticated but not allowed"""
    status_code = 403


class NotFoundError(SolNumeriqueError):
    """Raised when a requested row doesn't exist"""
    status_code = 404

    def __init__(self, resource: str, resource_id=None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ConflictError(SolNumeriqueError):
    """Raised on duplicates (email taken, already participating...)"""
    status_code = 409


class ExternalServiceError(SolNumeriqueError):
    """Raised when Stripe or another upstream provider fails"""
    status_code = 502


class ServiceUnavailableError(SolNumeriqueError):
    """Raised when an optional integration is not configured"""
    status_code = 503
