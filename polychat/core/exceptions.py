"""
Error taxonomy for billing, credit and chat operations.

Services raise these; the application renders them as
{"error": <code>, "detail": <message>} with the matching HTTP status.
"""
from typing import Any, Dict, Optional


class PolychatError(Exception):
    """Base class for errors that map onto an API response."""
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "", extra: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.message}
        body.update(self.extra)
        return body


class UnauthorizedError(PolychatError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(PolychatError):
    status_code = 404
    code = "not_found"


class ValidationFailedError(PolychatError):
    status_code = 400
    code = "validation_failed"


class InsufficientCreditsError(PolychatError):
    status_code = 402
    code = "insufficient_credits"


class InvalidTransitionError(PolychatError):
    status_code = 409
    code = "invalid_transition"


class ExternalProviderError(PolychatError):
    """A payment provider call failed."""
    status_code = 502
    code = "external_provider_error"


class WebhookSignatureError(PolychatError):
    status_code = 400
    code = "webhook_signature_invalid"


class InternalError(PolychatError):
    status_code = 500
    code = "internal_error"
