"""Typed failures raised by the billing core.

Each error carries the HTTP status and a short, user-safe message. Internal
details go to the log, never into ``message``.
"""


class BillingError(Exception):
    status_code = 500
    code = "internal"

    def __init__(self, message: str = "Something went wrong", **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message}


class ValidationError(BillingError):
    status_code = 400
    code = "invalid_argument"


class AuthenticationError(BillingError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(BillingError):
    status_code = 403
    code = "permission_denied"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    """Concurrent write conflict; the whole operation may be retried."""

    status_code = 409
    code = "conflict"


class ExternalServiceError(BillingError):
    """Payment gateway or another upstream failed; retryable."""

    status_code = 502
    code = "external_service"


def validate_id(value: str | None, label: str = "id") -> str:
    if not value or not isinstance(value, str):
        raise ValidationError(f"Missing {label}")
    if "/" in value or ".." in value:
        raise ValidationError(f"Invalid {label}")
    return value
