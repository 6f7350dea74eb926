from typing import Any, Optional


class BoxOfficeError(Exception):
    """Base for errors that map onto a stable ``{code, message, details}``
    response body.
    """
    status_code = 400
    code = "ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationFailed(BoxOfficeError):
    status_code = 400
    code = "VALIDATION_FAILED"


class CartValidationError(ValidationFailed):
    pass


class CartRejected(BoxOfficeError):
    """One or more cart lines failed the capacity/eligibility checks."""
    status_code = 409
    code = "CAPACITY_EXCEEDED"


class NotFound(BoxOfficeError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(BoxOfficeError):
    status_code = 409
    code = "CONFLICT"


class AuthError(BoxOfficeError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(AuthError):
    status_code = 403
    code = "FORBIDDEN"


class PersistenceError(BoxOfficeError):
    status_code = 500
    code = "INTERNAL_ERROR"


class PaymentProviderError(BoxOfficeError):
    """Surfaced to API callers when the payment provider could not be used."""
    status_code = 502
    code = "PAYMENT_PROVIDER_ERROR"


# ----------------------------
# Provider adapter errors
# ----------------------------
class ProviderError(Exception):
    retryable = False

    def __init__(self, message: str, *, status: Optional[int] = None,
                 body: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class ProviderUnavailable(ProviderError):
    """Timeout, connection failure or 5xx. Safe to retry later."""
    retryable = True


class ProviderRejected(ProviderError):
    """The provider answered and refused the request."""
    retryable = False
