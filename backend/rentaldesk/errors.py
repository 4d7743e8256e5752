# Overview: Error taxonomy shared by services, routes, and the API client.

"""
Typed errors for order lifecycle operations.

Every failure a caller can act on maps to exactly one class here. Routes turn
them into JSON responses with the class's HTTP status; the API client maps
HTTP statuses back to the same classes, so both sides raise identical types.

- ValidationFailed: user-correctable input problem, nothing was written
- Conflict: the order changed underneath the caller, or its state forbids
  the operation; refetch and retry
- NotFound: stale id, or an order outside the caller's branch
- Unauthenticated: no actor identity
- TransientIO: storage or network failure; the whole call is safe to retry
"""

from __future__ import annotations


class RentalError(Exception):
    """Base class for order lifecycle errors."""

    status_code = 500
    default_code = "error"

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationFailed(RentalError):
    """
    Input rejected before any mutation.

    severity="warning" marks soft limits the caller may override by
    resubmitting with an explicit confirmation flag.
    """

    status_code = 400
    default_code = "validation_failed"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        severity: str = "error",
        code: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, code=code, details=details)
        self.field = field
        self.severity = severity

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["field"] = self.field
        data["severity"] = self.severity
        return data


class Conflict(RentalError):
    status_code = 409
    default_code = "conflict"


class NotFound(RentalError):
    status_code = 404
    default_code = "not_found"


class Unauthenticated(RentalError):
    status_code = 401
    default_code = "unauthenticated"


class TransientIO(RentalError):
    status_code = 503
    default_code = "transient_io"


ERRORS_BY_STATUS = {
    400: ValidationFailed,
    401: Unauthenticated,
    404: NotFound,
    409: Conflict,
    503: TransientIO,
}


def error_from_payload(status_code: int, payload: dict | None) -> RentalError:
    """Rebuild a typed error from an API error response."""
    payload = payload or {}
    message = payload.get("error") or f"Request failed with status {status_code}"
    code = payload.get("code")
    details = payload.get("details") or {}

    if status_code == 400:
        return ValidationFailed(
            message,
            field=payload.get("field"),
            severity=payload.get("severity") or "error",
            code=code,
            details=details,
        )
    if status_code >= 500:
        return TransientIO(message, code=code, details=details)

    cls = ERRORS_BY_STATUS.get(status_code, RentalError)
    return cls(message, code=code, details=details)
