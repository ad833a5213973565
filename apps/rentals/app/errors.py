"""Stable error kinds surfaced by the rentals core.

Every failure of a core operation is one of these; the HTTP layer maps the
kind to a status code and echoes ``kind`` in the body so clients can route
on it without parsing messages.
"""

from typing import Any, Dict, Optional


class RentalsError(Exception):
    kind = "Error"
    status_code = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "kind": self.kind}
        body.update(self.extra)
        return body


class ValidationError(RentalsError):
    kind = "ValidationError"
    status_code = 400


class InvalidTransition(RentalsError):
    kind = "InvalidTransition"
    status_code = 409

    def __init__(self, message: str, state: Optional[str] = None, **extra: Any) -> None:
        if state is not None:
            extra["state"] = state
        super().__init__(message, **extra)


class GatingFailure(RentalsError):
    kind = "GatingFailure"
    status_code = 403

    def __init__(self, precondition: str, message: Optional[str] = None, **extra: Any) -> None:
        super().__init__(message or f"Precondition not met: {precondition}", precondition=precondition, **extra)
        self.precondition = precondition


class ExternalProviderFailure(RentalsError):
    kind = "ExternalProviderFailure"
    status_code = 502

    def __init__(self, op: str, message: str, attempts: int = 1, poll: bool = False, **extra: Any) -> None:
        super().__init__(message, op=op, attempts=attempts, poll=poll, **extra)
        self.op = op
        self.attempts = attempts


class ConcurrencyConflict(RentalsError):
    kind = "ConcurrencyConflict"
    status_code = 409

    def __init__(self, message: str = "Concurrent update, retry", **extra: Any) -> None:
        super().__init__(message, retryable=True, **extra)


class NotFound(RentalsError):
    kind = "NotFound"
    status_code = 404


class Forbidden(RentalsError):
    kind = "Forbidden"
    status_code = 403
