from __future__ import annotations

from typing import Any


class ChatError(Exception):
    """Base class for errors that may cross the wire.

    ``code`` is the machine readable category sent to clients and ``status``
    the HTTP status used by the REST surface.
    """

    code = "internal"
    status = 500
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_body(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(ChatError):
    code = "invalid_request"
    status = 400


class AuthError(ChatError):
    code = "unauthorized"
    status = 401


class NotFoundError(ChatError):
    code = "not_found"
    status = 404


class TransientError(ChatError):
    code = "internal"
    status = 500
    retryable = True


class PolicyError(ChatError):
    code = "rate_limited"
    status = 429


_BY_STATUS = {
    400: ValidationError,
    401: AuthError,
    403: AuthError,
    404: NotFoundError,
    429: PolicyError,
}


def error_for_status(status: int, message: str = "") -> ChatError:
    """Map an HTTP status back to the error taxonomy."""

    if status >= 500:
        return TransientError(message)
    error_cls = _BY_STATUS.get(status, ValidationError)
    return error_cls(message)
