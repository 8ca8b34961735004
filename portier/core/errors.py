"""Error taxonomy shared by the domain services and the HTTP layer.

Services raise these; ``portier.web.errors`` turns them into JSON bodies of
the form ``{"error": ..., "errorCode": ..., **extra}``.
"""
from __future__ import annotations

from typing import Any

from fastapi import status

# Single message for every credential failure so the response never tells
# an unknown identifier apart from a wrong password.
INVALID_CREDENTIALS_MESSAGE = "Invalid identifier or password"


class PortierError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "SERVER_ERROR"
    message: str = "Something went wrong, please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        params: dict[str, Any] | None = None,
        **extra: Any,
    ) -> None:
        self.message = message or self.message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        # Interpolated into the translated message.
        self.params = params or {}
        # Merged into the JSON body next to error/errorCode.
        self.extra = extra
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code!r}, {self.message!r})"


class ValidationError(PortierError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"
    message = "Invalid request"


class NotFoundError(PortierError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Not found"


class RateLimitError(PortierError):
    """Cooldown or attempt ceiling hit.

    ``retry_after`` is the number of seconds until a retry may succeed; it is
    ``None`` when the caller is blocked until someone resets the counter.
    """

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "TOO_MANY_REQUESTS"
    message = "Too many requests. Please try again later."

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: int | None = None,
        blocked: bool = False,
        **kwargs: Any,
    ) -> None:
        self.retry_after = retry_after
        self.blocked = blocked
        super().__init__(message, **kwargs)


class AuthError(PortierError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "INVALID_CREDENTIALS"
    message = INVALID_CREDENTIALS_MESSAGE


class ServerError(PortierError):
    pass


def invalid_credentials() -> AuthError:
    """The one error raised for unknown identifiers and wrong passwords alike."""
    return AuthError(INVALID_CREDENTIALS_MESSAGE, error_code="INVALID_CREDENTIALS")


__all__ = [
    "AuthError",
    "INVALID_CREDENTIALS_MESSAGE",
    "NotFoundError",
    "PortierError",
    "RateLimitError",
    "ServerError",
    "ValidationError",
    "invalid_credentials",
]
