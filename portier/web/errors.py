"""JSON rendering for every error the API can return."""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from portier.core.errors import PortierError, RateLimitError
from portier.core.i18n import translate

logger = logging.getLogger(__name__)


def error_body(message: str, error_code: str, **extra) -> dict:
    return {"error": translate(message), "errorCode": error_code, **extra}


async def portier_error_handler(request: Request, exc: PortierError) -> JSONResponse:
    body = {"error": translate(exc.message, **exc.params), "errorCode": exc.error_code, **exc.extra}
    headers = {}
    if isinstance(exc, RateLimitError):
        body["blocked"] = exc.blocked
        if exc.retry_after is not None:
            body.setdefault("retryAfter", exc.retry_after)
            headers["Retry-After"] = str(exc.retry_after)

    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s [request_id=%s]",
            exc.error_code,
            request.method,
            request.url.path,
            getattr(request.state, "request_id", "-"),
        )
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers or None)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Invalid request", "VALIDATION_ERROR", fields=[f for f in fields if f]),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error for %s %s [request_id=%s]",
        request.method,
        request.url.path,
        getattr(request.state, "request_id", "-"),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Something went wrong, please try again.", "SERVER_ERROR"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PortierError, portier_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)


__all__ = ["register_exception_handlers"]
