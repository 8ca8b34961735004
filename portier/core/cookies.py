"""Utilities for working with the session cookie."""
from __future__ import annotations

from datetime import timedelta

from fastapi import Response

from portier.core.config import settings


def _cookie_options() -> dict:
    """HTTP-only everywhere; secure + SameSite=None only behind HTTPS in production."""
    return {
        "httponly": True,
        "samesite": "none" if settings.is_production else "lax",
        "secure": settings.is_production,
        "domain": settings.COOKIE_DOMAIN,
        "path": "/",
    }


def set_session_cookie(response: Response, token: str) -> None:
    """Set the session cookie holding the exact token stored in ``user_session``."""
    response.set_cookie(
        key=settings.COOKIE_NAME,
        value=token,
        max_age=int(timedelta(days=settings.SESSION_TTL_DAYS).total_seconds()),
        **_cookie_options(),
    )


def clear_session_cookie(response: Response) -> None:
    """Remove the session cookie using the same security options."""
    response.delete_cookie(key=settings.COOKIE_NAME, **_cookie_options())
