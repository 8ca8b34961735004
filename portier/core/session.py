"""Session helpers and dependencies."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from portier.core.config import settings
from portier.core.database import get_db
from portier.domain.accounts.models import Account
from portier.domain.security.services import SecurityLogger, get_security_logger
from portier.domain.sessions.models import UserSession
from portier.domain.sessions.services import SessionIssuer
from portier.services.effects import OutboundEffects
from portier.services.notifications import NotificationSender, get_notification_sender


@dataclass
class CurrentSession:
    session: UserSession
    account: Account


def get_effects() -> OutboundEffects:
    """A fresh effects queue per request."""
    return OutboundEffects()


def get_session_issuer(
    db: AsyncSession = Depends(get_db),
    security: SecurityLogger = Depends(get_security_logger),
    sender: NotificationSender = Depends(get_notification_sender),
    effects: OutboundEffects = Depends(get_effects),
) -> SessionIssuer:
    return SessionIssuer(db, security, sender, effects)


async def get_session_token(request: Request) -> Optional[str]:
    """Return the session token stored in the cookie, if any."""
    return request.cookies.get(settings.COOKIE_NAME)


async def get_current_session(
    token: Optional[str] = Depends(get_session_token),
    issuer: SessionIssuer = Depends(get_session_issuer),
) -> CurrentSession:
    """Load the live session and its account, or fail with 401/403."""
    session, account = await issuer.authenticate(token)
    return CurrentSession(session=session, account=account)


async def get_current_account(current: CurrentSession = Depends(get_current_session)) -> Account:
    return current.account


__all__ = [
    "CurrentSession",
    "get_current_account",
    "get_current_session",
    "get_effects",
    "get_session_issuer",
    "get_session_token",
]
