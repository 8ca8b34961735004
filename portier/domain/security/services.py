"""Audit trail and the queries built on it (failed logins, known devices).

Writes go through their own session so a failing audit insert can never roll
back, or abort, the sign-in that produced it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portier.core import clock
from portier.core.config import settings
from portier.core.database import AsyncSessionLocal
from portier.core.logging_config import SECURITY_LOGGER_NAME
from portier.domain.accounts.models import Account
from portier.domain.security.models import SecurityLog
from portier.domain.sessions.models import UserSession

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

LOGIN_FAILED = "login_failed"


class SecurityLogger:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        account_id: Optional[int],
        action: str,
        status: str,
        *,
        ip_address: Optional[str] = None,
        device_info: Optional[dict[str, Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Append one audit row. Returns False instead of raising when the write fails."""
        security_logger.info(
            "%s %s account=%s ip=%s", action, status, account_id if account_id is not None else "-", ip_address
        )
        try:
            async with self._session_factory() as db:
                db.add(
                    SecurityLog(
                        user_id=account_id,
                        action=action,
                        status=status,
                        ip_address=ip_address,
                        device_info=device_info,
                        details=details,
                        created_at=clock.utcnow(),
                    )
                )
                await db.commit()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to write security log %s for account %s", action, account_id)
            return False
        return True

    async def count_recent_failures(self, account_id: int, since: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count(SecurityLog.id)).where(
                    SecurityLog.user_id == account_id,
                    SecurityLog.action == LOGIN_FAILED,
                    SecurityLog.created_at > since,
                )
            )
            return int(result.scalar_one())

    async def register_failed_login(
        self,
        db: AsyncSession,
        account: Account,
        *,
        now: datetime,
        ip_address: Optional[str] = None,
        device_info: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Log a wrong password and lock the account once the window fills up.

        Returns True when this failure locked the account.
        """
        await self.record(
            account.id,
            LOGIN_FAILED,
            "failed",
            ip_address=ip_address,
            device_info=device_info,
            details={"reason": "bad_password"},
        )

        since = now - timedelta(minutes=settings.LOGIN_FAILURE_WINDOW_MINUTES)
        if account.locked_until is not None and account.locked_until > since:
            # Failures before the last lock ended or was lifted were already paid for.
            since = account.locked_until
        failures = await self.count_recent_failures(account.id, since)
        if failures < settings.LOGIN_FAILURE_LIMIT:
            return False

        account.locked_until = now + timedelta(minutes=settings.ACCOUNT_LOCK_MINUTES)
        account.updated_at = now
        await db.commit()
        security_logger.warning("Account %s locked after %d failed logins", account.id, failures)
        await self.record(
            account.id,
            "account_locked",
            "blocked",
            ip_address=ip_address,
            device_info=device_info,
            details={"failures": failures, "locked_until": account.locked_until.isoformat()},
        )
        return True

    async def list_for_account(
        self, db: AsyncSession, account_id: int, *, limit: int = 50, offset: int = 0
    ) -> list[SecurityLog]:
        result = await db.execute(
            select(SecurityLog)
            .where(SecurityLog.user_id == account_id)
            .order_by(SecurityLog.created_at.desc(), SecurityLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


async def is_new_device(
    db: AsyncSession,
    account_id: int,
    ip_address: Optional[str],
    device_type: str,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """True when the account has no session from this IP and device type in the lookback window."""
    now = now or clock.utcnow()
    since = now - timedelta(days=settings.NEW_DEVICE_LOOKBACK_DAYS)
    result = await db.execute(
        select(UserSession.id)
        .where(
            UserSession.user_id == account_id,
            UserSession.ip_address == ip_address,
            UserSession.device_type == device_type,
            UserSession.login_time >= since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is None


security_log = SecurityLogger()


def get_security_logger() -> SecurityLogger:
    return security_log


__all__ = ["SecurityLogger", "get_security_logger", "is_new_device", "security_log"]
