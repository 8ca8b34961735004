"""Password sign-in, session issuance and session lifecycle."""
from __future__ import annotations

import functools
import logging
import math
from dataclasses import asdict, dataclass
from typing import Optional

from fastapi import status
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from portier.core import clock
from portier.core.config import settings
from portier.core.errors import AuthError, NotFoundError, ServerError, ValidationError, invalid_credentials
from portier.core.logging_config import anonymise
from portier.core.security import create_session_token, decode_session_token, get_password_hash, verify_password
from portier.domain.accounts.models import Account
from portier.domain.accounts.services import change_password as change_account_password, find_account
from portier.domain.identity.services import parse_identifier
from portier.domain.security.services import SecurityLogger, is_new_device
from portier.domain.sessions.models import UserSession
from portier.services.effects import OutboundEffects
from portier.services.notifications import NotificationSender

logger = logging.getLogger(__name__)

DEVICE_TYPES = ("mobile", "desktop", "tablet")


@functools.lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return get_password_hash("portier-timing-equaliser")


def _equalise_timing(password: str) -> None:
    # Runs in a worker thread, first hash included.
    verify_password(password, _dummy_hash())


@dataclass
class DeviceInfo:
    ip_address: str = "unknown"
    device_type: str = "desktop"
    device_name: str = "Unknown"
    user_agent: str = "Unknown"

    def __post_init__(self) -> None:
        self.device_type = (self.device_type or "").lower()
        if self.device_type not in DEVICE_TYPES:
            self.device_type = "desktop"
        self.device_name = (self.device_name or "Unknown")[:100]
        self.user_agent = self.user_agent or "Unknown"
        self.ip_address = (self.ip_address or "unknown")[:45]

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass
class LoginResult:
    session: UserSession
    account: Account
    is_new_device: bool


def _contact_for(account: Account) -> tuple[str, str] | None:
    if account.email:
        return account.email, "email"
    if account.phone:
        return account.phone, "phone"
    return None


class SessionIssuer:
    def __init__(
        self,
        db: AsyncSession,
        security: SecurityLogger,
        sender: NotificationSender,
        effects: OutboundEffects,
    ) -> None:
        self.db = db
        self.security = security
        self.sender = sender
        self.effects = effects

    async def login(self, raw_identifier: str | None, password: str | None, device: DeviceInfo) -> LoginResult:
        """Check credentials and open a session.

        Unknown identifiers, soft-deleted accounts, accounts without a password
        and wrong passwords all end in the same ``invalid_credentials()``.
        """
        if not password:
            raise ValidationError("Password is required", error_code="PASSWORD_REQUIRED")
        identifier, kind = parse_identifier(raw_identifier)

        account = await find_account(self.db, identifier, kind.value)
        now = clock.utcnow()

        if account is None or not account.password_hash:
            await run_in_threadpool(_equalise_timing, password)
            await self.security.record(
                account.id if account is not None else None,
                "login_failed",
                "failed",
                ip_address=device.ip_address,
                device_info=device.as_dict(),
                details={"reason": "unknown_identifier" if account is None else "no_password", "kind": kind.value},
            )
            raise invalid_credentials()

        if account.is_locked(now):
            retry_after = max(1, math.ceil((account.locked_until - now).total_seconds()))
            await self.security.record(
                account.id,
                "login_blocked",
                "blocked",
                ip_address=device.ip_address,
                device_info=device.as_dict(),
                details={"locked_until": account.locked_until.isoformat()},
            )
            raise AuthError(
                "Account is temporarily locked. Try again in {minutes} minutes.",
                error_code="ACCOUNT_LOCKED",
                status_code=status.HTTP_403_FORBIDDEN,
                params={"minutes": math.ceil(retry_after / 60)},
                retryAfter=retry_after,
            )

        if not await run_in_threadpool(verify_password, password, account.password_hash):
            await self.security.register_failed_login(
                self.db, account, now=now, ip_address=device.ip_address, device_info=device.as_dict()
            )
            raise invalid_credentials()

        if not account.is_active:
            raise AuthError("Account is disabled", error_code="ACCOUNT_DISABLED", status_code=status.HTTP_403_FORBIDDEN)

        if not account.is_verified_for(kind.value):
            raise AuthError(
                "Please verify this identifier before signing in",
                error_code="UNVERIFIED_IDENTIFIER",
                status_code=status.HTTP_403_FORBIDDEN,
                identifierType=kind.value,
            )

        return await self.start_session(account, device, via=kind.value)

    async def start_session(
        self, account: Account, device: DeviceInfo, *, via: str, alert_new_device: bool = True
    ) -> LoginResult:
        """Persist a new session and confirm it reads back before anyone sees the token."""
        now = clock.utcnow()
        new_device = await is_new_device(self.db, account.id, device.ip_address, device.device_type, now=now)

        token, expires = create_session_token(
            account.id,
            account.role,
            {"email_verified": bool(account.email_verified)},
        )

        # One live session per (account, ip, device type).
        await self.db.execute(
            update(UserSession)
            .where(
                UserSession.user_id == account.id,
                UserSession.ip_address == device.ip_address,
                UserSession.device_type == device.device_type,
                UserSession.is_active.is_(True),
            )
            .values(is_active=False, logout_time=now)
        )
        self.db.add(
            UserSession(
                user_id=account.id,
                session_token=token,
                device_name=device.device_name,
                device_type=device.device_type,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                login_time=now,
                last_activity=now,
                token_expires=expires,
                is_active=True,
            )
        )
        account.last_login_at = now
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Could not persist session for account %s", account.id)
            raise ServerError(
                "Could not confirm the new session. Please try again.",
                error_code="SESSION_PERSIST_FAILED",
            ) from exc

        stored = await self._load_session(token)
        if stored is None or stored.user_id != account.id or not stored.is_active:
            logger.error("Session for account %s did not read back after commit", account.id)
            raise ServerError(
                "Could not confirm the new session. Please try again.",
                error_code="SESSION_PERSIST_FAILED",
            )

        await self.security.record(
            account.id,
            "login_success",
            "success",
            ip_address=device.ip_address,
            device_info=device.as_dict(),
            details={"session_id": stored.id, "via": via, "new_device": new_device},
        )

        if new_device:
            await self.security.record(
                account.id,
                "new_device_login",
                "success",
                ip_address=device.ip_address,
                device_info=device.as_dict(),
                details={"session_id": stored.id},
            )
            if alert_new_device:
                self._queue_new_device_alert(account, stored)

        logger.info("Session %s opened for account %s", stored.id, account.id)
        return LoginResult(session=stored, account=account, is_new_device=new_device)

    def _queue_new_device_alert(self, account: Account, session: UserSession) -> None:
        contact = _contact_for(account)
        if contact is None:
            return
        recipient, kind = contact
        device = {
            "device_name": session.device_name,
            "device_type": session.device_type,
            "ip_address": session.ip_address,
            "login_time": session.login_time.strftime("%Y-%m-%d %H:%M"),
        }
        self.effects.enqueue(
            "new_device_alert",
            functools.partial(
                self.sender.send_new_device_alert,
                recipient,
                kind,
                language=account.preferred_language or settings.DEFAULT_LANGUAGE,
                device=device,
            ),
        )
        logger.info("Queued new-device alert for account %s (%s)", account.id, anonymise(recipient))

    async def _load_session(self, token: str) -> UserSession | None:
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.session_token == token)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def authenticate(self, token: str | None) -> tuple[UserSession, Account]:
        """Resolve a cookie token to its live session and account."""
        if not token:
            raise AuthError("Not authenticated", error_code="NOT_AUTHENTICATED")
        if decode_session_token(token) is None:
            raise AuthError("Session expired or invalid", error_code="INVALID_SESSION")

        now = clock.utcnow()
        result = await self.db.execute(
            select(UserSession, Account)
            .join(Account, Account.id == UserSession.user_id)
            .where(
                UserSession.session_token == token,
                UserSession.is_active.is_(True),
                UserSession.token_expires > now,
            )
        )
        row = result.first()
        if row is None:
            raise AuthError("Session expired or invalid", error_code="INVALID_SESSION")

        session, account = row
        if not account.is_active or account.deleted_at is not None:
            raise AuthError("Account is disabled", error_code="ACCOUNT_DISABLED", status_code=status.HTTP_403_FORBIDDEN)

        session.last_activity = now
        await self.db.commit()
        return session, account

    async def logout(self, token: str | None, *, ip_address: Optional[str] = None) -> bool:
        """Deactivate the session behind ``token``; False when there was none to end."""
        if not token:
            return False
        session = await self._load_session(token)
        if session is None or not session.is_active:
            return False

        session.deactivate(clock.utcnow())
        await self.db.commit()
        await self.security.record(
            session.user_id,
            "logout",
            "success",
            ip_address=ip_address,
            details={"session_id": session.id},
        )
        return True

    async def list_sessions(self, account: Account, limit: int = 50) -> list[UserSession]:
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.user_id == account.id)
            .order_by(UserSession.is_active.desc(), UserSession.last_activity.desc(), UserSession.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def revoke_session(self, account: Account, session_id: int, *, ip_address: Optional[str] = None) -> UserSession:
        session = await self.db.get(UserSession, session_id)
        if session is None or session.user_id != account.id:
            raise NotFoundError("Session not found", error_code="SESSION_NOT_FOUND")

        session.deactivate(clock.utcnow())
        await self.db.commit()
        await self.security.record(
            account.id,
            "session_revoked",
            "success",
            ip_address=ip_address,
            details={"session_id": session.id},
        )
        return session

    async def revoke_other_sessions(self, account: Account, keep_session_id: int) -> int:
        """End every active session of ``account`` except ``keep_session_id``."""
        result = await self.db.execute(
            update(UserSession)
            .where(
                UserSession.user_id == account.id,
                UserSession.id != keep_session_id,
                UserSession.is_active.is_(True),
            )
            .values(is_active=False, logout_time=clock.utcnow())
        )
        await self.db.commit()
        return result.rowcount or 0

    async def change_password(
        self,
        account: Account,
        current: str,
        new: str,
        *,
        keep_session: UserSession,
        ip_address: Optional[str] = None,
    ) -> int:
        """Re-hash the password and sign every other device out."""
        try:
            await change_account_password(self.db, account, current, new)
        except AuthError:
            await self.security.record(
                account.id, "password_change", "failed", ip_address=ip_address, details={"reason": "bad_password"}
            )
            raise
        revoked = await self.revoke_other_sessions(account, keep_session.id)
        await self.security.record(
            account.id,
            "password_change",
            "success",
            ip_address=ip_address,
            details={"revoked_sessions": revoked},
        )
        return revoked


__all__ = ["DeviceInfo", "LoginResult", "SessionIssuer"]
