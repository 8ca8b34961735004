"""Issue, resend and check one-time verification codes.

One row per (identifier, kind). ``attempts`` counts every code sent and every
wrong guess. At the ceiling no further code is sent; one wrong guess past it
stops verification as well. Either way the row stays blocked until an operator
calls ``reset_attempts``. A correct code deletes the row, so a code works once.
"""
from __future__ import annotations

import hmac
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from portier.core import clock
from portier.core.config import settings
from portier.core.errors import NotFoundError, RateLimitError, ServerError, ValidationError
from portier.core.logging_config import SECURITY_LOGGER_NAME, anonymise
from portier.core.rate_limit import KeyedLocks
from portier.domain.verification.models import VerificationRequest
from portier.services.notifications import NotificationError, NotificationSender

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

# No zero, so a code never loses a leading digit when someone types it as a number.
CODE_ALPHABET = "123456789"

DELIVERABLE_KINDS = ("email", "phone")

_locks = KeyedLocks()


class IssueStatus(str, Enum):
    SENT = "sent"
    COOLDOWN = "cooldown"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class IssueResult:
    status: IssueStatus
    cooldown: int = 0
    expires_at: Optional[datetime] = None
    attempts: int = 0

    @property
    def sent(self) -> bool:
        return self.status is IssueStatus.SENT


@dataclass(frozen=True)
class VerifyOutcome:
    identifier: str
    kind: str
    verified: bool = True


def generate_code(length: int | None = None) -> str:
    length = length or settings.VERIFICATION_CODE_LENGTH
    if not 4 <= length <= 6:
        raise ValueError(f"verification code length must be 4-6, got {length}")
    return "".join(random.choice(CODE_ALPHABET) for _ in range(length))


def _lock_key(identifier: str, kind: str) -> str:
    return f"{kind}:{identifier}"


def _remaining_cooldown(record: VerificationRequest, now: datetime) -> int:
    elapsed = (now - record.last_sent_at).total_seconds()
    return max(0, math.ceil(settings.VERIFICATION_RESEND_COOLDOWN_SECONDS - elapsed))


def max_attempts_error() -> RateLimitError:
    return RateLimitError(
        "Too many attempts. Please contact support to unblock verification.",
        error_code="MAX_ATTEMPTS_EXCEEDED",
        blocked=True,
    )


class VerificationIssuer:
    """Owns the lifecycle of ``VerificationRequest`` rows."""

    def __init__(self, db: AsyncSession, sender: NotificationSender) -> None:
        self.db = db
        self.sender = sender

    async def _get(self, identifier: str, kind: str) -> VerificationRequest | None:
        result = await self.db.execute(
            select(VerificationRequest)
            .where(
                VerificationRequest.identifier == identifier,
                VerificationRequest.identifier_kind == kind,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def request_code(self, identifier: str, kind: str, *, language: str) -> IssueResult:
        """Send a fresh code unless the row is blocked or still cooling down.

        The code is delivered before the row is committed: if delivery fails
        the transaction is rolled back and nothing counts as sent.
        """
        if kind not in DELIVERABLE_KINDS:
            raise ValidationError(
                "Verification is only available for email addresses and phone numbers",
                error_code="UNSUPPORTED_IDENTIFIER",
            )

        async with _locks.hold(_lock_key(identifier, kind)):
            now = clock.utcnow()
            record = await self._get(identifier, kind)

            if record is not None and record.attempts >= settings.VERIFICATION_MAX_ATTEMPTS:
                security_logger.warning(
                    "Verification blocked for %s %s after %d attempts",
                    kind,
                    anonymise(identifier),
                    record.attempts,
                )
                return IssueResult(IssueStatus.BLOCKED, attempts=record.attempts)

            if record is not None:
                remaining = _remaining_cooldown(record, now)
                if remaining > 0:
                    return IssueResult(IssueStatus.COOLDOWN, cooldown=remaining, attempts=record.attempts)

            code = generate_code()
            expires_at = now + timedelta(minutes=settings.VERIFICATION_CODE_TTL_MINUTES)

            if record is None:
                record = VerificationRequest(
                    identifier=identifier,
                    identifier_kind=kind,
                    code=code,
                    expires_at=expires_at,
                    attempts=1,
                    verified=False,
                    last_sent_at=now,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(record)
            else:
                record.code = code
                record.expires_at = expires_at
                record.attempts += 1
                record.verified = False
                record.last_sent_at = now
                record.updated_at = now

            try:
                await self.db.flush()
            except (IntegrityError, StaleDataError):
                # Another worker wrote this row first and has just sent a code.
                await self.db.rollback()
                logger.info("Lost verification race for %s %s", kind, anonymise(identifier))
                return await self._cooldown_after_race(identifier, kind)

            attempts = record.attempts
            try:
                await self.sender.send_verification_code(
                    identifier,
                    kind,
                    code,
                    language=language,
                    expires_minutes=settings.VERIFICATION_CODE_TTL_MINUTES,
                )
            except NotificationError as exc:
                await self.db.rollback()
                logger.error("Could not deliver verification code to %s %s", kind, anonymise(identifier))
                raise ServerError(
                    "Could not send the verification code. Please try again.",
                    error_code="NOTIFICATION_FAILED",
                ) from exc

            await self.db.commit()
            logger.info(
                "Verification code sent to %s %s (attempt %d)", kind, anonymise(identifier), attempts
            )
            return IssueResult(IssueStatus.SENT, expires_at=expires_at, attempts=attempts)

    async def _cooldown_after_race(self, identifier: str, kind: str) -> IssueResult:
        record = await self._get(identifier, kind)
        if record is None:
            return IssueResult(IssueStatus.COOLDOWN, cooldown=settings.VERIFICATION_RESEND_COOLDOWN_SECONDS)
        if record.attempts >= settings.VERIFICATION_MAX_ATTEMPTS:
            return IssueResult(IssueStatus.BLOCKED, attempts=record.attempts)
        remaining = _remaining_cooldown(record, clock.utcnow())
        return IssueResult(
            IssueStatus.COOLDOWN,
            cooldown=remaining or settings.VERIFICATION_RESEND_COOLDOWN_SECONDS,
            attempts=record.attempts,
        )

    async def verify_code(
        self,
        identifier: str,
        kind: str,
        code: str,
        *,
        on_verified: Callable[[], Awaitable[None]] | None = None,
    ) -> VerifyOutcome:
        """Check ``code`` and consume the row on success.

        ``on_verified`` runs inside the same transaction, before the commit,
        so whatever it writes lands together with the deletion.
        """
        code = (code or "").strip()
        if not code:
            raise ValidationError("Verification code is required", error_code="CODE_REQUIRED")

        async with _locks.hold(_lock_key(identifier, kind)):
            now = clock.utcnow()
            record = await self._get(identifier, kind)

            if record is None:
                raise NotFoundError(
                    "No pending verification for this identifier",
                    error_code="VERIFICATION_NOT_FOUND",
                )

            if record.attempts > settings.VERIFICATION_MAX_ATTEMPTS:
                raise max_attempts_error()

            if record.expires_at <= now:
                raise ValidationError(
                    "Verification code has expired. Please request a new one.",
                    error_code="EXPIRED_CODE",
                )

            if not hmac.compare_digest(record.code.encode(), code.encode()):
                record.attempts += 1
                record.updated_at = now
                remaining = max(0, settings.VERIFICATION_MAX_ATTEMPTS + 1 - record.attempts)
                try:
                    await self.db.commit()
                except StaleDataError:
                    # A concurrent writer already bumped the counter.
                    await self.db.rollback()
                    logger.info("Concurrent update while counting a wrong code for %s", anonymise(identifier))
                security_logger.info(
                    "Wrong verification code for %s %s (%d left)", kind, anonymise(identifier), remaining
                )
                raise ValidationError(
                    "Invalid verification code",
                    error_code="INVALID_CODE",
                    attemptsRemaining=remaining,
                )

            record.verified = True
            record.updated_at = now
            await self.db.flush()
            await self.db.delete(record)
            if on_verified is not None:
                await on_verified()
            await self.db.commit()

        logger.info("Verified %s %s", kind, anonymise(identifier))
        return VerifyOutcome(identifier=identifier, kind=kind)

    async def reset_attempts(self, identifier: str, kind: str) -> bool:
        """Clear a blocked (or any) pending verification so a new code can be sent."""
        async with _locks.hold(_lock_key(identifier, kind)):
            result = await self.db.execute(
                delete(VerificationRequest).where(
                    VerificationRequest.identifier == identifier,
                    VerificationRequest.identifier_kind == kind,
                )
            )
            await self.db.commit()

        cleared = (result.rowcount or 0) > 0
        security_logger.info(
            "Verification reset for %s %s (%s)", kind, anonymise(identifier), "cleared" if cleared else "nothing pending"
        )
        return cleared


__all__ = [
    "IssueResult",
    "IssueStatus",
    "VerificationIssuer",
    "VerifyOutcome",
    "generate_code",
    "max_attempts_error",
]
