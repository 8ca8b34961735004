"""Account lookup, registration and password changes."""
from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from portier.core import clock
from portier.core.errors import AuthError, NotFoundError, ValidationError
from portier.core.logging_config import anonymise
from portier.core.security import (
    RegistrationTicketManager,
    get_password_hash,
    registration_tickets,
    verify_password,
)
from portier.domain.accounts.models import Account

logger = logging.getLogger(__name__)

AVATAR_URL = "https://api.dicebear.com/7.x/initials/svg?seed={seed}"


def _identifier_column(kind: str):
    if kind == "email":
        return Account.email
    if kind == "phone":
        return Account.phone
    return func.lower(Account.username)


async def find_account(db: AsyncSession, identifier: str, kind: str) -> Account | None:
    """Return the live account that owns ``identifier`` (soft-deleted ones are ignored)."""
    value = identifier.lower() if kind == "username" else identifier
    result = await db.execute(
        select(Account).where(_identifier_column(kind) == value, Account.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_account(db: AsyncSession, account_id: int) -> Account:
    account = await db.get(Account, account_id)
    if account is None or account.deleted_at is not None:
        raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
    return account


def avatar_url_for(account: Account) -> str:
    seed = account.first_name or account.username or f"user-{account.id}"
    return AVATAR_URL.format(seed=quote(seed))


async def register_account(
    db: AsyncSession,
    *,
    ticket: str,
    password: str,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    language: str | None = None,
    tickets: RegistrationTicketManager = registration_tickets,
) -> tuple[Account, str]:
    """Create an account for the identifier proven by ``ticket``.

    Returns the account and the kind of identifier it was created from.
    """
    decoded = tickets.verify(ticket)
    if decoded is None:
        raise ValidationError(
            "Invalid or expired verification token",
            error_code="INVALID_VERIFICATION_TOKEN",
        )
    identifier, kind = decoded

    if await find_account(db, identifier, kind) is not None:
        raise ValidationError(
            "An account with this identifier already exists",
            error_code="ACCOUNT_EXISTS",
            status_code=status.HTTP_409_CONFLICT,
        )
    if username and await find_account(db, username, "username") is not None:
        raise ValidationError(
            "Username is already taken",
            error_code="USERNAME_TAKEN",
            status_code=status.HTTP_409_CONFLICT,
        )

    now = clock.utcnow()
    account = Account(
        email=identifier if kind == "email" else None,
        phone=identifier if kind == "phone" else None,
        username=username or None,
        password_hash=await run_in_threadpool(get_password_hash, password),
        email_verified=kind == "email",
        phone_verified=kind == "phone",
        is_active=True,
        role="viewer",
        first_name=first_name,
        last_name=last_name,
        preferred_language=language,
        created_at=now,
        updated_at=now,
    )
    db.add(account)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationError(
            "An account with this identifier already exists",
            error_code="ACCOUNT_EXISTS",
            status_code=status.HTTP_409_CONFLICT,
        ) from exc

    account.profile_avatar_url = avatar_url_for(account)
    await db.commit()
    logger.info("Registered account %s via %s %s", account.id, kind, anonymise(identifier))
    return account, kind


async def change_password(db: AsyncSession, account: Account, current: str, new: str) -> None:
    if account.password_hash and not await run_in_threadpool(verify_password, current, account.password_hash):
        raise AuthError("Current password is incorrect", error_code="INVALID_PASSWORD")
    if current == new:
        raise ValidationError(
            "The new password must be different from the current one",
            error_code="PASSWORD_UNCHANGED",
        )

    account.password_hash = await run_in_threadpool(get_password_hash, new)
    account.updated_at = clock.utcnow()
    await db.commit()
    logger.info("Password changed for account %s", account.id)


async def unlock_account(db: AsyncSession, account_id: int) -> Account:
    account = await get_account(db, account_id)
    now = clock.utcnow()
    # Failures before this point no longer count toward the next lock.
    account.locked_until = now
    account.updated_at = now
    await db.commit()
    return account


__all__ = [
    "avatar_url_for",
    "change_password",
    "find_account",
    "get_account",
    "register_account",
    "unlock_account",
]
