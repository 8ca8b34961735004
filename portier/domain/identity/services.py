"""Decide what a submitted identifier is and what the client must ask for next."""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from portier.core.config import settings
from portier.core.errors import AuthError, ValidationError
from portier.core.security import registration_tickets
from portier.domain.accounts.models import Account
from portier.domain.accounts.services import find_account
from portier.domain.verification.services import (
    IssueStatus,
    VerificationIssuer,
    max_attempts_error,
)

PHONE_NOISE_RE = re.compile(r"[\s\-().]")
PHONE_DIGITS_RE = re.compile(r"^\d{9,15}$")


class IdentifierKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    USERNAME = "username"


class NextStep(str, Enum):
    CODE = "code"
    PASSWORD = "password"
    CREATE_ACCOUNT = "createAccount"


class LoginStep(str, Enum):
    """Where a sign-in stands; BLOCKED and ACCOUNT_LOCKED are dead ends."""

    START = "start"
    IDENTIFIER_SUBMITTED = "identifier_submitted"
    VERIFICATION_PENDING = "verification_pending"
    CODE_VERIFIED = "code_verified"
    PASSWORD_REQUIRED = "password_required"
    CREDENTIALS_CHECKED = "credentials_checked"
    SESSION_ISSUED = "session_issued"
    BLOCKED = "blocked"
    ACCOUNT_LOCKED = "account_locked"


TRANSITIONS: dict[LoginStep, frozenset[LoginStep]] = {
    LoginStep.START: frozenset({LoginStep.IDENTIFIER_SUBMITTED}),
    LoginStep.IDENTIFIER_SUBMITTED: frozenset(
        {LoginStep.VERIFICATION_PENDING, LoginStep.PASSWORD_REQUIRED}
    ),
    LoginStep.VERIFICATION_PENDING: frozenset({LoginStep.CODE_VERIFIED, LoginStep.BLOCKED}),
    LoginStep.CODE_VERIFIED: frozenset({LoginStep.PASSWORD_REQUIRED}),
    LoginStep.PASSWORD_REQUIRED: frozenset({LoginStep.CREDENTIALS_CHECKED}),
    LoginStep.CREDENTIALS_CHECKED: frozenset({LoginStep.SESSION_ISSUED, LoginStep.ACCOUNT_LOCKED}),
    LoginStep.SESSION_ISSUED: frozenset(),
    LoginStep.BLOCKED: frozenset(),
    LoginStep.ACCOUNT_LOCKED: frozenset(),
}


def can_transition(current: LoginStep, target: LoginStep) -> bool:
    return target in TRANSITIONS[current]


def _phone_digits(value: str) -> str:
    digits = PHONE_NOISE_RE.sub("", value)
    return digits[1:] if digits.startswith("+") else digits


def classify_identifier(value: str) -> IdentifierKind:
    """Email if it has '@' and '.', phone if 9-15 digits once separators go, else username."""
    value = (value or "").strip()
    if "@" in value and "." in value:
        return IdentifierKind.EMAIL
    if PHONE_DIGITS_RE.match(_phone_digits(value)):
        return IdentifierKind.PHONE
    return IdentifierKind.USERNAME


def normalize_identifier(value: str, kind: IdentifierKind | str) -> str:
    value = (value or "").strip()
    kind = IdentifierKind(kind)
    if kind is IdentifierKind.EMAIL:
        return value.lower()
    if kind is IdentifierKind.PHONE:
        return _phone_digits(value)
    return value


def parse_identifier(value: str | None, kind: str | None = None) -> tuple[str, IdentifierKind]:
    """Classify (unless the client already said what it is) and normalize."""
    value = (value or "").strip()
    if not value:
        raise ValidationError("Identifier is required", error_code="IDENTIFIER_REQUIRED")
    if kind:
        try:
            resolved = IdentifierKind(kind)
        except ValueError:
            raise ValidationError("Unknown identifier type", error_code="INVALID_IDENTIFIER_TYPE") from None
    else:
        resolved = classify_identifier(value)
    return normalize_identifier(value, resolved), resolved


@dataclass
class Resolution:
    identifier: str
    kind: IdentifierKind
    exists: bool
    is_verified: bool
    next_step: NextStep
    account: Optional[Account] = None
    resend_delay: Optional[int] = None

    @property
    def step(self) -> LoginStep:
        if self.next_step is NextStep.CODE:
            return LoginStep.VERIFICATION_PENDING
        return LoginStep.PASSWORD_REQUIRED


@dataclass
class Confirmation:
    identifier: str
    kind: IdentifierKind
    next_step: NextStep
    account: Optional[Account] = None
    registration_token: Optional[str] = None


class IdentityResolver:
    """First step of sign-in: look the identifier up and pick the next step."""

    def __init__(self, db: AsyncSession, issuer: VerificationIssuer) -> None:
        self.db = db
        self.issuer = issuer

    async def resolve(self, raw_identifier: str | None, *, language: str) -> Resolution:
        identifier, kind = parse_identifier(raw_identifier)
        account = await find_account(self.db, identifier, kind.value)

        if account is not None and not account.is_active:
            raise AuthError("Account is disabled", error_code="ACCOUNT_DISABLED", status_code=403)

        if kind is IdentifierKind.USERNAME:
            # Nothing to deliver a code to; unknown usernames go straight to sign-up.
            return Resolution(
                identifier=identifier,
                kind=kind,
                exists=account is not None,
                is_verified=account is not None,
                next_step=NextStep.PASSWORD if account is not None else NextStep.CREATE_ACCOUNT,
                account=account,
            )

        if account is not None and account.is_verified_for(kind.value):
            return Resolution(
                identifier=identifier,
                kind=kind,
                exists=True,
                is_verified=True,
                next_step=NextStep.PASSWORD,
                account=account,
            )

        issued = await self.issuer.request_code(identifier, kind.value, language=language)
        if issued.status is IssueStatus.BLOCKED:
            raise max_attempts_error()

        if issued.status is IssueStatus.COOLDOWN:
            resend_delay = issued.cooldown
        else:
            resend_delay = settings.VERIFICATION_RESEND_COOLDOWN_SECONDS

        return Resolution(
            identifier=identifier,
            kind=kind,
            exists=account is not None,
            is_verified=False,
            next_step=NextStep.CODE,
            account=account,
            resend_delay=resend_delay,
        )

    async def confirm_code(self, raw_identifier: str | None, kind: str | None, code: str) -> Confirmation:
        """Consume a code; verify the account or hand back a registration token."""
        identifier, resolved = parse_identifier(raw_identifier, kind)
        if resolved is IdentifierKind.USERNAME:
            raise ValidationError(
                "Verification is only available for email addresses and phone numbers",
                error_code="UNSUPPORTED_IDENTIFIER",
            )

        account = await find_account(self.db, identifier, resolved.value)

        async def _mark_verified() -> None:
            if account is not None:
                account.mark_verified(resolved.value)

        await self.issuer.verify_code(identifier, resolved.value, code, on_verified=_mark_verified)

        if account is not None:
            return Confirmation(identifier, resolved, NextStep.PASSWORD, account=account)

        return Confirmation(
            identifier,
            resolved,
            NextStep.CREATE_ACCOUNT,
            registration_token=registration_tickets.issue(identifier, resolved.value),
        )


__all__ = [
    "Confirmation",
    "IdentifierKind",
    "IdentityResolver",
    "LoginStep",
    "NextStep",
    "Resolution",
    "can_transition",
    "classify_identifier",
    "normalize_identifier",
    "parse_identifier",
]
