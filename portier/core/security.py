"""Password hashing, session tokens and registration tickets."""
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jose import JWTError, jwt

from portier.core import clock
from portier.core.config import settings

# Bcrypt limit is 72 bytes; truncate to avoid errors
BCRYPT_MAX_PASSWORD_BYTES = 72


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    if not hashed_password:
        return False
    pwd_bytes = plain_password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]
    try:
        return bcrypt.checkpw(pwd_bytes, hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage; treat as a mismatch.
        return False


def get_password_hash(password: str) -> str:
    pwd_bytes = password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(pwd_bytes, salt).decode("utf-8")


def create_session_token(
    account_id: int,
    role: str,
    extra_claims: Optional[dict[str, Any]] = None,
) -> tuple[str, Any]:
    """Sign a session JWT and return it with its expiry.

    ``jti`` makes every token unique even when two logins for the same account
    land in the same second.
    """
    expire = clock.utcnow() + timedelta(days=settings.SESSION_TTL_DAYS)
    to_encode: dict[str, Any] = {
        "sub": str(account_id),
        "id": account_id,
        "role": role,
        "jti": uuid.uuid4().hex,
        "exp": expire,
    }
    if extra_claims:
        to_encode.update(extra_claims)
    token = jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return token, expire


def decode_session_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


class RegistrationTicketManager:
    """Sign the proof that an email/phone was verified before an account exists."""

    salt = "registration-ticket"

    def __init__(self) -> None:
        self.serializer = URLSafeTimedSerializer(settings.JWT_SECRET)

    def issue(self, identifier: str, kind: str) -> str:
        return self.serializer.dumps({"identifier": identifier, "kind": kind}, salt=self.salt)

    def verify(self, ticket: str, max_age: int | None = None) -> tuple[str, str] | None:
        """Return ``(identifier, kind)`` for a valid ticket, otherwise None."""
        if max_age is None:
            max_age = settings.REGISTRATION_TICKET_TTL_MINUTES * 60

        try:
            data = self.serializer.loads(ticket, salt=self.salt, max_age=max_age)
        except (BadSignature, SignatureExpired):
            return None

        identifier = data.get("identifier") if isinstance(data, dict) else None
        kind = data.get("kind") if isinstance(data, dict) else None
        if not identifier or kind not in ("email", "phone"):
            return None
        return identifier, kind


registration_tickets = RegistrationTicketManager()
