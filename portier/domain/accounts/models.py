from datetime import datetime
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from portier.core.database import Base


class Account(Base):
    """A person who can sign in with an email, a phone number or a username."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "email IS NOT NULL OR phone IS NOT NULL OR username IS NOT NULL",
            name="ck_users_has_identifier",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    phone = Column(String(20), unique=True, nullable=True, index=True)
    username = Column(String(50), unique=True, nullable=True, index=True)
    password_hash = Column(String(255), nullable=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    phone_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    role = Column(String(20), default="viewer", nullable=False)  # viewer, admin
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    profile_avatar_url = Column(String(255), nullable=True)
    preferred_language = Column(String(10), nullable=True)
    locked_until = Column(DateTime, nullable=True)
    last_login_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def is_verified_for(self, kind: str) -> bool:
        """Whether the identifier of ``kind`` has been confirmed.

        Usernames are chosen, not delivered to, so they never need a code.
        """
        if kind == "email":
            return bool(self.email_verified)
        if kind == "phone":
            return bool(self.phone_verified)
        return True

    def mark_verified(self, kind: str) -> None:
        if kind == "email":
            self.email_verified = True
        elif kind == "phone":
            self.phone_verified = True

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


__all__ = ["Account"]
