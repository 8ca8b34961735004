from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from portier.core.database import Base


class UserSession(Base):
    """A signed-in device. ``session_token`` is the exact JWT in the cookie."""

    __tablename__ = "user_session"
    __table_args__ = (
        Index("ix_user_session_fingerprint", "user_id", "ip_address", "device_type", "login_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_token = Column(String(512), unique=True, nullable=False)
    device_name = Column(String(100), default="Unknown")
    device_type = Column(String(10), default="desktop")  # mobile, desktop, tablet
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    login_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_activity = Column(DateTime, default=datetime.utcnow)
    token_expires = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    logout_time = Column(DateTime, nullable=True)

    def deactivate(self, when: datetime) -> None:
        """Flag the session as ended. There is no way back to active."""
        if self.is_active:
            self.is_active = False
            self.logout_time = when


__all__ = ["UserSession"]
