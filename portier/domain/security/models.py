from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String

from portier.core.database import Base


class SecurityLog(Base):
    """Append-only audit trail for sign-in, verification and lockout events."""

    __tablename__ = "security_logs"
    __table_args__ = (
        Index("ix_security_logs_user_action_recent", "user_id", "action", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    status = Column(String(10), nullable=False, index=True)  # success, failed, blocked
    ip_address = Column(String(45), nullable=True, index=True)
    device_info = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


__all__ = ["SecurityLog"]
