from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint

from portier.core.database import Base


class VerificationRequest(Base):
    """The latest code sent to one email address or phone number.

    Resends update the row in place; a successful verification deletes it.
    ``version`` is bumped on every update so two writers racing on the same
    row cannot both win.
    """

    __tablename__ = "verifications"
    __table_args__ = (
        UniqueConstraint("identifier", "identifier_kind", name="uq_verifications_identifier_kind"),
    )

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String(255), nullable=False)
    identifier_kind = Column(String(10), nullable=False)  # email, phone
    code = Column(String(10), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    last_sent_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}


__all__ = ["VerificationRequest"]
