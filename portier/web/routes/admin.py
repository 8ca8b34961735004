"""Operator endpoints: the manual way out of blocks and lockouts."""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from portier.core.admin import require_admin
from portier.core.database import get_db
from portier.core.middleware import client_ip
from portier.domain.accounts.models import Account
from portier.domain.accounts.services import unlock_account
from portier.domain.identity.services import parse_identifier
from portier.domain.security.services import SecurityLogger, get_security_logger
from portier.domain.verification.services import VerificationIssuer
from portier.services.notifications import NotificationSender, get_notification_sender

logger = logging.getLogger(__name__)

router = APIRouter()


class VerificationResetRequest(BaseModel):
    identifier: str
    identifier_type: Optional[Literal["email", "phone"]] = Field(default=None, alias="identifierType")

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


@router.post("/verifications/reset")
async def reset_verification(
    payload: VerificationResetRequest,
    request: Request,
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_notification_sender),
    security: SecurityLogger = Depends(get_security_logger),
) -> dict:
    identifier, kind = parse_identifier(payload.identifier, payload.identifier_type)
    cleared = await VerificationIssuer(db, sender).reset_attempts(identifier, kind.value)
    await security.record(
        None,
        "verification_reset",
        "success",
        ip_address=client_ip(request),
        details={"by": admin.id, "kind": kind.value, "cleared": cleared},
    )
    return {"success": True, "cleared": cleared}


@router.post("/accounts/{account_id}/unlock")
async def unlock(
    account_id: int,
    request: Request,
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    security: SecurityLogger = Depends(get_security_logger),
) -> dict:
    account = await unlock_account(db, account_id)
    await security.record(
        account.id,
        "account_unlocked",
        "success",
        ip_address=client_ip(request),
        details={"by": admin.id},
    )
    logger.info("Admin %s unlocked account %s", admin.id, account.id)
    return {"success": True, "id": account.id}
