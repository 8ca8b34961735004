"""Endpoints for the signed-in account: profile, password, devices, audit trail."""
import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from portier.core.database import get_db
from portier.core.i18n import translate
from portier.core.middleware import client_ip
from portier.core.session import CurrentSession, get_current_session, get_session_issuer
from portier.domain.security.schemas import SecurityLogOut, SecurityLogPage
from portier.domain.sessions.schemas import (
    AccountOut,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    SessionOut,
)
from portier.domain.sessions.services import SessionIssuer

router = APIRouter()
logger = logging.getLogger(__name__)


async def _session_list(issuer: SessionIssuer, current: CurrentSession) -> list[SessionOut]:
    sessions = []
    for row in await issuer.list_sessions(current.account):
        item = SessionOut.model_validate(row)
        item.is_current = row.id == current.session.id
        sessions.append(item)
    return sessions


@router.get("/me", response_model=MeResponse)
async def me(
    current: CurrentSession = Depends(get_current_session),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    return MeResponse(
        user=AccountOut.model_validate(current.account),
        sessions=await _session_list(issuer, current),
    )


@router.put("/password", response_model=MessageResponse)
async def change_password(
    payload: PasswordChangeRequest,
    request: Request,
    current: CurrentSession = Depends(get_current_session),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    """Change the password and sign out every other device."""
    await issuer.change_password(
        current.account,
        payload.current_password,
        payload.new_password,
        keep_session=current.session,
        ip_address=client_ip(request),
    )
    return MessageResponse(message=translate("Password updated successfully"))


@router.get("/sessions", response_model=list[SessionOut])
async def list_sessions(
    current: CurrentSession = Depends(get_current_session),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    return await _session_list(issuer, current)


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: int,
    request: Request,
    current: CurrentSession = Depends(get_current_session),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    await issuer.revoke_session(current.account, session_id, ip_address=client_ip(request))
    return MessageResponse(message=translate("Session revoked"))


@router.get("/security-logs", response_model=SecurityLogPage)
async def security_logs(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current: CurrentSession = Depends(get_current_session),
    issuer: SessionIssuer = Depends(get_session_issuer),
    db: AsyncSession = Depends(get_db),
):
    rows = await issuer.security.list_for_account(db, current.account.id, limit=limit, offset=offset)
    return SecurityLogPage(
        items=[SecurityLogOut.model_validate(row) for row in rows],
        limit=limit,
        offset=offset,
    )
