import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from portier.core.config import settings
from portier.core.cookies import clear_session_cookie, set_session_cookie
from portier.core.database import get_db
from portier.core.errors import RateLimitError
from portier.core.i18n import current_language, set_language_for_request, translate
from portier.core.logging_config import anonymise
from portier.core.middleware import client_ip
from portier.core.rate_limit import rate_limiter
from portier.core.session import get_effects, get_session_issuer, get_session_token
from portier.domain.accounts.services import register_account
from portier.domain.identity.schemas import (
    AccountSummary,
    CheckIdentifierRequest,
    CheckIdentifierResponse,
    ResendVerificationRequest,
    ResendVerificationResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from portier.domain.identity.services import IdentifierKind, IdentityResolver, parse_identifier
from portier.domain.sessions.schemas import (
    AccountOut,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    SessionOut,
)
from portier.domain.sessions.services import DeviceInfo, LoginResult, SessionIssuer
from portier.domain.verification.services import IssueStatus, VerificationIssuer, max_attempts_error
from portier.services.effects import OutboundEffects
from portier.services.notifications import NotificationSender, get_notification_sender

router = APIRouter()
logger = logging.getLogger(__name__)


async def _throttle(request: Request, scope: str) -> None:
    """Per-IP sliding window for the endpoints reachable without a session."""
    ip = client_ip(request)
    decision = await rate_limiter.hit(
        f"{scope}:{ip}",
        settings.IP_RATE_LIMIT_MAX,
        settings.IP_RATE_LIMIT_WINDOW_SECONDS,
    )
    if not decision.allowed:
        logger.warning("Rate limit exceeded on %s for client %s", scope, anonymise(ip))
        raise RateLimitError(retry_after=decision.retry_after)


def _device_from(request: Request, payload: LoginRequest | RegisterRequest) -> DeviceInfo:
    return DeviceInfo(
        ip_address=client_ip(request),
        device_type=payload.device_type or "desktop",
        device_name=payload.device_name or "Unknown",
        user_agent=payload.user_agent or request.headers.get("user-agent") or "Unknown",
    )


def _redirect_url(requested: str | None) -> str:
    # Only ever send people back to our own client.
    if requested and requested.startswith(settings.CLIENT_URL):
        return requested
    return settings.CLIENT_URL


def _login_response(result: LoginResult, message: str, redirect_url: str) -> LoginResponse:
    session = SessionOut.model_validate(result.session)
    session.is_current = True
    return LoginResponse(
        message=translate(message),
        user=AccountOut.model_validate(result.account),
        session=session,
        redirect_url=redirect_url,
        is_new_device=result.is_new_device,
    )


@router.post("/check-identifier", response_model=CheckIdentifierResponse, response_model_exclude_none=True)
async def check_identifier(
    payload: CheckIdentifierRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_notification_sender),
):
    """First screen: say whether to ask for a code, a password or a new account."""
    await _throttle(request, "check-identifier")
    language = set_language_for_request(payload.language) if payload.language else current_language()
    resolver = IdentityResolver(db, VerificationIssuer(db, sender))
    resolution = await resolver.resolve(payload.identifier, language=language)

    user = None
    if resolution.account is not None and resolution.is_verified:
        user = AccountSummary.model_validate(resolution.account)

    return CheckIdentifierResponse(
        exists=resolution.exists,
        is_verified=resolution.is_verified,
        identifier_type=resolution.kind.value,
        next_step=resolution.next_step.value,
        user=user,
        resend_delay=resolution.resend_delay,
    )


@router.post("/verify-code", response_model=VerifyCodeResponse, response_model_exclude_none=True)
async def verify_code(
    payload: VerifyCodeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_notification_sender),
):
    await _throttle(request, "verify-code")
    resolver = IdentityResolver(db, VerificationIssuer(db, sender))
    confirmation = await resolver.confirm_code(payload.identifier, payload.identifier_type, payload.code)
    return VerifyCodeResponse(
        verified=True,
        next_step=confirmation.next_step.value,
        verification_token=confirmation.registration_token,
    )


@router.post("/resend-verification", response_model=ResendVerificationResponse)
async def resend_verification(
    payload: ResendVerificationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_notification_sender),
):
    await _throttle(request, "resend-verification")
    language = set_language_for_request(payload.language) if payload.language else current_language()
    identifier, kind = parse_identifier(payload.identifier, payload.identifier_type)

    result = await VerificationIssuer(db, sender).request_code(identifier, kind.value, language=language)
    if result.status is IssueStatus.BLOCKED:
        raise max_attempts_error()
    if result.status is IssueStatus.COOLDOWN:
        raise RateLimitError(
            "Please wait {seconds} seconds before requesting a new code",
            error_code="RESEND_COOLDOWN",
            retry_after=result.cooldown,
            params={"seconds": result.cooldown},
            cooldown=result.cooldown,
        )

    return ResendVerificationResponse(
        success=True,
        resend_delay=settings.VERIFICATION_RESEND_COOLDOWN_SECONDS,
        message=translate("Verification code sent successfully"),
    )


@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    issuer: SessionIssuer = Depends(get_session_issuer),
    effects: OutboundEffects = Depends(get_effects),
):
    await _throttle(request, "login")
    result = await issuer.login(payload.identifier, payload.password, _device_from(request, payload))

    # The session row has been read back; only now does the client get the token.
    set_session_cookie(response, result.session.session_token)
    background_tasks.add_task(effects.dispatch)
    return _login_response(result, "Login successful", _redirect_url(payload.redirect_url))


@router.post("/register", response_model=LoginResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    issuer: SessionIssuer = Depends(get_session_issuer),
    effects: OutboundEffects = Depends(get_effects),
    sender: NotificationSender = Depends(get_notification_sender),
):
    """Finish sign-up for an email/phone that was just verified."""
    await _throttle(request, "register")
    language = set_language_for_request(payload.language) if payload.language else current_language()
    account, kind = await register_account(
        db,
        ticket=payload.verification_token,
        password=payload.password,
        username=payload.username,
        first_name=payload.first_name,
        last_name=payload.last_name,
        language=language,
    )
    await issuer.security.record(
        account.id, "register", "success", ip_address=client_ip(request), details={"kind": kind}
    )

    # The account was created on this device a moment ago; no alert for it.
    result = await issuer.start_session(
        account, _device_from(request, payload), via=kind, alert_new_device=False
    )
    recipient = account.email if kind == IdentifierKind.EMAIL.value else account.phone
    effects.enqueue("welcome", lambda: sender.send_welcome(recipient, kind, language=language))

    set_session_cookie(response, result.session.session_token)
    background_tasks.add_task(effects.dispatch)
    return _login_response(result, "Account created successfully", settings.CLIENT_URL)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    token: str | None = Depends(get_session_token),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    ended = await issuer.logout(token, ip_address=client_ip(request))
    if not ended:
        logger.info("Logout without a live session from %s", anonymise(client_ip(request)))
    clear_session_cookie(response)
    return MessageResponse(message=translate("Logged out successfully"))
