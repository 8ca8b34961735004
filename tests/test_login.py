import threading

import pytest
from sqlalchemy import func, select

from portier.core.database import AsyncSessionLocal
from portier.core.errors import AuthError, NotFoundError, ServerError, ValidationError
from portier.domain.accounts.services import unlock_account
from portier.domain.security.models import SecurityLog
from portier.domain.security.services import SecurityLogger
from portier.domain.sessions import services as session_services
from portier.domain.sessions.models import UserSession
from portier.domain.sessions.services import DeviceInfo, SessionIssuer
from portier.services.effects import OutboundEffects

from conftest import DEFAULT_PASSWORD


async def _active_sessions(account_id):
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(UserSession).where(UserSession.user_id == account_id, UserSession.is_active.is_(True))
        )
        return list(result.scalars().all())


async def _actions(account_id=None):
    async with AsyncSessionLocal() as session:
        query = select(SecurityLog.action).order_by(SecurityLog.id)
        if account_id is not None:
            query = query.where(SecurityLog.user_id == account_id)
        return list((await session.execute(query)).scalars().all())


def test_device_info_normalises_type():
    assert DeviceInfo(device_type="MOBILE").device_type == "mobile"
    assert DeviceInfo(device_type="smart-fridge").device_type == "desktop"
    assert DeviceInfo(device_type=None, device_name=None).device_name == "Unknown"


async def test_login_opens_a_session(session_issuer, make_account, device, effects, clock):
    account = await make_account()

    result = await session_issuer.login("ALICE@example.com", DEFAULT_PASSWORD, device)

    assert result.account.id == account.id
    assert result.is_new_device is True
    assert result.session.is_active
    assert [s.session_token for s in await _active_sessions(account.id)] == [result.session.session_token]
    assert await _actions(account.id) == ["login_success", "new_device_login"]
    assert effects.pending == ["new_device_alert"]


async def test_second_login_from_same_device(session_issuer, make_account, device, effects, sender, clock):
    account = await make_account()
    first = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    await effects.dispatch()
    clock.advance(minutes=5)

    second = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    await effects.dispatch()

    assert second.is_new_device is False
    assert len(sender.alerts) == 1
    active = await _active_sessions(account.id)
    assert [s.id for s in active] == [second.session.id]
    assert first.session.session_token != second.session.session_token


async def test_sessions_on_other_devices_stay_active(session_issuer, make_account, device, clock):
    account = await make_account()
    await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)

    phone = DeviceInfo(ip_address=device.ip_address, device_type="mobile", device_name="Phone")
    result = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, phone)

    assert result.is_new_device is True
    assert len(await _active_sessions(account.id)) == 2


async def test_unknown_and_wrong_password_look_the_same(session_issuer, make_account, device):
    await make_account()

    with pytest.raises(AuthError) as unknown:
        await session_issuer.login("ghost@example.com", DEFAULT_PASSWORD, device)
    with pytest.raises(AuthError) as wrong:
        await session_issuer.login("alice@example.com", "not-the-password", device)

    assert (unknown.value.error_code, unknown.value.message, unknown.value.status_code) == (
        wrong.value.error_code,
        wrong.value.message,
        wrong.value.status_code,
    )
    assert unknown.value.error_code == "INVALID_CREDENTIALS"


async def test_unknown_identifier_hashes_off_the_event_loop(session_issuer, device, monkeypatch):
    hashing_threads = []
    real_hash = session_services.get_password_hash

    def _recording_hash(password):
        hashing_threads.append(threading.get_ident())
        return real_hash(password)

    session_services._dummy_hash.cache_clear()
    monkeypatch.setattr(session_services, "get_password_hash", _recording_hash)
    try:
        with pytest.raises(AuthError):
            await session_issuer.login("ghost@example.com", DEFAULT_PASSWORD, device)
    finally:
        session_services._dummy_hash.cache_clear()

    assert len(hashing_threads) == 1
    assert hashing_threads[0] != threading.get_ident()


async def test_account_without_password_cannot_log_in(session_issuer, make_account, device):
    await make_account(password=None)

    with pytest.raises(AuthError) as exc:
        await session_issuer.login("alice@example.com", "anything", device)
    assert exc.value.error_code == "INVALID_CREDENTIALS"


async def test_soft_deleted_account_is_unknown(session_issuer, make_account, device, clock):
    await make_account(deleted_at=clock.now)

    with pytest.raises(AuthError) as exc:
        await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    assert exc.value.error_code == "INVALID_CREDENTIALS"


async def test_password_is_required(session_issuer, device):
    with pytest.raises(ValidationError) as exc:
        await session_issuer.login("alice@example.com", "", device)
    assert exc.value.error_code == "PASSWORD_REQUIRED"


async def test_disabled_account_with_right_password(session_issuer, make_account, device):
    await make_account(is_active=False)

    with pytest.raises(AuthError) as exc:
        await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    assert exc.value.error_code == "ACCOUNT_DISABLED"
    assert exc.value.status_code == 403


async def test_unverified_identifier_cannot_log_in(session_issuer, make_account, device):
    await make_account(email_verified=False)

    with pytest.raises(AuthError) as exc:
        await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    assert exc.value.error_code == "UNVERIFIED_IDENTIFIER"
    assert exc.value.extra == {"identifierType": "email"}


async def test_username_login_needs_no_verification(session_issuer, make_account, device, clock):
    await make_account(None, phone="250788123456", username="Alice", phone_verified=False)

    result = await session_issuer.login("alice", DEFAULT_PASSWORD, device)

    assert result.account.username == "Alice"


async def test_five_failures_lock_the_account(session_issuer, make_account, device, db, clock):
    account = await make_account()

    for _ in range(5):
        with pytest.raises(AuthError) as exc:
            await session_issuer.login("alice@example.com", "wrong-password", device)
        assert exc.value.error_code == "INVALID_CREDENTIALS"

    await db.refresh(account)
    assert account.locked_until is not None

    with pytest.raises(AuthError) as exc:
        await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    assert exc.value.error_code == "ACCOUNT_LOCKED"
    assert exc.value.status_code == 403
    assert exc.value.extra["retryAfter"] == 15 * 60
    assert exc.value.params == {"minutes": 15}

    clock.advance(minutes=16)
    result = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    assert result.session.is_active


async def test_failures_before_a_lock_do_not_count_again(session_issuer, make_account, device, clock):
    account = await make_account()
    for _ in range(5):
        with pytest.raises(AuthError):
            await session_issuer.login("alice@example.com", "wrong-password", device)
    clock.advance(minutes=16)

    with pytest.raises(AuthError) as exc:
        await session_issuer.login("alice@example.com", "wrong-password", device)

    assert exc.value.error_code == "INVALID_CREDENTIALS"
    assert (await _actions(account.id)).count("account_locked") == 1


async def test_unlock_forgives_earlier_failures(session_issuer, make_account, device, db, clock):
    account = await make_account()
    for _ in range(5):
        with pytest.raises(AuthError):
            await session_issuer.login("alice@example.com", "wrong-password", device)

    await unlock_account(db, account.id)
    clock.advance(minutes=1)
    with pytest.raises(AuthError) as exc:
        await session_issuer.login("alice@example.com", "wrong-password", device)
    assert exc.value.error_code == "INVALID_CREDENTIALS"

    result = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    assert result.account.id == account.id
    assert (await _actions(account.id)).count("account_locked") == 1


async def test_session_that_does_not_read_back_fails(session_issuer, make_account, device, monkeypatch, clock):
    account = await make_account()

    async def _missing(token):
        return None

    monkeypatch.setattr(session_issuer, "_load_session", _missing)

    with pytest.raises(ServerError) as exc:
        await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    assert exc.value.error_code == "SESSION_PERSIST_FAILED"
    assert "login_success" not in await _actions(account.id)


async def test_authenticate_and_logout(session_issuer, make_account, device, clock):
    await make_account()
    result = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)
    token = result.session.session_token

    session, account = await session_issuer.authenticate(token)
    assert session.id == result.session.id
    assert account.email == "alice@example.com"

    assert await session_issuer.logout(token, ip_address=device.ip_address) is True
    assert await session_issuer.logout(token) is False

    with pytest.raises(AuthError) as exc:
        await session_issuer.authenticate(token)
    assert exc.value.error_code == "INVALID_SESSION"


async def test_authenticate_without_token(session_issuer):
    with pytest.raises(AuthError) as exc:
        await session_issuer.authenticate(None)
    assert exc.value.error_code == "NOT_AUTHENTICATED"

    with pytest.raises(AuthError) as exc:
        await session_issuer.authenticate("not-a-jwt")
    assert exc.value.error_code == "INVALID_SESSION"


async def test_revoke_session_of_someone_else(session_issuer, make_account, device, clock):
    alice = await make_account()
    bob = await make_account("bob@example.com")
    result = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)

    with pytest.raises(NotFoundError) as exc:
        await session_issuer.revoke_session(bob, result.session.id)
    assert exc.value.error_code == "SESSION_NOT_FOUND"

    revoked = await session_issuer.revoke_session(alice, result.session.id)
    assert revoked.is_active is False


async def test_change_password_signs_out_other_devices(session_issuer, make_account, device, clock):
    account = await make_account()
    phone = DeviceInfo(ip_address="10.0.0.2", device_type="mobile")
    await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, phone)
    current = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)

    revoked = await session_issuer.change_password(
        account, DEFAULT_PASSWORD, "a-brand-new-secret", keep_session=current.session
    )

    assert revoked == 1
    assert [s.id for s in await _active_sessions(account.id)] == [current.session.id]
    result = await session_issuer.login("alice@example.com", "a-brand-new-secret", device)
    assert result.session.is_active


async def test_change_password_with_wrong_current(session_issuer, make_account, device, clock):
    account = await make_account()
    current = await session_issuer.login("alice@example.com", DEFAULT_PASSWORD, device)

    with pytest.raises(AuthError) as exc:
        await session_issuer.change_password(account, "nope", "a-brand-new-secret", keep_session=current.session)
    assert exc.value.error_code == "INVALID_PASSWORD"

    with pytest.raises(ValidationError) as exc:
        await session_issuer.change_password(
            account, DEFAULT_PASSWORD, DEFAULT_PASSWORD, keep_session=current.session
        )
    assert exc.value.error_code == "PASSWORD_UNCHANGED"

    async with AsyncSessionLocal() as session:
        failed = await session.execute(
            select(func.count(SecurityLog.id)).where(
                SecurityLog.action == "password_change", SecurityLog.status == "failed"
            )
        )
    assert failed.scalar_one() == 1


async def test_alert_failure_does_not_break_login(db, sender, make_account, device, clock):
    await make_account()
    sender.fail_alerts = True
    effects = OutboundEffects()
    issuer = SessionIssuer(db, SecurityLogger(), sender, effects)

    result = await issuer.login("alice@example.com", DEFAULT_PASSWORD, device)

    assert result.session.is_active
    assert await effects.dispatch() == 1
