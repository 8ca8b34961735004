from sqlalchemy import select

from portier.core.database import AsyncSessionLocal
from portier.domain.sessions.models import UserSession

from conftest import DEFAULT_PASSWORD


async def _active_sessions():
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(UserSession).where(UserSession.is_active.is_(True)))
        return list(result.scalars().all())


async def test_check_identifier_new_email(client, sender):
    response = await client.post("/api/auth/check-identifier", json={"identifier": "New@Example.com"})

    assert response.status_code == 200
    assert response.json() == {
        "exists": False,
        "isVerified": False,
        "identifierType": "email",
        "nextStep": "code",
        "resendDelay": 30,
    }
    assert sender.codes[0].recipient == "new@example.com"


async def test_check_identifier_known_account(client, make_account, sender):
    await make_account(first_name="Alice", profile_avatar_url="https://example.com/a.svg")

    response = await client.post("/api/auth/check-identifier", json={"identifier": "alice@example.com"})

    body = response.json()
    assert body["nextStep"] == "password"
    assert body["user"] == {"first_name": "Alice", "profile_avatar_url": "https://example.com/a.svg"}
    assert "resendDelay" not in body
    assert sender.codes == []


async def test_check_identifier_empty(client):
    response = await client.post("/api/auth/check-identifier", json={"identifier": "  "})

    assert response.status_code == 400
    assert response.json() == {"error": "Identifier is required", "errorCode": "IDENTIFIER_REQUIRED"}


async def test_sign_up_flow(client, sender, clock):
    await client.post("/api/auth/check-identifier", json={"identifier": "dana@example.com", "language": "sw"})
    assert sender.codes[0].language == "sw"

    verified = await client.post(
        "/api/auth/verify-code",
        json={"identifier": "dana@example.com", "code": sender.last_code("dana@example.com")},
    )
    assert verified.status_code == 200
    body = verified.json()
    assert body["verified"] is True
    assert body["nextStep"] == "createAccount"

    registered = await client.post(
        "/api/auth/register",
        json={
            "verificationToken": body["verificationToken"],
            "password": "a-long-enough-secret",
            "username": "dana",
            "first_name": "Dana",
        },
    )
    assert registered.status_code == 201
    data = registered.json()
    assert data["user"]["email"] == "dana@example.com"
    assert data["user"]["email_verified"] is True
    assert data["session"]["is_current"] is True
    assert registered.cookies.get("token") == (await _active_sessions())[0].session_token
    assert [m.recipient for m in sender.welcomes] == ["dana@example.com"]
    assert sender.alerts == []

    again = await client.post(
        "/api/auth/register",
        json={"verificationToken": body["verificationToken"], "password": "a-long-enough-secret"},
    )
    assert again.status_code == 409
    assert again.json()["errorCode"] == "ACCOUNT_EXISTS"


async def test_register_with_forged_token(client):
    response = await client.post(
        "/api/auth/register", json={"verificationToken": "forged", "password": "a-long-enough-secret"}
    )

    assert response.status_code == 400
    assert response.json()["errorCode"] == "INVALID_VERIFICATION_TOKEN"


async def test_register_validates_body(client):
    response = await client.post("/api/auth/register", json={"verificationToken": "x", "password": "short"})

    assert response.status_code == 400
    body = response.json()
    assert body["errorCode"] == "VALIDATION_ERROR"
    assert body["fields"] == ["password"]


async def test_verify_code_wrong_code(client, sender, clock):
    await client.post("/api/auth/check-identifier", json={"identifier": "erin@example.com"})

    response = await client.post(
        "/api/auth/verify-code",
        json={"identifier": "erin@example.com", "code": "000000", "identifierType": "email"},
    )

    assert response.status_code == 400
    assert response.json() == {
        "error": "Invalid verification code",
        "errorCode": "INVALID_CODE",
        "attemptsRemaining": 4,
    }


async def test_verify_code_without_pending_row(client):
    response = await client.post("/api/auth/verify-code", json={"identifier": "x@example.com", "code": "123456"})

    assert response.status_code == 404
    assert response.json()["errorCode"] == "VERIFICATION_NOT_FOUND"


async def test_resend_cooldown_then_block(client, sender, clock):
    payload = {"identifier": "frank@example.com"}
    first = await client.post("/api/auth/resend-verification", json=payload)
    assert first.status_code == 200
    assert first.json() == {"success": True, "resendDelay": 30, "message": "Verification code sent successfully"}

    clock.advance(seconds=5)
    cooling = await client.post("/api/auth/resend-verification", json=payload)
    assert cooling.status_code == 429
    assert cooling.headers["Retry-After"] == "25"
    assert cooling.json() == {
        "error": "Please wait 25 seconds before requesting a new code",
        "errorCode": "RESEND_COOLDOWN",
        "cooldown": 25,
        "blocked": False,
        "retryAfter": 25,
    }

    for _ in range(4):
        clock.advance(seconds=31)
        assert (await client.post("/api/auth/resend-verification", json=payload)).status_code == 200

    clock.advance(seconds=31)
    blocked = await client.post("/api/auth/resend-verification", json=payload)
    assert blocked.status_code == 429
    assert blocked.json()["errorCode"] == "MAX_ATTEMPTS_EXCEEDED"
    assert blocked.json()["blocked"] is True
    assert "Retry-After" not in blocked.headers
    assert len(sender.codes) == 5


async def test_resend_delivery_failure(client, sender):
    sender.fail_codes = True

    response = await client.post("/api/auth/resend-verification", json={"identifier": "gina@example.com"})

    assert response.status_code == 500
    assert response.json()["errorCode"] == "NOTIFICATION_FAILED"


async def test_login_sets_cookie_for_the_stored_session(client, make_account, login, sender):
    await make_account()

    response = await login("alice@example.com", redirectUrl="http://localhost:3000/dashboard")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Login successful"
    assert body["isNewDevice"] is True
    assert body["redirectUrl"] == "http://localhost:3000/dashboard"
    sessions = await _active_sessions()
    assert len(sessions) == 1
    assert response.cookies.get("token") == sessions[0].session_token
    assert body["session"]["id"] == sessions[0].id
    assert [m.recipient for m in sender.alerts] == ["alice@example.com"]
    assert sender.alerts[0].device["device_name"] == "Laptop"


async def test_login_alerts_only_on_a_new_device(client, make_account, login, sender):
    await make_account()

    await login("alice@example.com")
    second = await login("alice@example.com")
    third = await login("alice@example.com", device_type="mobile")

    assert second.json()["isNewDevice"] is False
    assert third.json()["isNewDevice"] is True
    assert len(sender.alerts) == 2
    assert len(await _active_sessions()) == 2


async def test_login_ignores_foreign_redirect(client, make_account, login):
    await make_account()

    response = await login("alice@example.com", redirectUrl="https://evil.example.net/")

    assert response.json()["redirectUrl"] == "http://localhost:3000"


async def test_invalid_credentials_are_indistinguishable(client, make_account, login):
    await make_account()

    unknown = await login("ghost@example.com")
    wrong = await login("alice@example.com", password="not-the-password")

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.content == wrong.content
    assert unknown.json() == {"error": "Invalid identifier or password", "errorCode": "INVALID_CREDENTIALS"}
    assert "token" not in unknown.cookies
    assert "token" not in wrong.cookies


async def test_login_lockout_over_http(client, make_account, login, clock):
    await make_account()
    for _ in range(5):
        assert (await login("alice@example.com", password="wrong-password")).status_code == 401

    locked = await login("alice@example.com")
    assert locked.status_code == 403
    assert locked.json() == {
        "error": "Account is temporarily locked. Try again in 15 minutes.",
        "errorCode": "ACCOUNT_LOCKED",
        "retryAfter": 900,
    }

    clock.advance(minutes=16)
    assert (await login("alice@example.com")).status_code == 200


async def test_login_session_persist_failure_sets_no_cookie(client, make_account, login, monkeypatch):
    await make_account()

    async def _missing(self, token):
        return None

    monkeypatch.setattr("portier.domain.sessions.services.SessionIssuer._load_session", _missing)

    response = await login("alice@example.com")

    assert response.status_code == 500
    assert response.json()["errorCode"] == "SESSION_PERSIST_FAILED"
    assert "token" not in response.cookies


async def test_logout_ends_the_session(client, make_account, login):
    await make_account()
    await login("alice@example.com")

    response = await client.post("/api/auth/logout")

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Logged out successfully"}
    assert await _active_sessions() == []
    assert (await client.get("/api/auth/me")).status_code == 401


async def test_logout_without_session_still_succeeds(client):
    response = await client.post("/api/auth/logout")

    assert response.status_code == 200
    assert 'token=""' in response.headers["set-cookie"]


async def test_ip_throttle(client, monkeypatch):
    monkeypatch.setattr("portier.core.config.settings.IP_RATE_LIMIT_MAX", 2)

    for _ in range(2):
        await client.post("/api/auth/check-identifier", json={"identifier": "alice"})
    response = await client.post("/api/auth/check-identifier", json={"identifier": "alice"})

    assert response.status_code == 429
    assert response.json()["errorCode"] == "TOO_MANY_REQUESTS"
    assert int(response.headers["Retry-After"]) > 0


async def test_ip_throttle_ignores_forwarded_for_from_untrusted_peers(client, monkeypatch):
    monkeypatch.setattr("portier.core.config.settings.IP_RATE_LIMIT_MAX", 2)

    statuses = []
    for i in range(4):
        response = await client.post(
            "/api/auth/check-identifier",
            json={"identifier": "alice"},
            headers={"X-Forwarded-For": f"203.0.113.{i}"},
        )
        statuses.append(response.status_code)

    assert statuses == [200, 200, 429, 429]


async def test_forwarded_for_is_used_behind_a_trusted_proxy(client, make_account, monkeypatch):
    monkeypatch.setattr("portier.core.config.settings.TRUSTED_PROXIES", ["127.0.0.1"])
    await make_account()

    response = await client.post(
        "/api/auth/login",
        json={"identifier": "alice@example.com", "password": DEFAULT_PASSWORD},
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.2"},
    )

    assert response.status_code == 200
    assert (await _active_sessions())[0].ip_address == "203.0.113.7"


async def test_security_headers_and_request_id(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


async def test_unknown_route_uses_error_shape(client):
    response = await client.get("/api/auth/nowhere")

    assert response.status_code == 404
    assert response.json() == {"error": "Not Found", "errorCode": "HTTP_404"}
