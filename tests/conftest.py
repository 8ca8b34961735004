import os

# Must be set before anything imports portier.core.config.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENV"] = "test"
os.environ["DEBUG"] = "true"
os.environ["BCRYPT_ROUNDS"] = "10"
os.environ["RESEND_API_KEY"] = ""
os.environ["SUPPORTED_LANGUAGES"] = "en,fr,sw,rw"
os.environ["ALLOWED_HOSTS"] = "testserver"
os.environ["CLIENT_URL"] = "http://localhost:3000"

from dataclasses import dataclass, field  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from functools import lru_cache  # noqa: E402
from typing import Any  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402

from main import app  # noqa: E402
from portier.core.database import AsyncSessionLocal, drop_db, engine, init_db  # noqa: E402
from portier.core.rate_limit import rate_limiter  # noqa: E402
from portier.core.security import get_password_hash  # noqa: E402
from portier.domain.accounts.models import Account  # noqa: E402
from portier.domain.security.services import SecurityLogger  # noqa: E402
from portier.domain.sessions.services import DeviceInfo, SessionIssuer  # noqa: E402
from portier.domain.verification.services import VerificationIssuer  # noqa: E402
from portier.services.effects import OutboundEffects  # noqa: E402
from portier.services.notifications import (  # noqa: E402
    NotificationError,
    NotificationSender,
    get_notification_sender,
)

DEFAULT_PASSWORD = "correct-horse-battery"


@dataclass
class SentMessage:
    recipient: str
    kind: str
    language: str
    code: str | None = None
    device: dict[str, Any] = field(default_factory=dict)


class RecordingSender(NotificationSender):
    """Keeps every outbound message in memory instead of sending it."""

    def __init__(self) -> None:
        self.codes: list[SentMessage] = []
        self.alerts: list[SentMessage] = []
        self.welcomes: list[SentMessage] = []
        self.fail_codes = False
        self.fail_alerts = False

    async def send_verification_code(self, recipient, kind, code, *, language, expires_minutes):
        if self.fail_codes:
            raise NotificationError("transport down")
        self.codes.append(SentMessage(recipient, kind, language, code=code))

    async def send_new_device_alert(self, recipient, kind, *, language, device):
        if self.fail_alerts:
            raise NotificationError("transport down")
        self.alerts.append(SentMessage(recipient, kind, language, device=device))

    async def send_welcome(self, recipient, kind, *, language):
        self.welcomes.append(SentMessage(recipient, kind, language))

    def last_code(self, recipient: str) -> str:
        codes = [m.code for m in self.codes if m.recipient == recipient]
        assert codes, f"no code was sent to {recipient}"
        return codes[-1]


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@lru_cache(maxsize=None)
def hashed(password: str) -> str:
    return get_password_hash(password)


@pytest.fixture(autouse=True)
async def database():
    await init_db()
    yield
    await drop_db()
    # Closing the only pooled connection throws the in-memory database away.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def clock(monkeypatch) -> FrozenClock:
    frozen = FrozenClock(datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0))
    monkeypatch.setattr("portier.core.clock.utcnow", frozen)
    return frozen


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def issuer(db, sender) -> VerificationIssuer:
    return VerificationIssuer(db, sender)


@pytest.fixture
def effects() -> OutboundEffects:
    return OutboundEffects()


@pytest.fixture
def session_issuer(db, sender, effects) -> SessionIssuer:
    return SessionIssuer(db, SecurityLogger(), sender, effects)


@pytest.fixture
def device() -> DeviceInfo:
    return DeviceInfo(ip_address="10.0.0.1", device_type="desktop", device_name="Laptop", user_agent="pytest")


@pytest.fixture
def make_account(db):
    async def _make(
        email: str | None = "alice@example.com",
        *,
        phone: str | None = None,
        username: str | None = None,
        password: str | None = DEFAULT_PASSWORD,
        email_verified: bool = True,
        phone_verified: bool = False,
        is_active: bool = True,
        role: str = "viewer",
        **extra: Any,
    ) -> Account:
        account = Account(
            email=email,
            phone=phone,
            username=username,
            password_hash=hashed(password) if password else None,
            email_verified=email_verified,
            phone_verified=phone_verified,
            is_active=is_active,
            role=role,
            **extra,
        )
        db.add(account)
        await db.commit()
        return account

    return _make


@pytest.fixture
async def client(sender):
    app.dependency_overrides[get_notification_sender] = lambda: sender
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    async def _login(identifier: str, password: str = DEFAULT_PASSWORD, **device: Any) -> httpx.Response:
        body = {"identifier": identifier, "password": password, "device_name": "Laptop", "device_type": "desktop"}
        body.update(device)
        return await client.post("/api/auth/login", json=body)

    return _login
