from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from portier.core.config import settings

database_url = make_url(settings.DATABASE_URL)
_is_sqlite = database_url.get_backend_name() == "sqlite"
_in_memory = _is_sqlite and database_url.database in (None, "", ":memory:")
_engine_options: dict = {}

if _in_memory:
    # One shared connection so every session sees the same in-memory database.
    _engine_options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
elif not _is_sqlite:
    # MySQL drops idle connections; recycle before it does.
    _engine_options.update(pool_pre_ping=True, pool_recycle=300)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG and settings.LOG_LEVEL.upper() == "DEBUG",
    future=True,
    **_engine_options,
)

# The users/sessions/audit foreign keys only hold in sqlite with this on.
SQLITE_PRAGMAS = ["PRAGMA foreign_keys=ON", "PRAGMA busy_timeout=5000"]
if not _in_memory:
    SQLITE_PRAGMAS += ["PRAGMA journal_mode=WAL", "PRAGMA synchronous=NORMAL"]

if _is_sqlite:

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[arg-type]
        cursor = dbapi_connection.cursor()
        try:
            for pragma in SQLITE_PRAGMAS:
                cursor.execute(pragma)
                cursor.fetchall()
        finally:
            cursor.close()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db():
    """Dependency for getting database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def _import_models() -> None:
    """Register every mapped table on ``Base.metadata``."""
    from portier.domain.accounts.models import Account  # noqa: F401
    from portier.domain.security.models import SecurityLog  # noqa: F401
    from portier.domain.sessions.models import UserSession  # noqa: F401
    from portier.domain.verification.models import VerificationRequest  # noqa: F401


async def init_db():
    """Initialize database - create all tables."""
    _import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db():
    """Drop every table."""
    _import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
