import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine.url import make_url

# 1) Load variables from .env
load_dotenv()

# 2) Alembic config (reads alembic.ini)
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# 3) Import Base and every model so autogenerate sees all tables
from portier.core.database import Base  # noqa: E402
from portier.domain.accounts.models import Account  # noqa: E402,F401
from portier.domain.security.models import SecurityLog  # noqa: E402,F401
from portier.domain.sessions.models import UserSession  # noqa: E402,F401
from portier.domain.verification.models import VerificationRequest  # noqa: E402,F401

target_metadata = Base.metadata

# Async drivers the app uses, mapped to the sync drivers Alembic runs with.
SYNC_DRIVERS = {
    "sqlite+aiosqlite": "sqlite+pysqlite",
    "mysql+aiomysql": "mysql+pymysql",
    "postgresql+asyncpg": "postgresql+psycopg2",
}


def _sync_url_from_env() -> str:
    """Turn the async DATABASE_URL into a sync one for migrations only."""
    db_url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set.")
    url = make_url(db_url)

    sync_driver = SYNC_DRIVERS.get(url.drivername)
    if sync_driver:
        url = url.set(drivername=sync_driver)

    return url.render_as_string(hide_password=False)


def _configure_sqlalchemy_url():
    config.set_main_option("sqlalchemy.url", _sync_url_from_env())


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    _configure_sqlalchemy_url()
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against the configured database."""
    _configure_sqlalchemy_url()
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
