from typing import Annotated, Any

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]
DEFAULT_JWT_SECRET = "change-this-jwt-secret-in-production"


def _split_csv(value: Any) -> list[str]:
    """Accept comma-separated string or list-like and return stripped parts."""
    if value is None or value == "":
        return []

    if isinstance(value, str):
        parts = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple, set)):
        parts = [str(part).strip() for part in value]
    else:
        return []

    return [part for part in parts if part]


class Settings(BaseSettings):
    """Application settings."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./portier.db"
    ALLOWED_HOSTS: Annotated[list[str], NoDecode] = Field(default_factory=lambda: DEFAULT_ALLOWED_HOSTS.copy())

    # Application
    ENV: str = "development"
    APP_NAME: str = "Portier"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    CLIENT_URL: str = "http://localhost:3000"

    # Session tokens and cookie
    JWT_SECRET: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    SESSION_TTL_DAYS: int = 7
    COOKIE_NAME: str = "token"
    COOKIE_DOMAIN: str | None = None

    # Verification codes
    VERIFICATION_CODE_LENGTH: int = Field(default=6, ge=4, le=6)
    VERIFICATION_CODE_TTL_MINUTES: int = 10
    VERIFICATION_RESEND_COOLDOWN_SECONDS: int = 30
    VERIFICATION_MAX_ATTEMPTS: int = 5
    REGISTRATION_TICKET_TTL_MINUTES: int = 30

    # Login protection
    LOGIN_FAILURE_LIMIT: int = 5
    LOGIN_FAILURE_WINDOW_MINUTES: int = 15
    ACCOUNT_LOCK_MINUTES: int = 15
    NEW_DEVICE_LOOKBACK_DAYS: int = 30
    BCRYPT_ROUNDS: int = Field(default=12, ge=10, le=16)

    # Per-IP throttling of the unauthenticated endpoints
    IP_RATE_LIMIT_MAX: int = 30
    IP_RATE_LIMIT_WINDOW_SECONDS: int = 10 * 60
    # Peers allowed to report the real client address in X-Forwarded-For
    TRUSTED_PROXIES: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Resend API
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@example.com"

    # Localization
    DEFAULT_LANGUAGE: str = "en"
    SUPPORTED_LANGUAGES_RAW: str = Field(default="en,fr,sw,rw", alias="SUPPORTED_LANGUAGES")

    # Pydantic v2 compatible settings: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("ALLOWED_HOSTS", "TRUSTED_PROXIES", mode="before")
    @classmethod
    def parse_host_lists(cls, value: Any) -> list[str] | Any:
        """Support comma-separated host lists from environment."""
        return _split_csv(value)

    @computed_field
    @property
    def supported_languages(self) -> list[str]:
        """Return normalized language codes, always including the default."""
        languages = [code.lower() for code in _split_csv(self.SUPPORTED_LANGUAGES_RAW)]
        if self.DEFAULT_LANGUAGE not in languages:
            languages.insert(0, self.DEFAULT_LANGUAGE)
        return languages

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


def _validate_security() -> None:
    """Fail fast when running production with insecure defaults."""
    if not settings.is_production:
        return

    secret = settings.JWT_SECRET
    if not secret or secret == DEFAULT_JWT_SECRET or len(secret) < 32:
        raise ValueError("JWT_SECRET must be set to a strong value in production.")

    if not settings.ALLOWED_HOSTS or settings.ALLOWED_HOSTS == DEFAULT_ALLOWED_HOSTS:
        raise ValueError("ALLOWED_HOSTS must be configured explicitly in production.")

    if settings.DATABASE_URL.startswith("sqlite"):
        raise ValueError("Use MySQL in production; sqlite is only for local/dev.")


settings = Settings()


_validate_security()
