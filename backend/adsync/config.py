import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/adsync"
    database_ssl: bool = False
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_connect_timeout: float = 30.0

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values
    secret_key: str = "change-me-in-production"
    # Fernet key(s), comma-separated; the first encrypts, all decrypt (rotation)
    encryption_key: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Remote ad platform (OAuth app + REST base URL)
    platform_api_url: str = "https://api.pinterest.com/v5"
    platform_client_id: str = ""
    platform_client_secret: str = ""
    platform_redirect_uri: str = "https://localhost/callback"
    http_timeout_seconds: float = 30.0

    # Credential age policy
    credential_max_age_days: int = 30
    credential_refresh_buffer_hours: int = 24

    # Defaults applied to new campaigns
    default_currency: str = "EUR"
    default_timezone: str = "UTC"

    # Local per-user limiter (requests per window)
    rate_limit_max_requests: int = 100
    rate_limit_window_minutes: int = 15

    # Optimistic write retries on version conflicts
    max_write_retries: int = 5

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def encryption_keys(self) -> list[str]:
        return [k.strip() for k in self.encryption_key.split(",") if k.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
