"""Application settings and configuration.

Settings are loaded from environment variables (prefixed ``NONCE_``) or an
``.env`` file, with sensible defaults for local development.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Nonce utility settings loaded from environment variables."""

    # Database configuration
    database_url: str = Field(default="sqlite:///./nonces.db", alias="NONCE_DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="NONCE_SQL_DEBUG")

    # Redis configuration for the key-value repository
    redis_url: str = Field(default="redis://localhost:6379", alias="NONCE_REDIS_URL")

    # Issuance defaults
    default_namespace: str = Field(default="default", alias="NONCE_DEFAULT_NAMESPACE")
    default_length: int = Field(default=10, ge=1, alias="NONCE_DEFAULT_LENGTH")
    max_generation_attempts: int = Field(
        default=10,
        ge=1,
        alias="NONCE_MAX_GENERATION_ATTEMPTS",
    )

    # Remote address resolution behind reverse proxies
    trust_proxy: bool = Field(default=False, alias="NONCE_TRUST_PROXY")
    trusted_proxies: list[str] = Field(default=[], alias="NONCE_TRUSTED_PROXIES")
    proxy_header: str = Field(default="X-Forwarded-For", alias="NONCE_PROXY_HEADER")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url


settings = Settings()
