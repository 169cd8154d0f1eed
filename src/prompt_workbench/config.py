"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class EntitlementEdition(StrEnum):
    """Which entitlement backend is wired at startup."""

    COMMUNITY = "community"
    METERED = "metered"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Database URL is assembled from individual components to match
    the official PostgreSQL Docker image environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "DEBUG"
    # --- CORS ---
    cors_allowed_origins: list[str] = []
    cors_allow_credentials: bool = False
    cors_allowed_methods: list[str] = ["GET", "POST"]
    cors_allowed_headers: list[str] = ["Content-Type", "X-API-Key"]

    # --- PostgreSQL ---
    postgres_user: str = "prompt_workbench"
    postgres_password: SecretStr = SecretStr("secret")
    postgres_db: str = "prompt_workbench"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_echo: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """Assemble database URL from components.

        Uses psycopg v3 driver which supports both sync (create_engine)
        and async (create_async_engine) modes natively.
        """
        password = self.postgres_password.get_secret_value()
        return (
            f"postgresql+psycopg://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Redis / ARQ worker ---
    redis_url: str = "redis://localhost:6379/0"
    worker_max_jobs: int = 10
    worker_job_timeout: int = 900
    worker_max_tries: int = 3

    # --- LLM ---
    # Name of an entry in prompt_workbench.llm.factory.LLM_CLIENTS.
    llm_client: str = "stub"

    # --- Entitlements ---
    entitlement_edition: EntitlementEdition = EntitlementEdition.COMMUNITY
    plans_path: Path = Path("config/plans.yaml")
    # 0 disables capability caching entirely.
    capabilities_cache_ttl_seconds: float = 5.0
    # How often the API process replays usage events that failed to record.
    metering_reconcile_interval_seconds: float = 60.0

    # --- Convenience properties ---
    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def is_metered(self) -> bool:
        return self.entitlement_edition == EntitlementEdition.METERED


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton.

    Usage::

        from prompt_workbench.config import get_settings
        settings = get_settings()
    """
    return Settings()


settings = get_settings()
