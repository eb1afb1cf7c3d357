from datetime import timedelta
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Local directory store
    DIRECTORY_DB_URL: str = "postgresql://localhost:5432/identity_cache"

    # Remote authority (messaging backend)
    REMOTE_AUTHORITY_BASE_URL: str | None = None
    REMOTE_AUTHORITY_TOKEN: str | None = None
    REMOTE_AUTHORITY_TIMEOUT: float = 10.0

    # Identifier of the signed-in user; excluded when re-deriving direct chat partners
    CURRENT_USER_ID: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 8
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # RECONCILIATION / MAINTENANCE
    # =================================================================
    VERIFICATION_FRESHNESS_HOURS: float = 24.0
    VERIFICATION_BATCH_SIZE: int = 10
    VERIFICATION_BATCH_DELAY: float = 2.0  # seconds between batches
    MIGRATION_BATCH_DELAY: float = 0.1  # seconds between batches
    UNVERIFIED_RECHECK_DELAY: float = 0.5  # seconds between records
    INTERACTION_FLOOD_WINDOW_SECONDS: float = 2.0
    CLEANUP_COOLDOWN_SECONDS: float = 60.0
    RECENT_LIMIT: int = 5
    SEARCH_RESULT_LIMIT: int = 10
    RECORD_TTL_DAYS: int = 30

    # Response cache
    CACHE_TTL_SECONDS: float = 900.0  # 15 minutes
    PROFILE_CACHE_TTL_SECONDS: float = 3600.0  # 1 hour
    CACHE_MAX_ENTRIES: int = 100

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def remote_authority_configured(self) -> bool:
        return bool(self.REMOTE_AUTHORITY_BASE_URL)

    def remote_authority_host(self) -> str | None:
        """
        Extract the host from REMOTE_AUTHORITY_BASE_URL, e.g.
        https://api-abc.sendbird.com -> api-abc.sendbird.com
        """
        if not self.REMOTE_AUTHORITY_BASE_URL:
            return None
        return urlparse(self.REMOTE_AUTHORITY_BASE_URL).hostname

    def verification_freshness(self) -> timedelta:
        return timedelta(hours=self.VERIFICATION_FRESHNESS_HOURS)

    def record_ttl(self) -> timedelta:
        return timedelta(days=self.RECORD_TTL_DAYS)

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # A single local process never needs many connections
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
