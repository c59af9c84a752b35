from datetime import timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings: development, stage or prod
    environment: str = "development"
    debug: bool = False

    # "postgres" for deployments, "memory" for a single-process dev server
    STORAGE_BACKEND: str = "postgres"

    # Postgres settings
    DATABASE_URL: str = "postgresql://localhost:5432/eventsync"

    # Redis settings (result cache + sync guard)
    REDIS_URL: str | None = None
    CACHE_TTL_SECONDS: int = 3600
    CACHE_SHARD_COUNT: int = 4

    # Upstream schedule manifest
    MANIFEST_URL: str = ""
    MANIFEST_TIMEOUT_SECONDS: float = 30.0

    # Shared secret presented by storage change notifications on /sync/gcs
    SYNC_TOKEN: str = ""
    SYNC_GUARD_TTL_SECONDS: int = 300

    # Event schedule settings
    EVENT_TIMEZONE: str = "America/Los_Angeles"
    START_LOOKAHEAD_MINUTES: int = 10
    SOON_LOOKAHEAD_HOURS: int = 24
    SURVEY_GRACE_MINUTES: int = 15
    SOON_SESSION_IDS: list[str] = ["__keynote__"]
    SURVEY_SESSION_IDS: list[str] = []

    # Per-user store (Firebase realtime database shards)
    FIREBASE_SHARDS: list[str] = []
    FIREBASE_SECRET: str | None = None
    FIREBASE_TIMEOUT_SECONDS: float = 15.0

    # Web Push settings
    VAPID_PRIVATE_KEY: str | None = None
    VAPID_SUBJECT: str = "mailto:events@example.org"
    PUSH_TIMEOUT_SECONDS: float = 10.0
    PUSH_DEFAULT_RETRY_SECONDS: int = 10

    # Background jobs
    MAX_TASK_RETRY: int = 10
    TASK_LEASE_SECONDS: int = 300
    CLOCK_INTERVAL_SECONDS: int = 60
    SYNC_INTERVAL_SECONDS: int = 300
    WIPEOUT_SCHEDULE_HOUR: int = 3
    WIPEOUT_CUTOFF_DAYS: int = 30

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def is_prod(self) -> bool:
        return self.environment == "prod"

    def is_dev(self) -> bool:
        return self.environment not in ("stage", "prod")

    def event_tz(self) -> ZoneInfo:
        """Timezone the presentation fields of sessions are rendered in."""
        return ZoneInfo(self.EVENT_TIMEZONE)

    def start_lookahead(self) -> timedelta:
        return timedelta(minutes=self.START_LOOKAHEAD_MINUTES)

    def soon_lookahead(self) -> timedelta:
        return timedelta(hours=self.SOON_LOOKAHEAD_HOURS)

    def survey_grace(self) -> timedelta:
        return timedelta(minutes=self.SURVEY_GRACE_MINUTES)

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
            # More conservative for local development
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
