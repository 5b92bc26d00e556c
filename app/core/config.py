# app/core/config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Global application configuration.

    Values are loaded from environment variables at runtime.

    These settings drive:
    - DB connection
    - Internal API key
    - Ingestion limits (backpressure threshold, snapshot buffer cap)
    - Reconciliation clamps
    - Logging and the out-of-process health monitor
    """

    APP_NAME: str = "Attention Monitor"
    APP_ENV: str = Field("local", description="Environment name: local/dev/stage/prod")

    DB_URL: str = Field(
        "sqlite+aiosqlite:///./attention_monitor.db",
        description="SQLAlchemy-compatible async database URL",
    )

    INTERNAL_API_KEY: str | None = Field(
        default=None,
        description="API key required for hitting /internal endpoints",
    )

    # --- Logging ---
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Level for the console log handler.",
    )
    LOG_DIR: str | None = Field(
        default=None,
        description="Directory for rotating log files. No file logging when unset.",
    )

    # --- Ingestion ---
    BACKPRESSURE_HEAP_LIMIT_MB: float = Field(
        default=1800.0,
        description="Heap usage (MB) above which ingestion calls are dropped.",
    )
    SNAPSHOT_BUFFER_CAP: int = Field(
        default=200,
        description="Maximum number of meeting-wide attention snapshots kept.",
    )
    SNAPSHOT_WRITE_BATCH: int = Field(
        default=10,
        description="Maximum number of snapshots appended in a single write.",
    )
    INGESTION_STATE_MAX_MEETINGS: int = Field(
        default=1000,
        description="Maximum number of meetings holding in-memory ingestion state.",
    )

    # --- Reconciliation ---
    MAX_STATE_SECONDS: int = Field(
        default=24 * 60 * 60,
        description="Upper bound for any accumulated per-state seconds value.",
    )
    MAX_MEETING_DURATION_SECONDS: int = Field(
        default=2 * 60 * 60,
        description="Upper bound for the computed meeting duration.",
    )

    # --- Health monitor ---
    MONITOR_BASE_URL: str = Field(
        default="http://localhost:8000",
        description="Base URL of the service polled by `python -m app.monitor`.",
    )
    MONITOR_INTERVAL_SECONDS: float = Field(
        default=30.0,
        description="Delay between two health checks of the monitor.",
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Cached accessor for application settings.

    Using LRU cache ensures settings are read and validated only once,
    while still being easily importable across the app.
    """
    return Settings()
