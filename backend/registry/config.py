"""Application configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings are loaded in this priority order (highest to lowest):
    1. Environment variables
    2. .env file (for local development)
    3. Default values

    Core replay classes never read these directly. The CLI, the API and the
    factory helpers pass the relevant values in explicitly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Application
    # =========================================================================
    app_name: str = "Registry Replay API"
    debug: bool = False

    # =========================================================================
    # Database
    # =========================================================================
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/registry",
        description="PostgreSQL connection URL holding the commit log",
    )

    # =========================================================================
    # CORS
    # =========================================================================
    cors_origins: list[str] = ["http://localhost:3000"]

    # =========================================================================
    # API Settings
    # =========================================================================
    api_v1_prefix: str = "/api/v1"

    # =========================================================================
    # Commit log
    # =========================================================================
    commit_log_bucket_count: int = Field(
        default=100,
        ge=1,
        description="Number of entity-group buckets the commit log is split into",
    )
    clock_regression_tolerance_ms: int = Field(
        default=5000,
        ge=0,
        description=(
            "Largest correction (ms) the timestamp authority applies before "
            "reporting a clock regression"
        ),
    )
    commit_log_durability_lag_ms: int = Field(
        default=10000,
        ge=0,
        description=(
            "How long (ms) a stamped commit may take to become durable. Commits "
            "that miss it are rolled back, and log reads treat the last lag as "
            "not yet covered"
        ),
    )

    # =========================================================================
    # Replay
    # =========================================================================
    replay_partition_count: int = Field(
        default=16,
        ge=1,
        description="Number of partitions the replay fold is split into",
    )
    # 0 folds inline; >0 folds partitions on a thread pool of that size.
    replay_workers: int = Field(default=0, ge=0)

    # =========================================================================
    # Artifact locations (CLI defaults)
    # =========================================================================
    commit_log_dir: str = Field(
        default="data/commit_logs",
        description="Directory holding exported commit-log segments",
    )
    export_dir: str = Field(
        default="data/exports",
        description="Directory holding bulk exports",
    )


settings = Settings()
