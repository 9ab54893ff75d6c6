"""Environment-driven configuration with Pydantic v2."""

from typing import List, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/workflows.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")
    cache_ttl: int = Field(default=3600, env="CACHE_TTL", ge=60)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Execution Engine
    workflow_concurrency: int = Field(default=10, env="WORKFLOW_CONCURRENCY", ge=1, le=200)
    resume_retry_seconds: float = Field(default=5.0, env="RESUME_RETRY_SECONDS", ge=0.1)
    max_suspension_seconds: Optional[int] = Field(default=None, env="MAX_SUSPENSION_SECONDS", ge=60)
    recovery_sweep_interval: int = Field(default=60, env="RECOVERY_SWEEP_INTERVAL", ge=5)
    stale_running_seconds: int = Field(default=300, env="RECOVERY_STALE_RUNNING_SECONDS", ge=30)

    # Reputation / Throttle Gate
    reputation_block_score: float = Field(default=30.0, env="REPUTATION_BLOCK_SCORE", ge=0, le=100)
    reputation_pause_score: float = Field(default=20.0, env="REPUTATION_PAUSE_SCORE", ge=0, le=100)
    reputation_hourly_limit: int = Field(default=100, env="REPUTATION_HOURLY_LIMIT", ge=1)
    reputation_block_seconds: int = Field(default=3600, env="REPUTATION_BLOCK_SECONDS", ge=60)
    reputation_check_interval: int = Field(default=60, env="REPUTATION_CHECK_INTERVAL", ge=10)

    # Outbound webhooks
    webhook_timeout: float = Field(default=10.0, env="WEBHOOK_TIMEOUT", ge=1, le=120)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
