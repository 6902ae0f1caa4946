"""Configuration loading for LinkHarbor."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (compatible; LinkHarbor/1.0; +https://github.com/linkharbor/linkharbor)"
)

MAX_WORKERS = 8


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="LINKHARBOR_")

    # Inputs and storage
    links_file: Path = Field(default=Path("links.md"), description="Curated list of links")
    archive_dir: Path = Field(default=Path("archive"), description="Archive root directory")
    ledger_file: Path = Field(
        default=Path("data/failure_ledger.json"),
        description="Per-URL failure bookkeeping",
    )
    permanent_failures_file: Path = Field(
        default=Path("data/permanent_failures.json"),
        description="Append-only list of permanently failed URLs",
    )

    # Fetching
    workers: int = Field(default=2, description="Number of concurrent fetch workers")
    fetch_timeout: float = Field(default=30.0, description="Per-URL fetch timeout in seconds")
    image_timeout: float = Field(default=4.0, description="Key image download timeout in seconds")
    request_delay: float = Field(default=1.0, description="Pause after each fetch, per worker")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header")

    # Failure policy
    max_failures: int = Field(default=5, description="Failures before a URL is permanent")
    cooldown_days: int = Field(default=7, description="Days to wait after a failure")

    # Application settings
    log_level: str = Field(default="INFO", description="Logging level")
    api_token: str | None = Field(default=None, description="Bearer token for the HTTP API")

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Keep the worker pool small enough to stay polite."""
        if not 1 <= v <= MAX_WORKERS:
            raise ValueError(
                f"LINKHARBOR_WORKERS must be between 1 and {MAX_WORKERS}, got {v}."
            )
        return v

    @field_validator("fetch_timeout", "image_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Timeouts must be positive."""
        if v <= 0:
            raise ValueError("Timeouts must be greater than zero seconds.")
        return v

    @field_validator("request_delay")
    @classmethod
    def validate_request_delay(cls, v: float) -> float:
        """Delay may be zero but not negative."""
        if v < 0:
            raise ValueError("LINKHARBOR_REQUEST_DELAY cannot be negative.")
        return v

    @field_validator("max_failures", "cooldown_days")
    @classmethod
    def validate_failure_policy(cls, v: int) -> int:
        """Failure policy values must be at least one."""
        if v < 1:
            raise ValueError("Failure policy values must be at least 1.")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate the log level name."""
        v = v.strip().upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"LINKHARBOR_LOG_LEVEL '{v}' is not a valid log level.")
        return v

    @field_validator("api_token")
    @classmethod
    def validate_api_token(cls, v: str | None) -> str | None:
        """Treat a blank token as unset."""
        if v is None or not v.strip():
            return None
        return v.strip()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
