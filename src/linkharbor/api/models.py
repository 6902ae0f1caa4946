"""Pydantic models for API requests and responses."""

from datetime import datetime

from pydantic import BaseModel, Field


class ArchiveRunResponse(BaseModel):
    """Response model for the archive endpoint."""

    status: str = Field(description="Status of the run")
    total: int = Field(description="Number of distinct links in the list")
    scraped: int = Field(description="Links fetched and archived")
    partial: int = Field(description="Archived links whose extraction was incomplete")
    skipped_cached: int = Field(description="Links already archived")
    skipped_cooldown: int = Field(description="Links waiting out a failure cooldown")
    skipped_permanent: int = Field(description="Links excluded after too many failures")
    failed: int = Field(description="Links that failed to fetch in this run")
    newly_permanent: int = Field(description="Links that became permanent failures in this run")
    refresh_older_than: datetime | None = Field(
        default=None, description="Refresh cutoff applied to this run"
    )


class PermanentFailure(BaseModel):
    """One entry of the permanent-failure list."""

    article_id: str
    url: str | None = None
    failure_count: int = 0
    first_permanent_at: datetime | None = None
    last_error: str | None = None


class FailuresResponse(BaseModel):
    """Response model for the failures listing."""

    count: int
    failures: list[PermanentFailure]


class ClearFailureResponse(BaseModel):
    """Response model for clearing a permanent failure."""

    article_id: str
    cleared: bool


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(description="Health status")
    version: str = Field(description="Application version")
