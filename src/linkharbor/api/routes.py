"""API routes for LinkHarbor."""

import asyncio
from datetime import UTC, date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status

from linkharbor import __version__
from linkharbor.api.auth import verify_api_token
from linkharbor.api.models import (
    ArchiveRunResponse,
    ClearFailureResponse,
    FailuresResponse,
    HealthResponse,
    PermanentFailure,
)
from linkharbor.config import get_settings
from linkharbor.errors import ConfigurationError, StorageError
from linkharbor.services.pipeline import open_ledger, run_archive
from linkharbor.services.report import RunSummary
from linkharbor.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["api"])

# One archive run at a time per process.
_run_lock = asyncio.Lock()


def _determine_status(summary: RunSummary) -> str:
    """Determine the response status based on the run summary."""
    if summary.failed == 0:
        return "success"
    if summary.scraped > 0:
        return "partial_success"
    return "failed"


def cutoff_from_date(value: date | None) -> datetime | None:
    """Midnight UTC at the start of ``value``."""
    if value is None:
        return None
    return datetime.combine(value, time.min, tzinfo=UTC)


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.post(
    "/archive",
    response_model=ArchiveRunResponse,
    dependencies=[Depends(verify_api_token)],
)
async def archive(
    refresh_older_than: date | None = Query(
        default=None,
        description="Re-fetch archived links scraped before this date (YYYY-MM-DD)",
    ),
) -> ArchiveRunResponse:
    """Run the archive pipeline over the configured links file.

    Links that are already archived are skipped unless ``refresh_older_than``
    is given. Permanently failed links are always skipped. Only one run may
    be active at a time; an overlapping request gets 409.
    """
    logger.info("Archive endpoint called", refresh_older_than=refresh_older_than)

    if _run_lock.locked():
        logger.warning("Archive run already in progress")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An archive run is already in progress",
        )

    settings = get_settings()
    cutoff = cutoff_from_date(refresh_older_than)

    try:
        async with _run_lock:
            summary = await run_archive(settings, refresh_older_than=cutoff)
    except (ConfigurationError, StorageError) as e:
        logger.error("Archive run could not complete", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e

    return ArchiveRunResponse(
        status=_determine_status(summary),
        total=summary.total,
        scraped=summary.scraped,
        partial=summary.partial,
        skipped_cached=summary.skipped_cached,
        skipped_cooldown=summary.skipped_cooldown,
        skipped_permanent=summary.skipped_permanent,
        failed=summary.failed,
        newly_permanent=summary.newly_permanent,
        refresh_older_than=cutoff,
    )


@router.get("/failures", response_model=FailuresResponse)
async def list_failures() -> FailuresResponse:
    """List permanently failed links."""
    try:
        ledger = open_ledger(get_settings())
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e

    failures = [
        PermanentFailure(article_id=article_id, **meta)
        for article_id, meta in ledger.permanent_entries().items()
    ]
    return FailuresResponse(count=len(failures), failures=failures)


@router.delete(
    "/failures/{article_id}",
    response_model=ClearFailureResponse,
    dependencies=[Depends(verify_api_token)],
)
async def clear_failure(article_id: str) -> ClearFailureResponse:
    """Forget the failure history of one link so it is retried next run."""
    try:
        cleared = open_ledger(get_settings()).clear(article_id)
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e

    if not cleared:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No failure history for {article_id}",
        )
    logger.info("Failure cleared via API", article_id=article_id)
    return ClearFailureResponse(article_id=article_id, cleared=True)
