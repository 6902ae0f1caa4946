"""FastAPI application entry point for LinkHarbor."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from linkharbor import __version__
from linkharbor.api.routes import router
from linkharbor.clients.storage import ArchiveStore
from linkharbor.config import get_settings
from linkharbor.errors import StorageError
from linkharbor.services.pipeline import open_ledger
from linkharbor.utils.logging import get_logger, setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the archive and ledger once so storage problems fail startup.

    Opening the archive also finishes or rolls back any commit a previous
    process left half done.
    """
    settings = get_settings()
    setup_logging(settings.log_level)
    logger = get_logger(__name__)
    logger.info("LinkHarbor starting", version=__version__, archive_dir=str(settings.archive_dir))

    try:
        archive = ArchiveStore(settings.archive_dir)
        ledger = open_ledger(settings)
    except StorageError as e:
        logger.error("Storage unavailable, refusing to start", error=str(e))
        raise

    logger.info(
        "Storage ready",
        archived=len(archive.list_ids()),
        permanent_failures=len(ledger.permanent_ids()),
    )
    yield
    logger.info("LinkHarbor shutting down")


app = FastAPI(
    title="LinkHarbor",
    description="Incremental archiver for a curated list of links",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic info."""
    return {
        "name": "LinkHarbor",
        "version": __version__,
        "docs": "/docs",
    }
