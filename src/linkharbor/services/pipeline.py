"""Wires settings, storage and the fetcher into an archive run."""

from collections.abc import Sequence
from datetime import datetime, timedelta

from linkharbor.clients.fetcher import PageFetcher
from linkharbor.clients.links import load_links
from linkharbor.clients.storage import ArchiveStore
from linkharbor.config import Settings
from linkharbor.services.enrichment import Enricher
from linkharbor.services.fetching import FetcherAdapter
from linkharbor.services.ledger import FailureLedger, JsonFileLedgerBackend
from linkharbor.services.orchestrator import ScrapeOrchestrator
from linkharbor.services.report import RunSummary
from linkharbor.utils.cancellation import CancellationToken
from linkharbor.utils.logging import get_logger

logger = get_logger(__name__)


def open_ledger(settings: Settings) -> FailureLedger:
    """Load the failure ledger configured in ``settings``."""
    backend = JsonFileLedgerBackend(settings.ledger_file, settings.permanent_failures_file)
    return FailureLedger(
        backend,
        max_failures=settings.max_failures,
        cooldown=timedelta(days=settings.cooldown_days),
    )


async def run_archive(
    settings: Settings,
    refresh_older_than: datetime | None = None,
    cancel_token: CancellationToken | None = None,
    enrichers: Sequence[Enricher] = (),
) -> RunSummary:
    """Run the archive pipeline once over the configured links file.

    Setup happens before any fetch: an unreadable links file raises
    ConfigurationError, an unwritable archive or ledger raises StorageError.
    """
    links = load_links(settings.links_file)
    archive = ArchiveStore(settings.archive_dir)
    ledger = open_ledger(settings)
    logger.info(
        "Archive pipeline ready",
        links_file=str(settings.links_file),
        archive_dir=str(settings.archive_dir),
        permanent_failures=len(ledger.permanent_ids()),
    )

    async with PageFetcher(
        timeout=settings.fetch_timeout,
        image_timeout=settings.image_timeout,
        user_agent=settings.user_agent,
    ) as page_fetcher:
        orchestrator = ScrapeOrchestrator(
            archive=archive,
            ledger=ledger,
            fetcher=FetcherAdapter(page_fetcher, timeout=page_fetcher.page_budget),
            workers=settings.workers,
            request_delay=settings.request_delay,
            enrichers=enrichers,
        )
        return await orchestrator.run(
            links,
            refresh_older_than=refresh_older_than,
            cancel_token=cancel_token,
        )
