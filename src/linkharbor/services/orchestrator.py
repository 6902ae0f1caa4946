"""Incremental archive orchestrator for LinkHarbor."""

import asyncio
import enum
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime

from linkharbor.clients.storage import ArchiveStore
from linkharbor.errors import ArchiveRecordNotFound, FetchError, StorageError
from linkharbor.models import (
    ArchiveAssets,
    ArchiveRecord,
    Enrichment,
    FailureState,
    FetchResult,
    LinkRecord,
)
from linkharbor.services.enrichment import Enricher, run_enrichers
from linkharbor.services.fetching import FetcherAdapter
from linkharbor.services.ledger import FailureLedger
from linkharbor.services.report import Outcome, RunReport, RunSummary
from linkharbor.utils.cancellation import CancellationToken
from linkharbor.utils.logging import article_context, get_logger

logger = get_logger(__name__)


class Decision(enum.Enum):
    FETCH = "fetch"
    SKIP_CACHED = Outcome.SKIPPED_CACHED
    SKIP_COOLDOWN = Outcome.SKIPPED_COOLDOWN
    SKIP_PERMANENT = Outcome.SKIPPED_PERMANENT


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def build_archive_record(
    link: LinkRecord,
    result: FetchResult,
    enrichment: Enrichment,
    scraped_at: datetime,
) -> ArchiveRecord:
    """Assemble the metadata document for a fetched page.

    Asset references are filled in by the archive store when it writes them.
    """
    return ArchiveRecord(
        article_id=link.article_id,
        url=link.url,
        original_url=link.original_url,
        final_url=result.final_url,
        scraped_at=scraped_at,
        title=result.title or link.title,
        body_text=result.body_text,
        raw_html_ref="",
        key_image_url=result.structured_data.key_image_url,
        structured_data=result.structured_data,
        section=link.section,
        tags=sorted(link.tags),
        note=link.note,
        auto_tags=enrichment.auto_tags,
        parse_error=result.parse_error,
    )


class ScrapeOrchestrator:
    """Decides, per link, whether to fetch, and commits the outcome.

    The orchestrator owns no storage. It reads and writes archive records
    through :class:`ArchiveStore` and failure state through
    :class:`FailureLedger`.
    """

    def __init__(
        self,
        archive: ArchiveStore,
        ledger: FailureLedger,
        fetcher: FetcherAdapter,
        workers: int = 2,
        request_delay: float = 0.0,
        enrichers: Sequence[Enricher] = (),
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._archive = archive
        self._ledger = ledger
        self._fetcher = fetcher
        self._workers = workers
        self._request_delay = request_delay
        self._enrichers = list(enrichers)
        self._now = now

    def decide(
        self,
        link: LinkRecord,
        refresh_older_than: datetime | None,
        now: datetime,
    ) -> Decision:
        """Apply the skip rules to one link.

        Order matters: a permanent failure beats everything, including a
        refresh request; a refresh beats the cache and the cooldown.
        """
        status = self._ledger.status(link.article_id, now)
        if status.state is FailureState.PERMANENT:
            return Decision.SKIP_PERMANENT

        existing = self._existing(link.article_id)

        if refresh_older_than is not None:
            # Records that were never archived are older than any cutoff.
            if existing is None:
                return Decision.FETCH
            if existing.resurrected:
                return Decision.SKIP_CACHED
            if as_utc(existing.scraped_at) < refresh_older_than:
                return Decision.FETCH
            return Decision.SKIP_CACHED

        if existing is not None:
            return Decision.SKIP_CACHED

        if (
            status.state is FailureState.COOLING
            and status.until is not None
            and now < status.until
        ):
            return Decision.SKIP_COOLDOWN

        return Decision.FETCH

    async def run(
        self,
        links: Iterable[LinkRecord],
        refresh_older_than: datetime | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        """Process every link and return the run's summary.

        Args:
            links: Link records in list order. Duplicate ArticleIds are
                processed once.
            refresh_older_than: Re-fetch archived records scraped before
                this instant. Never overrides a permanent failure.
            cancel_token: Stops dispatching new links when set. Links
                already being fetched finish and commit.

        Raises:
            StorageError: If the archive or the ledger cannot be written.
                Links in flight are allowed to finish first.
        """
        cancel_token = cancel_token or CancellationToken()
        cutoff = as_utc(refresh_older_than) if refresh_older_than is not None else None

        queue: asyncio.Queue[LinkRecord] = asyncio.Queue()
        seen: set[str] = set()
        for link in links:
            if link.article_id in seen:
                logger.info("Skipping duplicate link", url=link.url, article_id=link.article_id)
                continue
            seen.add(link.article_id)
            queue.put_nowait(link)

        report = RunReport(total=queue.qsize())
        fatal: list[StorageError] = []

        logger.info(
            "Starting archive run",
            links=queue.qsize(),
            workers=self._workers,
            refresh_older_than=cutoff.isoformat() if cutoff else None,
        )

        async def worker(worker_id: int) -> None:
            while not cancel_token.is_cancelled() and not fatal:
                try:
                    link = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await self._process(link, cutoff, report)
                except StorageError as e:
                    logger.error("Storage failure, stopping run", worker=worker_id, error=str(e))
                    fatal.append(e)
                    return
                finally:
                    queue.task_done()

        try:
            async with asyncio.TaskGroup() as tg:
                for i in range(self._workers):
                    tg.create_task(worker(i))
        except ExceptionGroup as group:
            # The other workers are cancelled and awaited by now.
            raise group.exceptions[0] from group

        if fatal:
            raise fatal[0]

        if cancel_token.is_cancelled() and not queue.empty():
            report.mark_cancelled()
            logger.warning(
                "Archive run cancelled",
                reason=cancel_token.reason,
                not_dispatched=queue.qsize(),
            )

        summary = report.summary()
        logger.info("Archive run complete", **summary.as_dict())
        return summary

    async def _process(
        self,
        link: LinkRecord,
        refresh_older_than: datetime | None,
        report: RunReport,
    ) -> None:
        with article_context(link.article_id, link.url):
            decision = await asyncio.to_thread(
                self.decide, link, refresh_older_than, self._now()
            )
            if decision is not Decision.FETCH:
                logger.debug("Skipping link", reason=str(decision.value))
                report.record(decision.value)
                return

            try:
                await self._fetch_and_commit(link, report)
            finally:
                if self._request_delay:
                    await asyncio.sleep(self._request_delay)

    async def _fetch_and_commit(self, link: LinkRecord, report: RunReport) -> None:
        logger.info("Archiving link")
        try:
            result = await self._fetcher.fetch(link.url)
        except FetchError as e:
            record = await asyncio.to_thread(
                self._ledger.record_failure,
                link.article_id,
                self._now(),
                url=link.url,
                error=e.reason,
            )
            logger.warning(
                "Failed to archive link",
                reason=e.reason,
                error_type=type(e).__name__,
                failure_count=record.failure_count,
                permanent=record.permanent,
            )
            report.record(Outcome.FAILED, newly_permanent=record.permanent)
            return

        enrichment = await run_enrichers(self._enrichers, link, result)
        record = build_archive_record(link, result, enrichment, scraped_at=self._now())
        assets = ArchiveAssets(raw_html=result.html, image=result.image, pdf=enrichment.pdf)

        await asyncio.to_thread(self._archive.write, link.article_id, record, assets)
        await asyncio.to_thread(self._ledger.record_success, link.article_id)

        report.record(Outcome.SCRAPED, partial=result.is_partial)
        logger.info("Link archived", title=record.title, partial=result.is_partial)

    def _existing(self, article_id: str) -> ArchiveRecord | None:
        try:
            return self._archive.read(article_id)
        except ArchiveRecordNotFound:
            return None
