"""Unit tests for ScrapeOrchestrator."""

import asyncio
import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from helpers import Clock, FakeFetcher, make_link, make_result

from linkharbor.clients.storage import ArchiveStore
from linkharbor.errors import ParseError, RemoteRejectionError, StorageError, TransientNetworkError
from linkharbor.models import ArchiveAssets, ArchiveRecord, Enrichment
from linkharbor.services.fetching import FetcherAdapter
from linkharbor.services.ledger import FailureLedger
from linkharbor.services.orchestrator import Decision, ScrapeOrchestrator
from linkharbor.services.report import RunSummary
from linkharbor.utils.cancellation import CancellationToken

URL_A = "https://example.com/a"
URL_B = "https://example.com/b"


def _orchestrator(
    archive: ArchiveStore,
    ledger: FailureLedger,
    fetcher,
    clock: Clock,
    timeout: float = 1.0,
    **kwargs,
) -> ScrapeOrchestrator:
    return ScrapeOrchestrator(
        archive=archive,
        ledger=ledger,
        fetcher=FetcherAdapter(fetcher, timeout=timeout),
        now=clock,
        **kwargs,
    )


async def _never_returns(url: str):
    await asyncio.sleep(10)


def _counts(summary: RunSummary) -> dict[str, int]:
    return {
        "scraped": summary.scraped,
        "failed": summary.failed,
        "skipped_cached": summary.skipped_cached,
        "skipped_cooldown": summary.skipped_cooldown,
        "skipped_permanent": summary.skipped_permanent,
    }


class TestScenarios:
    """End-to-end runs over a two-link list."""

    async def test_one_success_one_timeout(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """a is archived; b times out and starts a 7 day cooldown."""
        fetcher = FakeFetcher({URL_B: _never_returns})
        orchestrator = _orchestrator(archive, ledger, fetcher, clock, timeout=0.05)
        links = [make_link(URL_A), make_link(URL_B)]

        summary = await orchestrator.run(links)

        assert _counts(summary) == {
            "scraped": 1,
            "failed": 1,
            "skipped_cached": 0,
            "skipped_cooldown": 0,
            "skipped_permanent": 0,
        }
        assert summary.newly_permanent == 0

        record = archive.read(links[0].article_id)
        assert record.url == URL_A
        assert record.title == f"Title of {URL_A}"
        assert record.scraped_at == clock()
        assert (archive.record_dir(links[0].article_id) / "content.html").is_file()

        failure = ledger.get(links[1].article_id)
        assert failure is not None
        assert failure.failure_count == 1
        assert failure.permanent is False
        assert failure.cooldown_until == clock() + timedelta(days=7)
        assert failure.last_error == "timeout"
        assert not archive.exists(links[1].article_id)

    async def test_five_failures_then_permanent_skip(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """b fails on five refresh-forced runs, then is excluded for good."""
        fetcher = FakeFetcher({URL_B: TransientNetworkError("timeout")})
        orchestrator = _orchestrator(archive, ledger, fetcher, clock)
        links = [make_link(URL_A), make_link(URL_B)]
        b_id = links[1].article_id

        first = await orchestrator.run(links)
        assert first.failed == 1

        # Cutoff before any scrape: a stays cached, b is forced despite cooldown.
        cutoff = clock() - timedelta(days=1)
        for run in range(2, 6):
            clock.advance(timedelta(days=1))
            summary = await orchestrator.run(links, refresh_older_than=cutoff)
            assert summary.failed == 1
            assert summary.skipped_cached == 1
            assert summary.newly_permanent == (1 if run == 5 else 0)

        failure = ledger.get(b_id)
        assert failure is not None
        assert failure.failure_count == 5
        assert failure.permanent is True
        assert ledger.permanent_ids() == [b_id]

        calls_before = fetcher.calls.count(URL_B)
        clock.advance(timedelta(days=365))
        sixth = await orchestrator.run(links, refresh_older_than=datetime(2000, 1, 1, tzinfo=UTC))

        assert sixth.skipped_permanent == 1
        assert sixth.skipped_cached == 1
        assert sixth.failed == 0
        assert fetcher.calls.count(URL_B) == calls_before


class TestLaws:
    """Properties that must hold for every run."""

    async def test_idempotent_second_run(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """Running twice without refresh makes no new fetches and changes nothing."""
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(archive, ledger, fetcher, clock)
        links = [make_link(URL_A), make_link(URL_B)]

        await orchestrator.run(links)
        snapshot = {
            article_id: (archive.record_dir(article_id) / "data.json").read_bytes()
            for article_id in archive.list_ids()
        }
        calls_after_first = len(fetcher.calls)

        clock.advance(timedelta(days=30))
        summary = await orchestrator.run(links)

        assert len(fetcher.calls) == calls_after_first
        assert summary.skipped_cached == 2
        assert summary.scraped == 0
        assert {
            article_id: (archive.record_dir(article_id) / "data.json").read_bytes()
            for article_id in archive.list_ids()
        } == snapshot

    async def test_cache_skip_never_invokes_fetcher(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """An archived id without a refresh override is never fetched."""
        link = make_link(URL_A)
        archive.write(
            link.article_id,
            ArchiveRecord(
                article_id=link.article_id,
                url=link.url,
                original_url=link.url,
                scraped_at=clock() - timedelta(days=900),
                raw_html_ref="",
            ),
            ArchiveAssets(raw_html="<html></html>"),
        )
        fetcher = MagicMock()
        fetcher.fetch = MagicMock(side_effect=AssertionError("must not fetch"))

        summary = await _orchestrator(archive, ledger, fetcher, clock).run([link])

        assert summary.skipped_cached == 1
        fetcher.fetch.assert_not_called()

    async def test_cooldown_law(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """Skipped before T + 7 days, attempted at T + 7 days."""
        link = make_link(URL_B)
        fetcher = FakeFetcher({URL_B: RemoteRejectionError(503)})
        orchestrator = _orchestrator(archive, ledger, fetcher, clock)
        failed_at = clock()

        await orchestrator.run([link])
        assert fetcher.calls == [URL_B]

        clock.current = failed_at + timedelta(days=7) - timedelta(seconds=1)
        early = await orchestrator.run([link])
        assert early.skipped_cooldown == 1
        assert fetcher.calls == [URL_B]

        clock.current = failed_at + timedelta(days=7)
        fetcher.outcomes.clear()
        on_time = await orchestrator.run([link])
        assert on_time.scraped == 1
        assert fetcher.calls == [URL_B, URL_B]

    async def test_permanent_failure_law(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """After 5 failures the link is excluded, even long past any cooldown."""
        link = make_link(URL_B)
        fetcher = FakeFetcher({URL_B: TransientNetworkError("request error: reset")})
        orchestrator = _orchestrator(archive, ledger, fetcher, clock)

        for _ in range(5):
            await orchestrator.run([link])
            clock.advance(timedelta(days=7))

        assert ledger.get(link.article_id).permanent is True
        assert len(fetcher.calls) == 5

        clock.advance(timedelta(days=1000))
        summary = await orchestrator.run([link])

        assert summary.skipped_permanent == 1
        assert len(fetcher.calls) == 5

    async def test_success_resets_failure_state(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """failure_count 3, then a success: count 0, not permanent."""
        link = make_link(URL_A)
        for _ in range(3):
            ledger.record_failure(link.article_id, clock() - timedelta(days=30), url=URL_A)

        summary = await _orchestrator(archive, ledger, FakeFetcher(), clock).run([link])

        assert summary.scraped == 1
        failure = ledger.get(link.article_id)
        assert failure.failure_count == 0
        assert failure.permanent is False
        assert failure.cooldown_until is None


class TestDecide:
    """Tests for the skip rules and their precedence."""

    @pytest.fixture
    def orchestrator(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> ScrapeOrchestrator:
        return _orchestrator(archive, ledger, FakeFetcher(), clock)

    def _archive_link(self, archive: ArchiveStore, link, scraped_at, **fields) -> None:
        archive.write(
            link.article_id,
            ArchiveRecord(
                article_id=link.article_id,
                url=link.url,
                original_url=link.url,
                scraped_at=scraped_at,
                raw_html_ref="",
                **fields,
            ),
            ArchiveAssets(raw_html="<html></html>"),
        )

    def test_new_link_is_fetched(self, orchestrator, clock) -> None:
        assert orchestrator.decide(make_link(URL_A), None, clock()) is Decision.FETCH

    def test_refresh_overrides_cache_for_old_records(
        self, orchestrator, archive, clock
    ) -> None:
        link = make_link(URL_A)
        self._archive_link(archive, link, clock() - timedelta(days=10))

        assert orchestrator.decide(link, clock() - timedelta(days=5), clock()) is Decision.FETCH
        assert (
            orchestrator.decide(link, clock() - timedelta(days=20), clock())
            is Decision.SKIP_CACHED
        )

    def test_refresh_overrides_cooldown(self, orchestrator, ledger, clock) -> None:
        link = make_link(URL_B)
        ledger.record_failure(link.article_id, clock())

        assert orchestrator.decide(link, None, clock()) is Decision.SKIP_COOLDOWN
        assert orchestrator.decide(link, clock(), clock()) is Decision.FETCH

    def test_refresh_never_overrides_permanent(self, orchestrator, ledger, clock) -> None:
        link = make_link(URL_B)
        for _ in range(5):
            ledger.record_failure(link.article_id, clock())

        future = clock() + timedelta(days=365)
        assert orchestrator.decide(link, future, clock()) is Decision.SKIP_PERMANENT

    def test_resurrected_records_are_not_refreshed(
        self, orchestrator, archive, clock
    ) -> None:
        link = make_link(URL_A)
        self._archive_link(archive, link, clock() - timedelta(days=10), resurrected=True)

        future = clock() + timedelta(days=1)
        assert orchestrator.decide(link, future, clock()) is Decision.SKIP_CACHED

    async def test_naive_cutoff_treated_as_utc(self, orchestrator, archive) -> None:
        """run() accepts a date-only cutoff without a timezone."""
        link = make_link(URL_A)
        self._archive_link(archive, link, datetime(2024, 1, 1, tzinfo=UTC))

        summary = await orchestrator.run([link], refresh_older_than=datetime(2024, 2, 1))

        assert summary.scraped == 1


class TestOutcomes:
    """Tests for partial success, enrichment and fatal errors."""

    async def test_parse_error_is_archived_not_failed(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """A page without a readable body is still archived, and not ledgered."""
        link = make_link(URL_A)
        partial = make_result(URL_A, body_text=None, title="Only a title")
        fetcher = FakeFetcher({URL_A: ParseError("no readable body", partial=partial)})

        summary = await _orchestrator(archive, ledger, fetcher, clock).run([link])

        assert summary.scraped == 1
        assert summary.partial == 1
        assert summary.failed == 0
        record = archive.read(link.article_id)
        assert record.parse_error == "no readable body"
        assert record.title == "Only a title"
        assert record.body_text is None
        assert ledger.get(link.article_id) is None

    async def test_link_metadata_carried_into_record(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        link = make_link(URL_A, section="2024", tags=frozenset({"b", "a"}), note="tasty")
        await _orchestrator(archive, ledger, FakeFetcher(), clock).run([link])

        record = archive.read(link.article_id)
        assert record.section == "2024"
        assert record.tags == ["a", "b"]
        assert record.note == "tasty"

    async def test_enricher_output_is_archived(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        class Tagger:
            name = "tagger"

            async def enrich(self, link, result):
                return Enrichment(auto_tags=["recipe"], pdf=b"%PDF")

        link = make_link(URL_A)
        await _orchestrator(archive, ledger, FakeFetcher(), clock, enrichers=[Tagger()]).run(
            [link]
        )

        record = archive.read(link.article_id)
        assert record.auto_tags == ["recipe"]
        assert record.pdf_ref == "archive.pdf"

    async def test_enricher_failure_does_not_block_archive(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """Enrichment is optional: its failure must not fail the record."""

        class Broken:
            name = "broken"

            async def enrich(self, link, result):
                raise RuntimeError("model unavailable")

        link = make_link(URL_A)
        summary = await _orchestrator(
            archive, ledger, FakeFetcher(), clock, enrichers=[Broken()]
        ).run([link])

        assert summary.scraped == 1
        assert archive.read(link.article_id).auto_tags == []

    async def test_storage_error_aborts_run(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock, monkeypatch
    ) -> None:
        """A storage failure is fatal and stops dispatching."""

        def failing_write(article_id, record, assets):
            raise StorageError("disk full")

        monkeypatch.setattr(archive, "write", failing_write)
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(archive, ledger, fetcher, clock, workers=1)

        with pytest.raises(StorageError, match="disk full"):
            await orchestrator.run([make_link(URL_A), make_link(URL_B)])

        assert fetcher.calls == [URL_A]
        assert ledger.get(make_link(URL_A).article_id) is None

    async def test_duplicate_links_processed_once(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        fetcher = FakeFetcher()
        links = [make_link(URL_A), make_link(URL_A + "?utm_source=x")]

        summary = await _orchestrator(archive, ledger, fetcher, clock).run(links)

        assert summary.total == 1
        assert summary.scraped == 1
        assert fetcher.calls == [URL_A]


class TestConcurrency:
    """Tests for the worker pool and cancellation."""

    async def test_worker_pool_is_bounded(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """No more than ``workers`` fetches run at once, and all links finish."""

        async def slow(url: str):
            await asyncio.sleep(0.01)
            return make_result(url)

        urls = [f"https://example.com/{i}" for i in range(8)]
        fetcher = FakeFetcher({url: slow for url in urls})

        summary = await _orchestrator(archive, ledger, fetcher, clock, workers=3).run(
            [make_link(url) for url in urls]
        )

        assert summary.scraped == 8
        assert 1 < fetcher.max_in_flight <= 3
        assert len(archive.list_ids()) == 8

    async def test_cancellation_stops_dispatch_but_commits_in_flight(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock
    ) -> None:
        """Cancelling mid-fetch finishes that link and starts no others."""
        token = CancellationToken()

        async def cancel_then_succeed(url: str):
            token.cancel("operator interrupt")
            await asyncio.sleep(0)
            return make_result(url)

        fetcher = FakeFetcher({URL_A: cancel_then_succeed})
        links = [make_link(URL_A), make_link(URL_B)]

        summary = await _orchestrator(archive, ledger, fetcher, clock, workers=1).run(
            links, cancel_token=token
        )

        assert summary.cancelled is True
        assert summary.scraped == 1
        assert fetcher.calls == [URL_A]
        assert archive.exists(links[0].article_id)
        assert not archive.exists(links[1].article_id)

    async def test_storage_and_ledger_calls_run_off_the_event_loop(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock, monkeypatch
    ) -> None:
        """Archive reads and ledger flushes do not block other workers."""
        loop_thread = threading.get_ident()
        seen: dict[str, set[int]] = {}

        def spy(name, fn):
            def wrapper(*args, **kwargs):
                seen.setdefault(name, set()).add(threading.get_ident())
                return fn(*args, **kwargs)

            return wrapper

        monkeypatch.setattr(archive, "read", spy("read", archive.read))
        monkeypatch.setattr(ledger, "record_failure", spy("record_failure", ledger.record_failure))
        monkeypatch.setattr(ledger, "record_success", spy("record_success", ledger.record_success))
        fetcher = FakeFetcher({URL_B: TransientNetworkError("timeout")})

        summary = await _orchestrator(archive, ledger, fetcher, clock, workers=2).run(
            [make_link(URL_A), make_link(URL_B)]
        )

        assert summary.scraped == 1
        assert summary.failed == 1
        assert set(seen) == {"read", "record_failure", "record_success"}
        assert all(loop_thread not in threads for threads in seen.values())

    async def test_unexpected_error_cancels_other_workers(
        self, archive: ArchiveStore, ledger: FailureLedger, clock: Clock, monkeypatch
    ) -> None:
        """A crashing worker takes its siblings down before the error surfaces."""
        sibling_cancelled = asyncio.Event()

        async def hang(url: str):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                sibling_cancelled.set()
                raise

        def broken_success(article_id: str) -> None:
            raise RuntimeError("ledger bug")

        monkeypatch.setattr(ledger, "record_success", broken_success)
        fetcher = FakeFetcher({URL_B: hang})
        orchestrator = _orchestrator(archive, ledger, fetcher, clock, timeout=30.0, workers=2)

        with pytest.raises(RuntimeError, match="ledger bug"):
            await orchestrator.run([make_link(URL_A), make_link(URL_B)])

        assert sibling_cancelled.is_set()
        assert fetcher.in_flight == 0
