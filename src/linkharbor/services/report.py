"""Per-run outcome counters."""

import enum
import threading
from dataclasses import asdict, dataclass


class Outcome(enum.StrEnum):
    SCRAPED = "scraped"
    SKIPPED_CACHED = "skipped_cached"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_PERMANENT = "skipped_permanent"
    FAILED = "failed"


@dataclass(frozen=True)
class RunSummary:
    """Final, immutable statistics of one pipeline run."""

    scraped: int = 0
    skipped_cached: int = 0
    skipped_cooldown: int = 0
    skipped_permanent: int = 0
    failed: int = 0
    newly_permanent: int = 0
    # Informational: subset of ``scraped`` written with a parse error.
    partial: int = 0
    total: int = 0
    cancelled: bool = False

    @property
    def skipped(self) -> int:
        return self.skipped_cached + self.skipped_cooldown + self.skipped_permanent

    @property
    def processed(self) -> int:
        return self.scraped + self.failed + self.skipped

    def as_dict(self) -> dict[str, int | bool]:
        return asdict(self)


class RunReport:
    """Thread-safe accumulator of outcomes during a run."""

    def __init__(self, total: int = 0) -> None:
        self._lock = threading.Lock()
        self._counts = {outcome: 0 for outcome in Outcome}
        self._newly_permanent = 0
        self._partial = 0
        self._total = total
        self._cancelled = False

    def record(
        self,
        outcome: Outcome,
        *,
        newly_permanent: bool = False,
        partial: bool = False,
    ) -> None:
        with self._lock:
            self._counts[outcome] += 1
            if newly_permanent:
                self._newly_permanent += 1
            if partial:
                self._partial += 1

    def mark_cancelled(self) -> None:
        with self._lock:
            self._cancelled = True

    def summary(self) -> RunSummary:
        with self._lock:
            return RunSummary(
                scraped=self._counts[Outcome.SCRAPED],
                skipped_cached=self._counts[Outcome.SKIPPED_CACHED],
                skipped_cooldown=self._counts[Outcome.SKIPPED_COOLDOWN],
                skipped_permanent=self._counts[Outcome.SKIPPED_PERMANENT],
                failed=self._counts[Outcome.FAILED],
                newly_permanent=self._newly_permanent,
                partial=self._partial,
                total=self._total,
                cancelled=self._cancelled,
            )


def format_summary(summary: RunSummary) -> str:
    """Human-readable report for the CLI."""
    scraped = str(summary.scraped)
    if summary.partial:
        scraped += f" ({summary.partial} partial)"
    rows = [
        ("Links", str(summary.total)),
        ("Scraped", scraped),
        ("Skipped (cached)", str(summary.skipped_cached)),
        ("Skipped (cooldown)", str(summary.skipped_cooldown)),
        ("Skipped (permanent)", str(summary.skipped_permanent)),
        ("Failed", str(summary.failed)),
        ("Newly permanent", str(summary.newly_permanent)),
    ]
    header = "Archive run complete" + (" (cancelled)" if summary.cancelled else "")
    return "\n".join([header] + [f"  {label + ':':<21}{value}" for label, value in rows])
