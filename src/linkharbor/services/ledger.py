"""Failure ledger: per-URL retry, cooldown and permanent-failure bookkeeping."""

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from linkharbor.errors import StorageError
from linkharbor.models import FailureRecord, FailureStatus
from linkharbor.utils.logging import get_logger

logger = get_logger(__name__)

MAX_FAILURES = 5
COOLDOWN = timedelta(days=7)


@dataclass
class LedgerState:
    """Everything a backend persists."""

    records: dict[str, FailureRecord] = field(default_factory=dict)
    # ArticleId -> metadata written when the id became permanent.
    permanent: dict[str, dict[str, Any]] = field(default_factory=dict)
    # Changes made by this process since the last save. Not persisted.
    added: set[str] = field(default_factory=set)
    cleared: set[str] = field(default_factory=set)

    def mark_saved(self) -> None:
        self.added.clear()
        self.cleared.clear()


class LedgerBackend(Protocol):
    """Storage for the failure ledger."""

    def load(self) -> LedgerState: ...

    def save(self, state: LedgerState) -> None: ...


class InMemoryLedgerBackend:
    """Keeps ledger state in memory. Used by tests and dry runs."""

    def __init__(self, state: LedgerState | None = None) -> None:
        self._state = state or LedgerState()
        self.saves = 0

    def load(self) -> LedgerState:
        return LedgerState(
            records={k: v.model_copy() for k, v in self._state.records.items()},
            permanent={k: dict(v) for k, v in self._state.permanent.items()},
        )

    def save(self, state: LedgerState) -> None:
        self._state = LedgerState(
            records={k: v.model_copy() for k, v in state.records.items()},
            permanent={k: dict(v) for k, v in state.permanent.items()},
        )
        self.saves += 1
        state.mark_saved()


class JsonFileLedgerBackend:
    """Persists the ledger as two JSON documents.

    ``ledger_path`` holds the full per-id state. ``permanent_path`` is the
    operator-facing, append-only list of permanently failed URLs; it is the
    source of truth for the permanent set and is read first on load.

    Several processes (a scrape, an API request, ``clear-failure``) may hold
    a ledger over the same files. ``save`` treats the permanent document on
    disk as current and applies only this process's own changes to it:
    ids another process made permanent are kept, and ids another process
    cleared are dropped from this process's state too.
    """

    def __init__(self, ledger_path: Path | str, permanent_path: Path | str) -> None:
        self._ledger_path = Path(ledger_path)
        self._permanent_path = Path(permanent_path)
        self._lock = threading.Lock()

    def load(self) -> LedgerState:
        state = LedgerState(
            records=self._read_records(),
            permanent=self._read_permanent(),
        )
        logger.info(
            "Failure ledger loaded",
            path=str(self._ledger_path),
            records=len(state.records),
            permanent=len(state.permanent),
        )
        return state

    def save(self, state: LedgerState) -> None:
        with self._lock:
            on_disk = self._read_permanent()
            for article_id in list(state.permanent):
                if article_id not in on_disk and article_id not in state.added:
                    logger.info("Permanent failure cleared elsewhere", article_id=article_id)
                    del state.permanent[article_id]
                    record = state.records.get(article_id)
                    if record is not None and record.permanent:
                        del state.records[article_id]
            for article_id, meta in on_disk.items():
                if article_id not in state.cleared:
                    state.permanent.setdefault(article_id, meta)
            for article_id, record in self._read_records().items():
                if article_id not in state.cleared:
                    state.records.setdefault(article_id, record)

            records = {
                article_id: record.model_dump(mode="json", exclude={"article_id"})
                for article_id, record in sorted(state.records.items())
            }
            # Permanent document first: a crash in between leaves the id listed.
            self._write_json(self._permanent_path, state.permanent)
            self._write_json(self._ledger_path, records)
            state.mark_saved()

    def _read_permanent(self) -> dict[str, dict[str, Any]]:
        permanent = self._read_json(self._permanent_path)
        if not isinstance(permanent, dict):
            raise StorageError(f"{self._permanent_path} must contain a JSON object")
        return {k: v if isinstance(v, dict) else {} for k, v in permanent.items()}

    def _read_records(self) -> dict[str, FailureRecord]:
        raw_records = self._read_json(self._ledger_path)
        if not isinstance(raw_records, dict):
            raise StorageError(f"{self._ledger_path} must contain a JSON object")
        records: dict[str, FailureRecord] = {}
        for article_id, data in raw_records.items():
            try:
                records[article_id] = FailureRecord.model_validate(
                    {**data, "article_id": article_id}
                )
            except (ValidationError, TypeError) as e:
                logger.warning(
                    "Dropping invalid ledger entry", article_id=article_id, error=str(e)
                )
        return records

    @staticmethod
    def _read_json(path: Path) -> Any:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise StorageError(f"{path} is not valid JSON: {e}") from e
        except OSError as e:
            raise StorageError(f"cannot read {path}: {e}") from e

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, sort_keys=True)
                    f.write("\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"cannot write {path}: {e}") from e


class FailureLedger:
    """Tracks fetch failures per ArticleId.

    ``permanent`` is true exactly when ``failure_count >= max_failures``.
    Permanent ids are never retried automatically; only :meth:`clear`
    removes them. State is loaded once and flushed after every mutation.
    """

    def __init__(
        self,
        backend: LedgerBackend,
        max_failures: int = MAX_FAILURES,
        cooldown: timedelta = COOLDOWN,
    ) -> None:
        self._backend = backend
        self._max_failures = max_failures
        self._cooldown = cooldown
        self._lock = threading.Lock()
        self._state = backend.load()
        self._seed_permanent()

    @property
    def max_failures(self) -> int:
        return self._max_failures

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    def _seed_permanent(self) -> None:
        """Reconcile the permanent document with the per-id records.

        Every id in the document is forced permanent. A record that is
        permanent but missing from the document is listed there again.
        """
        for article_id, record in self._state.records.items():
            if record.permanent and article_id not in self._state.permanent:
                logger.warning("Restoring missing permanent entry", article_id=article_id)
                self._state.permanent[article_id] = {
                    "url": record.url,
                    "failure_count": record.failure_count,
                    "first_permanent_at": (
                        record.last_failure_at.isoformat() if record.last_failure_at else None
                    ),
                    "last_error": record.last_error,
                }
                self._state.added.add(article_id)

        for article_id, meta in self._state.permanent.items():
            record = self._state.records.get(article_id) or FailureRecord(
                article_id=article_id, url=meta.get("url")
            )
            if not record.permanent or record.failure_count < self._max_failures:
                record.failure_count = max(
                    record.failure_count, int(meta.get("failure_count", 0)), self._max_failures
                )
                record.permanent = True
                self._state.records[article_id] = record

    def status(self, article_id: str, now: datetime) -> FailureStatus:
        """Classify ``article_id`` at time ``now``."""
        with self._lock:
            record = self._state.records.get(article_id)
        if record is None or (record.failure_count == 0 and not record.permanent):
            return FailureStatus.never_failed()
        if record.permanent:
            return FailureStatus.permanent()
        if record.cooldown_until is not None and now < record.cooldown_until:
            return FailureStatus.cooling(record.cooldown_until)
        return FailureStatus.retryable()

    def get(self, article_id: str) -> FailureRecord | None:
        with self._lock:
            record = self._state.records.get(article_id)
            return record.model_copy() if record else None

    def records(self) -> list[FailureRecord]:
        with self._lock:
            return [r.model_copy() for _, r in sorted(self._state.records.items())]

    def permanent_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._state.permanent)

    def permanent_entries(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in sorted(self._state.permanent.items())}

    def record_failure(
        self,
        article_id: str,
        now: datetime,
        url: str | None = None,
        error: str | None = None,
    ) -> FailureRecord:
        """Count one more failure and start a cooldown.

        Returns:
            A copy of the updated record. ``permanent`` tells the caller
            whether this id is now excluded from future runs.
        """
        with self._lock:
            record = self._state.records.get(article_id) or FailureRecord(article_id=article_id)
            record.failure_count += 1
            record.last_failure_at = now
            record.cooldown_until = now + self._cooldown
            record.last_error = error
            if url is not None:
                record.url = url

            if record.failure_count >= self._max_failures and not record.permanent:
                record.permanent = True
                self._state.added.add(article_id)
                self._state.permanent.setdefault(
                    article_id,
                    {
                        "url": record.url,
                        "failure_count": record.failure_count,
                        "first_permanent_at": now.isoformat(),
                        "last_error": error,
                    },
                )
                logger.warning(
                    "URL marked as permanent failure",
                    article_id=article_id,
                    url=record.url,
                    failure_count=record.failure_count,
                )

            self._state.records[article_id] = record
            self._flush()
            return record.model_copy()

    def record_success(self, article_id: str) -> None:
        """Reset failure state after a successful fetch."""
        with self._lock:
            record = self._state.records.get(article_id)
            if record is None:
                return
            if record.permanent:
                logger.warning(
                    "Ignoring success for permanently failed URL",
                    article_id=article_id,
                )
                return
            record.failure_count = 0
            record.cooldown_until = None
            record.last_error = None
            self._flush()

    def clear(self, article_id: str) -> bool:
        """Operator override: forget every failure recorded for ``article_id``.

        Returns:
            True if there was anything to clear.
        """
        with self._lock:
            had_record = self._state.records.pop(article_id, None) is not None
            was_permanent = self._state.permanent.pop(article_id, None) is not None
            if not (had_record or was_permanent):
                return False
            self._state.cleared.add(article_id)
            self._flush()
        logger.info("Failure state cleared", article_id=article_id, was_permanent=was_permanent)
        return True

    def _flush(self) -> None:
        self._backend.save(self._state)
