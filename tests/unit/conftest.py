"""Shared fixtures for unit tests."""

import pytest
import structlog
from helpers import Clock

from linkharbor.clients.storage import ArchiveStore
from linkharbor.services.ledger import FailureLedger, InMemoryLedgerBackend


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def archive(tmp_path) -> ArchiveStore:
    return ArchiveStore(tmp_path / "archive")


@pytest.fixture
def ledger_backend() -> InMemoryLedgerBackend:
    return InMemoryLedgerBackend()


@pytest.fixture
def ledger(ledger_backend: InMemoryLedgerBackend) -> FailureLedger:
    return FailureLedger(ledger_backend)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()
