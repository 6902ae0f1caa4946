"""Adapter between the orchestrator and a content fetcher."""

import asyncio
from typing import Protocol

from linkharbor.errors import (
    ConfigurationError,
    FetchError,
    ParseError,
    StorageError,
    TransientNetworkError,
)
from linkharbor.models import FetchResult
from linkharbor.utils.logging import get_logger

logger = get_logger(__name__)


class ContentFetcher(Protocol):
    """Anything that can retrieve one URL."""

    async def fetch(self, url: str) -> FetchResult: ...


class FetcherAdapter:
    """Bounds a fetcher with a timeout and normalizes its outcomes.

    ``fetch`` either returns a FetchResult (possibly partial, with
    ``parse_error`` set) or raises a FetchError subclass. Nothing else
    escapes except StorageError and cancellation.
    """

    def __init__(self, fetcher: ContentFetcher | None, timeout: float = 30.0) -> None:
        if fetcher is None or not callable(getattr(fetcher, "fetch", None)):
            raise ConfigurationError("no content fetcher is available")
        if timeout <= 0:
            raise ConfigurationError("fetch timeout must be positive")
        self._fetcher = fetcher
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    async def fetch(self, url: str) -> FetchResult:
        try:
            return await asyncio.wait_for(self._fetcher.fetch(url), timeout=self._timeout)
        except ParseError as e:
            logger.info("Keeping partially extracted page", url=url, reason=e.reason)
            result = e.partial
            result.parse_error = result.parse_error or e.reason
            return result
        except TimeoutError as e:
            logger.warning("Fetch timed out", url=url, timeout=self._timeout)
            raise TransientNetworkError("timeout") from e
        except (FetchError, StorageError):
            raise
        except Exception as e:
            logger.error("Unexpected fetch error", url=url, error=str(e))
            raise FetchError(f"unexpected error: {e}") from e
