"""Exception hierarchy for LinkHarbor.

Per-URL problems (``FetchError`` and its subclasses) are caught by the
orchestrator and turned into failure-ledger updates. ``ParseError`` is a
partial success and never reaches the ledger. ``StorageError`` and
``ConfigurationError`` are fatal and propagate to the CLI / API layer.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from linkharbor.models import FetchResult


class LinkHarborError(Exception):
    """Base class for all LinkHarbor errors."""


class FetchError(LinkHarborError):
    """Raised when a URL cannot be fetched. Counts toward the failure ledger."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class TransientNetworkError(FetchError):
    """DNS failure, timeout or dropped connection."""


class RemoteRejectionError(FetchError):
    """The remote site answered with an HTTP error status."""

    def __init__(self, status_code: int, reason: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(reason or f"HTTP {status_code}")


class ParseError(LinkHarborError):
    """Content was fetched but structured extraction failed.

    Carries whatever could be extracted so the record can still be archived.
    """

    def __init__(self, reason: str, partial: "FetchResult") -> None:
        self.reason = reason
        self.partial = partial
        super().__init__(reason)


class StorageError(LinkHarborError):
    """The archive or failure ledger could not be written."""


class ConfigurationError(LinkHarborError):
    """A required capability or input is missing; the run cannot start."""


class ArchiveRecordNotFound(LinkHarborError, KeyError):
    """No valid archive record exists for the requested ArticleId."""

    def __init__(self, article_id: str) -> None:
        self.article_id = article_id
        super().__init__(article_id)

    def __str__(self) -> str:
        return f"no archive record for {self.article_id}"
