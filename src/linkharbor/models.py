"""Shared data models for LinkHarbor."""

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

ARCHIVE_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class LinkRecord:
    """One entry of the curated links list."""

    url: str
    original_url: str
    article_id: str
    section: str = ""
    title: str | None = None
    tags: frozenset[str] = frozenset()
    note: str | None = None
    added_at: date | None = None


class StructuredData(BaseModel):
    """Metadata embedded in a page, validated field by field."""

    json_ld: list[dict[str, Any]] = Field(default_factory=list)
    author: str | None = None
    published_at: str | None = None
    description: str | None = None
    key_image_url: str | None = None
    site_name: str | None = None

    @field_validator("json_ld", mode="before")
    @classmethod
    def flatten_json_ld(cls, v: Any) -> list[dict[str, Any]]:
        """Accept a single object or nested arrays; keep only JSON objects."""
        if v is None:
            return []
        if isinstance(v, dict):
            v = [v]
        objects: list[dict[str, Any]] = []
        for item in v:
            if isinstance(item, dict):
                objects.append(item)
            elif isinstance(item, list):
                objects.extend(obj for obj in item if isinstance(obj, dict))
        return objects

    @field_validator("author", "published_at", "description", "key_image_url", "site_name")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def is_empty(self) -> bool:
        return not self.json_ld and not any(
            (self.author, self.published_at, self.description, self.key_image_url)
        )


@dataclass
class ImageAsset:
    """A downloaded key image."""

    data: bytes = field(repr=False)
    extension: str
    source_url: str


@dataclass
class FetchResult:
    """Everything the fetcher could retrieve for one URL."""

    url: str
    final_url: str
    html: str = field(repr=False)
    title: str | None = None
    body_text: str | None = field(default=None, repr=False)
    structured_data: StructuredData = field(default_factory=StructuredData)
    image: ImageAsset | None = None
    parse_error: str | None = None

    @property
    def is_partial(self) -> bool:
        return self.parse_error is not None


@dataclass
class Enrichment:
    """Output of an auxiliary enricher (AI tagging, PDF rendering)."""

    auto_tags: list[str] = field(default_factory=list)
    pdf: bytes | None = field(default=None, repr=False)


@dataclass
class ArchiveAssets:
    """Binary and raw assets written alongside an archive record."""

    raw_html: str = field(repr=False)
    image: ImageAsset | None = None
    pdf: bytes | None = field(default=None, repr=False)


class ArchiveRecord(BaseModel):
    """The metadata document stored as ``data.json`` for each ArticleId."""

    schema_version: int = ARCHIVE_SCHEMA_VERSION
    article_id: str
    url: str
    original_url: str
    final_url: str | None = None
    scraped_at: datetime
    title: str | None = None
    body_text: str | None = None
    raw_html_ref: str
    image_ref: str | None = None
    key_image_url: str | None = None
    structured_data: StructuredData = Field(default_factory=StructuredData)
    pdf_ref: str | None = None
    section: str = ""
    tags: list[str] = Field(default_factory=list)
    note: str | None = None
    auto_tags: list[str] = Field(default_factory=list)
    parse_error: str | None = None
    resurrected: bool = False


class FailureRecord(BaseModel):
    """Retry bookkeeping for one ArticleId."""

    article_id: str
    url: str | None = None
    failure_count: int = Field(default=0, ge=0)
    last_failure_at: datetime | None = None
    cooldown_until: datetime | None = None
    permanent: bool = False
    last_error: str | None = None


class FailureState(enum.StrEnum):
    NEVER_FAILED = "never_failed"
    COOLING = "cooling"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class FailureStatus:
    """What the failure ledger says about an ArticleId at a point in time."""

    state: FailureState
    until: datetime | None = None

    @classmethod
    def never_failed(cls) -> "FailureStatus":
        return cls(FailureState.NEVER_FAILED)

    @classmethod
    def cooling(cls, until: datetime) -> "FailureStatus":
        return cls(FailureState.COOLING, until)

    @classmethod
    def retryable(cls) -> "FailureStatus":
        return cls(FailureState.RETRYABLE)

    @classmethod
    def permanent(cls) -> "FailureStatus":
        return cls(FailureState.PERMANENT)
