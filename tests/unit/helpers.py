"""Test doubles and builders shared by the unit tests."""

import asyncio
from datetime import UTC, datetime, timedelta

from linkharbor.models import FetchResult, LinkRecord
from linkharbor.utils.urls import article_id_for, canonicalize_url

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


class Clock:
    """Controllable clock passed to the orchestrator as ``now``."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


class FakeFetcher:
    """Content fetcher returning canned results.

    ``outcomes`` maps a URL to a FetchResult, an exception instance to raise,
    or a coroutine function to await. Unknown URLs succeed.
    """

    def __init__(self, outcomes: dict | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            outcome = self.outcomes.get(url)
            if outcome is None:
                return make_result(url)
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return await outcome(url)
            return outcome
        finally:
            self.in_flight -= 1


def make_link(url: str, **kwargs) -> LinkRecord:
    return LinkRecord(
        url=canonicalize_url(url),
        original_url=url,
        article_id=article_id_for(url),
        **kwargs,
    )


def make_result(url: str, **kwargs) -> FetchResult:
    fields = {
        "final_url": url,
        "html": f"<html><head><title>{url}</title></head><body><p>Body of {url}</p></body></html>",
        "title": f"Title of {url}",
        "body_text": f"Body of {url}",
    }
    fields.update(kwargs)
    return FetchResult(url=url, **fields)
