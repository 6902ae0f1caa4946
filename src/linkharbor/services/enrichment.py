"""Optional per-record enrichment (AI tagging, PDF rendering).

Enrichers run after a successful fetch and before the archive commit, so
their output lands in the same atomic write. An enricher that fails is
logged and skipped; it never costs the record its archive entry.
"""

from collections.abc import Sequence
from typing import Protocol

from linkharbor.models import Enrichment, FetchResult, LinkRecord
from linkharbor.utils.logging import get_logger

logger = get_logger(__name__)


class Enricher(Protocol):
    name: str

    async def enrich(self, link: LinkRecord, result: FetchResult) -> Enrichment: ...


async def run_enrichers(
    enrichers: Sequence[Enricher], link: LinkRecord, result: FetchResult
) -> Enrichment:
    """Run every enricher in turn and merge what they produced.

    Auto tags are concatenated without duplicates; the first PDF wins.
    """
    merged = Enrichment()
    for enricher in enrichers:
        name = getattr(enricher, "name", type(enricher).__name__)
        try:
            enrichment = await enricher.enrich(link, result)
        except Exception as e:
            logger.warning(
                "Enricher failed, archiving without it",
                enricher=name,
                article_id=link.article_id,
                error=str(e),
            )
            continue

        for tag in enrichment.auto_tags:
            if tag not in merged.auto_tags:
                merged.auto_tags.append(tag)
        if merged.pdf is None and enrichment.pdf is not None:
            merged.pdf = enrichment.pdf
    return merged
