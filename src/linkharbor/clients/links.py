"""Parser for the curated ``links.md`` list."""

import re
from datetime import date
from pathlib import Path

from linkharbor.errors import ConfigurationError
from linkharbor.models import LinkRecord
from linkharbor.utils.logging import get_logger
from linkharbor.utils.urls import canonicalize_url, generate_article_id

logger = get_logger(__name__)

MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]*)\]\(([^)\s]+)\)")
URL_PATTERN = re.compile(r"https?://[^\s#@]+")
TAG_PATTERN = re.compile(r"(?<![\w/])#([\w-]+)")
NOTE_PATTERN = re.compile(r"@note:([^#]*)")
ADDED_PATTERN = re.compile(r"@added:(\d{4}-\d{2}-\d{2})")


def parse_line(line: str, section: str = "") -> LinkRecord | None:
    """Parse a single list item. Returns None for lines without a URL."""
    trimmed = line.strip()
    if not trimmed.startswith("-"):
        return None

    title: str | None = None
    match = MARKDOWN_LINK_PATTERN.search(trimmed)
    if match:
        title = match.group(1).strip() or None
        url = match.group(2)
        rest = trimmed[: match.start()] + trimmed[match.end() :]
    else:
        plain = URL_PATTERN.search(trimmed)
        if not plain:
            return None
        url = plain.group(0)
        rest = trimmed[: plain.start()] + trimmed[plain.end() :]

    note_match = NOTE_PATTERN.search(rest)
    note = note_match.group(1).strip().replace("_", " ") if note_match else None

    added_at: date | None = None
    added_match = ADDED_PATTERN.search(rest)
    if added_match:
        try:
            added_at = date.fromisoformat(added_match.group(1))
        except ValueError:
            logger.warning("Ignoring invalid @added date", value=added_match.group(1), url=url)

    canonical = canonicalize_url(url)
    return LinkRecord(
        url=canonical,
        original_url=url,
        article_id=generate_article_id(canonical),
        section=section,
        title=title,
        tags=frozenset(TAG_PATTERN.findall(rest)),
        note=note or None,
        added_at=added_at,
    )


def parse_links(text: str) -> list[LinkRecord]:
    """Parse the whole list, keeping document order.

    ``## Heading`` lines set the section of the items that follow them.
    Other headings, blank lines and prose are ignored.
    """
    links: list[LinkRecord] = []
    section = ""
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("## "):
            section = stripped[3:].strip()
            continue
        if not stripped or stripped.startswith("#"):
            continue
        link = parse_line(stripped, section)
        if link is not None:
            links.append(link)
    return links


def load_links(path: Path | str) -> list[LinkRecord]:
    """Read and parse a links file.

    Raises:
        ConfigurationError: If the file cannot be read.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"cannot read links file {path}: {e}") from e

    links = parse_links(text)
    logger.info("Parsed links", path=str(path), count=len(links))
    return links
