"""Page fetcher and content extractor for LinkHarbor."""

import asyncio
import json

import httpx
import trafilatura
from lxml import etree
from lxml import html as lxml_html
from readability import Document

from linkharbor.config import DEFAULT_USER_AGENT
from linkharbor.errors import ParseError, RemoteRejectionError, TransientNetworkError
from linkharbor.models import FetchResult, ImageAsset, StructuredData
from linkharbor.utils.logging import get_logger
from linkharbor.utils.urls import absolutize

logger = get_logger(__name__)

JSON_LD_TYPE = "application/ld+json"

# Kept back from the page budget so the caller's own timeout sees the result.
DEADLINE_MARGIN = 0.05

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "svg")


def parse_html(html: str) -> lxml_html.HtmlElement | None:
    """Parse a document, or return None if lxml cannot make sense of it."""
    try:
        return lxml_html.document_fromstring(html)
    except (etree.ParserError, ValueError) as e:
        logger.debug("Could not parse HTML", error=str(e))
        return None


def json_ld_blocks(tree: lxml_html.HtmlElement) -> list[object]:
    """Return every JSON-LD payload in a parsed page, skipping invalid ones."""
    payloads: list[object] = []
    for script in tree.iter("script"):
        if (script.get("type") or "").strip().lower() != JSON_LD_TYPE:
            continue
        body = (script.text or "").strip()
        if not body:
            continue
        try:
            payloads.append(json.loads(body))
        except json.JSONDecodeError:
            logger.debug("Skipping invalid JSON-LD block")
    return payloads


def parse_json_ld(html: str) -> list[object]:
    tree = parse_html(html)
    return json_ld_blocks(tree) if tree is not None else []


def first_image_src(tree: lxml_html.HtmlElement) -> str | None:
    for src in tree.xpath("//img/@src"):
        if src.strip():
            return src.strip()
    return None


def html_to_text(fragment: str) -> str:
    """Collapse an HTML fragment to whitespace-normalized text."""
    tree = parse_html(fragment)
    if tree is None:
        return ""
    return " ".join(tree.text_content().split())


def image_extension(content_type: str | None, url: str) -> str:
    """Pick a file extension for a downloaded image."""
    content_type = (content_type or "").lower()
    for ext in ("png", "gif", "webp", "svg"):
        if ext in content_type:
            return ext
    if "jpeg" in content_type or "jpg" in content_type:
        return "jpg"
    suffix = url.split("?", 1)[0].rsplit(".", 1)[-1].lower()
    return suffix if suffix in IMAGE_EXTENSIONS else "jpg"


class PageFetcher:
    """Fetches a page and extracts its title, text, metadata and key image."""

    def __init__(
        self,
        timeout: float = 30.0,
        image_timeout: float = 4.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._timeout = timeout
        self._image_timeout = image_timeout
        self._client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )

    @property
    def page_budget(self) -> float:
        """Longest a single fetch may take, key image included."""
        return self._timeout + self._image_timeout

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "PageFetcher":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def fetch(self, url: str) -> FetchResult:
        """Fetch a URL and extract its content.

        Args:
            url: The URL to fetch.

        Returns:
            A FetchResult with the raw HTML and everything extracted from it.

        Raises:
            TransientNetworkError: On timeouts and connection problems.
            RemoteRejectionError: If the site answers with an HTTP error.
            ParseError: If the page has no readable body. The partially
                extracted result is attached to the exception.
        """
        logger.info("Fetching page", url=url)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.page_budget

        try:
            html, final_url = await asyncio.wait_for(self._fetch_html(url), self._timeout)
        except TimeoutError as e:
            logger.warning("Timeout fetching URL", url=url, timeout=self._timeout)
            raise TransientNetworkError("timeout") from e
        result = self._extract(url, final_url, html)

        image_url = result.structured_data.key_image_url
        if image_url:
            remaining = min(self._image_timeout, deadline - loop.time() - DEADLINE_MARGIN)
            result.image = await self._download_image(image_url, remaining)

        if not result.body_text:
            logger.warning("No readable body extracted", url=url)
            result.parse_error = "no readable body"
            raise ParseError("no readable body", partial=result)

        logger.info(
            "Page extracted",
            url=url,
            title=result.title,
            words=len(result.body_text.split()),
            json_ld=len(result.structured_data.json_ld),
        )
        return result

    async def _fetch_html(self, url: str) -> tuple[str, str]:
        """Fetch HTML content and the final URL after redirects."""
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            return response.text, str(response.url)
        except httpx.HTTPStatusError as e:
            logger.warning("HTTP error fetching URL", url=url, status=e.response.status_code)
            raise RemoteRejectionError(e.response.status_code) from e
        except httpx.TimeoutException as e:
            logger.warning("Timeout fetching URL", url=url)
            raise TransientNetworkError("timeout") from e
        except httpx.RequestError as e:
            logger.warning("Request error fetching URL", url=url, error=str(e))
            raise TransientNetworkError(f"request error: {e}") from e

    def _extract(self, url: str, final_url: str, html: str) -> FetchResult:
        """Extract title, body text and structured metadata.

        Uses trafilatura as primary extractor, falls back to readability-lxml
        for the body.
        """
        tree = parse_html(html)
        metadata = trafilatura.extract_metadata(html)
        title = metadata.title if metadata and metadata.title else None

        key_image = metadata.image if metadata and metadata.image else None
        if not key_image and tree is not None:
            key_image = first_image_src(tree)

        structured = StructuredData(
            json_ld=json_ld_blocks(tree) if tree is not None else [],
            author=metadata.author if metadata else None,
            published_at=metadata.date if metadata else None,
            description=metadata.description if metadata else None,
            key_image_url=absolutize(key_image, final_url) if key_image else None,
            site_name=metadata.sitename if metadata else None,
        )

        body = trafilatura.extract(
            html,
            include_comments=False,
            include_tables=True,
            no_fallback=False,
        )
        if not body:
            logger.debug("Falling back to readability-lxml", url=url)
            body, title = self._extract_with_readability(html, title)

        return FetchResult(
            url=url,
            final_url=final_url,
            html=html,
            title=title,
            body_text=body or None,
            structured_data=structured,
        )

    def _extract_with_readability(
        self, html: str, fallback_title: str | None
    ) -> tuple[str, str | None]:
        """Extract content using readability-lxml as fallback."""
        try:
            doc = Document(html)
            title = fallback_title or doc.title() or None
            return html_to_text(doc.summary()), title
        except Exception as e:
            logger.debug("Readability extraction failed", error=str(e))
            return "", fallback_title

    async def _download_image(self, image_url: str, timeout: float) -> ImageAsset | None:
        """Download the key image within ``timeout`` seconds.

        Failures, including running out of time, are logged and return None.
        """
        if timeout <= 0:
            logger.warning("No time left for key image", image_url=image_url)
            return None

        logger.info("Downloading key image", image_url=image_url, timeout=timeout)
        try:
            response = await asyncio.wait_for(
                self._client.get(image_url, timeout=timeout), timeout=timeout
            )
            response.raise_for_status()
        except TimeoutError:
            logger.warning("Timed out downloading image", image_url=image_url)
            return None
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Failed to download image", image_url=image_url, status=e.response.status_code
            )
            return None
        except httpx.HTTPError as e:
            logger.warning("Failed to download image", image_url=image_url, error=str(e))
            return None

        return ImageAsset(
            data=response.content,
            extension=image_extension(response.headers.get("content-type"), image_url),
            source_url=image_url,
        )
