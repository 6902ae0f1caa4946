"""URL canonicalization and ArticleId derivation."""

import hashlib
from urllib.parse import SplitResult, parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset(
    {"utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term"}
)

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}

ARTICLE_ID_LENGTH = 16


def _netloc(parts: SplitResult) -> str:
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is not None and DEFAULT_PORTS.get(parts.scheme.lower()) != port:
        host = f"{host}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        host = f"{userinfo}@{host}"
    return host


def canonicalize_url(url: str) -> str:
    """Normalize ``url`` the way a browser serializes it, minus tracking params.

    Scheme and host are lowercased, a default port is dropped, an empty path
    becomes ``/`` and the query is re-encoded without ``utm_*`` parameters.
    Unparseable input is returned as-is so that it still gets a stable id.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
        netloc = _netloc(parts)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url

    params = parse_qsl(parts.query, keep_blank_values=True)
    query = urlencode([(key, value) for key, value in params if key not in TRACKING_PARAMS])
    return urlunsplit(
        (parts.scheme.lower(), netloc, parts.path or "/", query, parts.fragment)
    )


def generate_article_id(url: str) -> str:
    """Derive the ArticleId for an already canonical URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:ARTICLE_ID_LENGTH]


def article_id_for(url: str) -> str:
    """Canonicalize ``url`` and derive its ArticleId."""
    return generate_article_id(canonicalize_url(url))


def absolutize(url: str, base: str) -> str:
    """Resolve a possibly relative URL against the page it was found on."""
    if url.startswith(("http://", "https://")):
        return url
    return urljoin(base, url)
