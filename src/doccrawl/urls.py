"""URL normalization and per-source include/exclude matching."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from functools import lru_cache
from urllib.parse import urljoin, urlsplit, urlunsplit

from .config import Pattern, Source

logger = logging.getLogger(__name__)

CRAWLABLE_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Return the dedup key for ``url``: scheme, host and path only.

    Query string, fragment, trailing slashes and the scheme's default port
    are dropped. A URL that cannot be parsed is returned unchanged.
    """
    parsed = _split(url)
    if parsed is None:
        return url
    path = parsed.path.rstrip("/")
    return urlunsplit((parsed.scheme, _netloc(parsed), path, "", ""))


def url_without_fragment(url: str) -> str:
    """Drop only the fragment, keeping the query string."""
    parsed = _split(url)
    if parsed is None:
        return url
    return urlunsplit((parsed.scheme, _netloc(parsed), parsed.path, parsed.query, ""))


def url_path(url: str) -> str | None:
    """Path used for pattern matching: no fragment, no trailing slash."""
    parsed = _split(url)
    if parsed is None:
        return None
    return parsed.path.rstrip("/")


def resolve_link(page_url: str, raw_link: str) -> str | None:
    """Resolve a link found on ``page_url`` to a crawlable absolute URL."""
    candidate = raw_link.strip()
    if not candidate or candidate.startswith(("#", "javascript:")):
        return None
    try:
        absolute = urljoin(page_url, candidate)
    except ValueError:
        return None
    parsed = _split(absolute, quiet=True)
    if parsed is None or parsed.scheme not in CRAWLABLE_SCHEMES:
        return None
    return url_without_fragment(absolute)


def hostname(url: str) -> str | None:
    parsed = _split(url, quiet=True)
    return parsed.hostname if parsed is not None else None


def find_source(url: str, sources: Iterable[Source]) -> Source | None:
    """First source whose base URL shares ``url``'s hostname."""
    host = hostname(url)
    if host is None:
        return None
    for source in sources:
        if hostname(source.url) == host:
            return source
    return None


def is_included(url: str, sources: Iterable[Source]) -> bool:
    """Decide whether ``url`` belongs to one of ``sources`` and should be crawled.

    Excludes win over includes; an empty include list admits every path of
    the owning source.
    """
    source = find_source(url, sources)
    if source is None:
        return False

    path = url_path(url)
    if path is None:
        return False

    try:
        if any(pattern.search(path) for pattern in source.exclude_patterns):
            logger.debug("Excluded by pattern: %s", url)
            return False

        if source.include_patterns:
            if not any(_include_regex(pattern).search(path) for pattern in source.include_patterns):
                logger.debug("Not matched by any include pattern: %s", url)
                return False
    except re.error as exc:
        logger.warning("Invalid pattern for source %s: %s", source.name, exc)
        return False

    return True


def wildcard_to_regex(pattern: str) -> str:
    """Translate ``*`` and ``?`` wildcards into a regex anchored at the path start."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "^" + "".join(parts)


def _include_regex(pattern: Pattern) -> re.Pattern:
    if isinstance(pattern, str):
        return _compile_wildcard(pattern)
    return pattern


@lru_cache(maxsize=256)
def _compile_wildcard(pattern: str) -> re.Pattern:
    return re.compile(wildcard_to_regex(pattern))


def _split(url: str, quiet: bool = False):
    try:
        parsed = urlsplit(url)
        # Accessing .port validates it and raises ValueError when malformed.
        parsed.port
    except (ValueError, TypeError, AttributeError) as exc:
        if not quiet:
            logger.warning("Failed to parse URL %r: %s", url, exc)
        return None
    if not parsed.scheme or not parsed.hostname:
        if not quiet:
            logger.warning("Failed to parse URL %r: missing scheme or host", url)
        return None
    return parsed


def _netloc(parsed) -> str:
    host = parsed.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port = parsed.port
    if port is None or port == DEFAULT_PORTS.get(parsed.scheme):
        return host
    return f"{host}:{port}"


__all__ = [
    "find_source",
    "hostname",
    "is_included",
    "normalize_url",
    "resolve_link",
    "url_path",
    "url_without_fragment",
    "wildcard_to_regex",
]
