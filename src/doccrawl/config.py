"""Crawler settings and documentation sources."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Union

import yaml

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1280, "height": 800}
DEFAULT_BLOCK_RESOURCES = frozenset({"image", "font", "media"})

# Wildcard string or a pre-compiled regular expression.
Pattern = Union[str, re.Pattern]


@dataclass(frozen=True)
class Source:
    """A documentation site and its crawl scope.

    ``include_patterns`` are wildcard strings (``*`` and ``?``) or compiled
    regexes; ``exclude_patterns`` are regexes (strings are compiled). Both are
    matched against the URL path.
    """

    name: str
    url: str
    include_patterns: tuple[Pattern, ...] = ()
    exclude_patterns: tuple[Pattern, ...] = ()

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("source name must not be empty")
        if not self.url:
            raise ValueError(f"source {self.name!r} has no url")
        # Accept lists from callers and YAML; keep the instance hashable.
        object.__setattr__(self, "include_patterns", tuple(self.include_patterns or ()))
        object.__setattr__(
            self,
            "exclude_patterns",
            tuple(
                re.compile(pattern) if isinstance(pattern, str) else pattern
                for pattern in self.exclude_patterns or ()
            ),
        )

    @property
    def key(self) -> str:
        """Case-insensitive identity of the source."""
        return self.name.lower()


@dataclass
class CrawlerConfig:
    output_dir: str = "docs"
    max_concurrency: int = 5
    max_retries: int = 3
    retry_delay_ms: int = 2000
    detached_retry_delay_ms: int = 5000
    request_delay_ms: int = 0
    page_load_timeout_ms: int = 30000
    scroll_rounds: int = 1
    scroll_wait_ms: int = 800
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    viewport: dict = field(default_factory=lambda: dict(DEFAULT_VIEWPORT))
    block_resources: frozenset[str] = DEFAULT_BLOCK_RESOURCES
    save_debounce_ms: int = 1000
    save_retry_delay_ms: int = 3000
    lock_stale_ms: int = 30000
    lock_retry_ms: int = 2000
    lock_timeout_ms: int = 60000

    def store_path(self, source: Source) -> str:
        return os.path.join(self.output_dir, f"{source.key}-docs.json")


def validate_config(config: CrawlerConfig) -> None:
    if config.max_concurrency <= 0:
        raise ValueError("max_concurrency must be > 0")
    if config.max_retries < 1:
        raise ValueError("max_retries must be >= 1")
    for name in (
        "retry_delay_ms",
        "detached_retry_delay_ms",
        "request_delay_ms",
        "save_debounce_ms",
        "save_retry_delay_ms",
        "lock_retry_ms",
    ):
        if getattr(config, name) < 0:
            raise ValueError(f"{name} must be >= 0")
    if config.page_load_timeout_ms <= 0:
        raise ValueError("page_load_timeout_ms must be > 0")
    if config.lock_stale_ms <= 0:
        raise ValueError("lock_stale_ms must be > 0")
    if config.lock_timeout_ms <= config.lock_stale_ms:
        raise ValueError("lock_timeout_ms must be > lock_stale_ms")


def load_config(config_path: str) -> tuple[CrawlerConfig, list[Source]]:
    """Read crawler settings and sources from a YAML file.

    Expected layout::

        crawler:
          max_concurrency: 5
          output_dir: docs
        sources:
          - name: Vue
            url: https://vuejs.org/guide/introduction
            include_patterns: ["/guide/*"]
            exclude_patterns: ["/api/"]

    Unknown keys are ignored.
    """
    with open(config_path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    crawler_raw: dict[str, Any] = raw.get("crawler") or {}
    known = {f.name for f in fields(CrawlerConfig)}
    config = CrawlerConfig(**{k: v for k, v in crawler_raw.items() if k in known})
    if "block_resources" in crawler_raw:
        config.block_resources = frozenset(crawler_raw["block_resources"] or ())
    validate_config(config)

    sources = [
        Source(
            name=str(src_raw["name"]),
            url=str(src_raw["url"]),
            include_patterns=tuple(src_raw.get("include_patterns") or ()),
            exclude_patterns=tuple(src_raw.get("exclude_patterns") or ()),
        )
        for src_raw in raw.get("sources") or []
    ]
    return config, sources


__all__ = ["CrawlerConfig", "Source", "load_config", "validate_config"]
