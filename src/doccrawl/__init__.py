"""Incremental documentation crawler persisting pages to per-source JSON stores."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from .config import CrawlerConfig, Source, load_config, validate_config
from .errors import (
    CrawlerError,
    LockTimeoutError,
    RenderError,
    RendererInitError,
    SessionDetachedError,
    StoreError,
)
from .frontier import Frontier, PendingEntry, TaskGroup
from .renderer import PlaywrightRenderer, RenderedPage, Renderer
from .scheduler import Scheduler
from .store import PageRecord, StorePipeline, is_similar_content
from .urls import is_included, normalize_url, url_without_fragment

logger = logging.getLogger(__name__)


def doccrawl(
    sources: Iterable[Source],
    config: CrawlerConfig | None = None,
    renderer: Renderer | None = None,
) -> dict[str, int]:
    """Run one crawl to completion.

    Args:
        sources: Documentation sites to crawl; names must be unique ignoring case.
        config: Crawler settings. Defaults to ``CrawlerConfig()``.
        renderer: Page renderer. Defaults to a headless ``PlaywrightRenderer``.

    Returns:
        Number of pages crawled per source name, error pages included.
    """
    return asyncio.run(crawl(sources, config=config, renderer=renderer))


async def crawl(
    sources: Iterable[Source],
    config: CrawlerConfig | None = None,
    renderer: Renderer | None = None,
    stop_event: asyncio.Event | None = None,
) -> dict[str, int]:
    config = config or CrawlerConfig()
    validate_config(config)

    frontier = Frontier()
    for source in sources:
        frontier.add_source(source)

    pipeline = StorePipeline(config)
    if renderer is None:
        renderer = PlaywrightRenderer(config)

    try:
        async with renderer:
            scheduler = Scheduler(frontier, renderer, pipeline, config)
            await scheduler.run(stop_event)
    finally:
        # Pages crawled before a fatal error still reach disk.
        await pipeline.drain()

    counts = frontier.page_counts()
    logger.info("Crawl finished, %d pages in total", sum(counts.values()))
    for name, count in counts.items():
        logger.info("- %s: %d pages", name, count)
    return counts


__all__ = [
    "CrawlerConfig",
    "CrawlerError",
    "Frontier",
    "LockTimeoutError",
    "PageRecord",
    "PendingEntry",
    "PlaywrightRenderer",
    "RenderError",
    "RenderedPage",
    "Renderer",
    "RendererInitError",
    "Scheduler",
    "SessionDetachedError",
    "Source",
    "StoreError",
    "StorePipeline",
    "TaskGroup",
    "crawl",
    "doccrawl",
    "is_included",
    "is_similar_content",
    "load_config",
    "normalize_url",
    "url_without_fragment",
]
