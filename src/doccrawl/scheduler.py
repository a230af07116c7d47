"""Bounded-concurrency crawl loop with retries and link discovery."""

from __future__ import annotations

import asyncio
import logging
import time
from functools import partial

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from .config import CrawlerConfig
from .errors import RendererInitError
from .frontier import (
    FAILED,
    GROUP_CANCELLED,
    GROUP_DONE,
    GROUP_RUNNING,
    Frontier,
    PendingEntry,
    TaskGroup,
)
from .renderer import RenderedPage, Renderer, is_detached_error
from .store import PageRecord, StorePipeline
from .urls import is_included, normalize_url, resolve_link

logger = logging.getLogger(__name__)

ERROR_TITLE_PREFIX = "crawl failed: "

# Cancellation and other BaseExceptions are never retried.
RETRYABLE = retry_if_exception_type(Exception) & retry_if_not_exception_type(RendererInitError)


class Scheduler:
    def __init__(
        self,
        frontier: Frontier,
        renderer: Renderer,
        pipeline: StorePipeline,
        config: CrawlerConfig,
    ) -> None:
        self.frontier = frontier
        self.renderer = renderer
        self.pipeline = pipeline
        self.config = config

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Crawl until no group has pending or in-flight URLs.

        Setting ``stop_event`` stops new URLs from being claimed; URLs already
        in flight still finish. A ``RendererInitError`` from any dispatch
        cancels the rest and propagates.
        """
        for group in self.frontier.groups.values():
            group.status = GROUP_RUNNING

        tasks: set[asyncio.Task] = set()
        try:
            while True:
                if stop_event is None or not stop_event.is_set():
                    slots = self.config.max_concurrency - self.frontier.in_flight
                    for group, entry in self.frontier.claim_next(slots):
                        tasks.add(asyncio.create_task(self._dispatch(group, entry)))

                if not tasks:
                    break

                done, tasks = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                # Retrieve every outcome so no failed task goes unobserved.
                failures = [exc for exc in (task.exception() for task in done) if exc is not None]
                if failures:
                    raise failures[0]
        finally:
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        stopped = stop_event is not None and stop_event.is_set()
        for group in self.frontier.groups.values():
            group.status = GROUP_CANCELLED if stopped and group.pending else GROUP_DONE

    async def _dispatch(self, group: TaskGroup, entry: PendingEntry) -> None:
        norm_url = normalize_url(entry.url)
        try:
            rendered = await self._render_with_retries(group, entry, norm_url)
            if rendered is not None:
                self._record(group, norm_url, PageRecord(rendered.title, rendered.content))
                self._discover_links(entry.url, rendered.links)
        finally:
            self.frontier.release(entry.url)

    async def _render_with_retries(
        self, group: TaskGroup, entry: PendingEntry, norm_url: str
    ) -> RenderedPage | None:
        """Render ``entry`` holding its in-flight slot across attempts.

        Returns None once attempts run out; an error page is recorded instead.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=self._retry_wait,
            retry=RETRYABLE,
            after=partial(_mark_failed, entry),
            before_sleep=partial(_log_retry, entry),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    logger.info(
                        "Crawling %s - %s (in flight: %d, retry: %d)",
                        group.name,
                        entry.url,
                        self.frontier.in_flight,
                        entry.retry_count,
                    )
                    if self.config.request_delay_ms:
                        await asyncio.sleep(self.config.request_delay_ms / 1000)
                    return await self.renderer.fetch_and_render(entry.url)
        except RendererInitError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Giving up on %s after %d attempts: %s", entry.url, entry.retry_count, exc
            )
            self._record(
                group,
                norm_url,
                PageRecord(f"{ERROR_TITLE_PREFIX}{entry.url}", str(exc) or repr(exc)),
            )
        return None

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        return self._retry_delay_ms(retry_state.attempt_number, exc) / 1000

    def _retry_delay_ms(self, retry_count: int, exc: BaseException) -> int:
        if is_detached_error(exc):
            return retry_count * self.config.detached_retry_delay_ms
        return retry_count * self.config.retry_delay_ms

    def _record(self, group: TaskGroup, norm_url: str, record: PageRecord) -> None:
        group.pages[norm_url] = record
        self.pipeline.save_page(group.source, norm_url, record)

    def _discover_links(self, page_url: str, raw_links: list[str]) -> None:
        sources = self.frontier.sources
        added = 0
        for raw in raw_links:
            link = resolve_link(page_url, raw)
            if link is None or not is_included(link, sources):
                continue
            owner = self.frontier.group_for(link)
            if owner is not None and self.frontier.enqueue(owner, link):
                added += 1
        if added:
            logger.info("Discovered %d new links on %s", added, page_url)


def _mark_failed(entry: PendingEntry, retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception()
    entry.retry_count = retry_state.attempt_number
    entry.status = FAILED
    entry.error = str(exc)
    entry.last_retry_time = time.time()


def _log_retry(entry: PendingEntry, retry_state: RetryCallState) -> None:
    logger.warning(
        "Failed to crawl %s, retrying in %.1fs: %s",
        entry.url,
        retry_state.next_action.sleep,
        retry_state.outcome.exception(),
    )


__all__ = ["ERROR_TITLE_PREFIX", "Scheduler"]
