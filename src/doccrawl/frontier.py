"""In-memory URL frontier: task groups, pending entries and the in-flight set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import Source
from .store import PageRecord
from .urls import find_source, normalize_url

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
FAILED = "failed"

GROUP_PENDING = "pending"
GROUP_RUNNING = "running"
GROUP_DONE = "done"
GROUP_CANCELLED = "cancelled"


@dataclass
class PendingEntry:
    url: str
    status: str = PENDING
    retry_count: int = 0
    last_retry_time: float | None = None
    error: str | None = None


@dataclass
class TaskGroup:
    """Crawl state of one source for the duration of a run."""

    source: Source
    pages: dict[str, PageRecord] = field(default_factory=dict)
    pending: dict[str, PendingEntry] = field(default_factory=dict)
    status: str = GROUP_PENDING

    @property
    def name(self) -> str:
        return self.source.name


class Frontier:
    """Pending, in-flight and completed URLs for every registered source.

    All mutation happens on the event loop thread without awaiting, so each
    call is atomic with respect to the dispatch tasks.
    """

    def __init__(self) -> None:
        self.groups: dict[str, TaskGroup] = {}
        # Normalized URLs currently being crawled, across all groups.
        self.processing: set[str] = set()

    def add_source(self, source: Source) -> TaskGroup:
        if source.key in self.groups:
            raise ValueError(f"source {source.name!r} is already registered")
        group = TaskGroup(source=source)
        self.groups[source.key] = group
        self.enqueue(group, source.url)
        logger.info("Added source %s (%s)", source.name, source.url)
        return group

    @property
    def sources(self) -> list[Source]:
        return [group.source for group in self.groups.values()]

    def group_for(self, url: str) -> TaskGroup | None:
        source = find_source(url, self.sources)
        return self.groups[source.key] if source is not None else None

    def is_done(self, group: TaskGroup, url: str) -> bool:
        norm_url = normalize_url(url)
        return norm_url in group.pages or norm_url in self.processing

    def enqueue(self, group: TaskGroup, url: str) -> bool:
        if self.is_done(group, url) or url in group.pending:
            return False
        group.pending[url] = PendingEntry(url=url)
        return True

    def claim(self, group: TaskGroup, url: str) -> PendingEntry | None:
        """Move ``url`` from pending to in-flight.

        Returns None when another raw form of the same page is already done
        or in flight; the entry is dropped in that case.
        """
        entry = group.pending.pop(url, None)
        if entry is None:
            return None
        if self.is_done(group, url):
            logger.debug("Skipping %s: already crawled or in flight", url)
            return None
        entry.status = PROCESSING
        self.processing.add(normalize_url(url))
        return entry

    def claim_next(self, limit: int) -> list[tuple[TaskGroup, PendingEntry]]:
        claimed: list[tuple[TaskGroup, PendingEntry]] = []
        for group in self.groups.values():
            for url in list(group.pending):
                if len(claimed) >= limit:
                    return claimed
                entry = self.claim(group, url)
                if entry is not None:
                    claimed.append((group, entry))
        return claimed

    def release(self, url: str) -> None:
        self.processing.discard(normalize_url(url))

    @property
    def in_flight(self) -> int:
        return len(self.processing)

    @property
    def has_pending(self) -> bool:
        return any(group.pending for group in self.groups.values())

    @property
    def has_work(self) -> bool:
        return self.has_pending or bool(self.processing)

    def page_counts(self) -> dict[str, int]:
        return {group.name: len(group.pages) for group in self.groups.values()}


__all__ = ["Frontier", "PendingEntry", "TaskGroup"]
