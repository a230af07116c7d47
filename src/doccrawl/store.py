"""Durable per-source JSON document stores and the debounced write pipeline."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any

import aiofiles
import aiofiles.os
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .config import CrawlerConfig, Source
from .errors import LockTimeoutError, StoreError

logger = logging.getLogger(__name__)

FILE_ENCODING = "utf-8"
UNTITLED = "Untitled"
STORE_KEYS = {"source", "lastUpdated", "pages"}

# Older stores were written as a JavaScript module around the JSON document.
_LEGACY_MODULE_RE = re.compile(r"^\s*export\s+default\s*(\{.*\})\s*;?\s*$", re.DOTALL)

IDLE = "idle"
SCHEDULED = "scheduled"
FLUSHING = "flushing"

SimilarityCheck = Callable[[str, str], bool]


@dataclass(frozen=True)
class PageRecord:
    title: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "content": self.content}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _now_ms() -> int:
    return int(time.time() * 1000)


# --- Similarity ---


def is_similar_content(first: str, second: str) -> bool:
    """Cheap near-duplicate test on whitespace tokens longer than three characters.

    Word counts may differ by at most 30% of the first text, and at least 70%
    of the second text's significant words must also occur in the first.
    """
    if not first or not second:
        return False
    if first == second:
        return True

    words1 = [word for word in first.split() if len(word) > 3]
    words2 = [word for word in second.split() if len(word) > 3]
    if not words2:
        return False
    if abs(len(words1) - len(words2)) > len(words1) * 0.3:
        return False

    vocabulary = set(words1)
    common = sum(1 for word in words2 if word in vocabulary)
    return common >= len(words2) * 0.7


def find_similar_page(
    pages: dict[str, Any],
    url: str,
    record: PageRecord,
    similar: SimilarityCheck = is_similar_content,
) -> str | None:
    """Key of another stored page with the same title and similar content."""
    for existing_url, existing in pages.items():
        if existing_url == url or not isinstance(existing, dict):
            continue
        if existing.get("title") == record.title and similar(
            record.content, existing.get("content") or ""
        ):
            return existing_url
    return None


# --- Document shape ---


def empty_store(source: Source) -> dict[str, Any]:
    return {
        "source": {"name": source.name, "url": source.url},
        "lastUpdated": _utcnow_iso(),
        "pages": {},
    }


def parse_store(text: str, source: Source) -> dict[str, Any] | None:
    """Parse store file contents, or None when the format is not recognized."""
    parsed = _parse_json_object(text)
    if parsed is None:
        match = _LEGACY_MODULE_RE.match(text)
        if match:
            parsed = _parse_json_object(match.group(1))
            if parsed is not None:
                logger.info("Loaded legacy module-format store for %s", source.name)
    if parsed is None:
        return None

    if not _is_store_shape(parsed):
        logger.warning("Store for %s does not have the expected shape", source.name)
        return None
    return {
        "source": parsed["source"],
        "lastUpdated": _utcnow_iso(),
        "pages": parsed["pages"],
    }


def _is_store_shape(parsed: dict[str, Any]) -> bool:
    if set(parsed) - STORE_KEYS:
        return False
    src = parsed.get("source")
    if not isinstance(src, dict) or not _has_strings(src, "name", "url"):
        return False
    if not isinstance(parsed.get("lastUpdated", ""), str):
        return False
    pages = parsed.get("pages")
    if not isinstance(pages, dict):
        return False
    return all(isinstance(page, dict) and _has_strings(page, "title", "content") for page in pages.values())


def _has_strings(mapping: dict[str, Any], *keys: str) -> bool:
    return all(isinstance(mapping.get(key), str) for key in keys)


def _parse_json_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def serialize_store(document: dict[str, Any], source: Source) -> bytes:
    """Encode ``document``, dropping unserializable pages rather than failing."""
    try:
        return _dumps(document)
    except (TypeError, ValueError) as exc:
        logger.error("Serializing store for %s failed, dropping bad pages: %s", source.name, exc)

    safe = {
        "source": {"name": source.name, "url": source.url},
        "lastUpdated": _utcnow_iso(),
        "pages": {},
    }
    if isinstance(document.get("source"), dict):
        try:
            _dumps(document["source"])
            safe["source"] = document["source"]
        except (TypeError, ValueError):
            pass
    for url, page in (document.get("pages") or {}).items():
        try:
            _dumps({url: page})
        except (TypeError, ValueError) as exc:
            logger.warning("Page %s cannot be serialized and is skipped: %s", url, exc)
            continue
        safe["pages"][url] = page

    try:
        return _dumps(safe)
    except (TypeError, ValueError) as exc:
        logger.error("Recovering store for %s failed, writing it empty: %s", source.name, exc)
        return _dumps(empty_store(source))


def _dumps(data: Any) -> bytes:
    return json.dumps(data, ensure_ascii=False, indent=2).encode(FILE_ENCODING)


def _coerce_page(record: PageRecord) -> dict[str, str]:
    return {
        "title": str(record.title) if record.title else UNTITLED,
        "content": str(record.content) if record.content else "",
    }


# --- Locking ---


class StoreLock:
    """Exclusive access to one store file.

    Writers in this process serialize on an ``asyncio.Lock``; other processes
    are kept out by a ``<store>.lock`` file created with ``O_EXCL``. A lock
    file older than ``stale_ms`` is treated as abandoned and reclaimed.
    """

    def __init__(
        self,
        path: str,
        local_lock: asyncio.Lock,
        stale_ms: int,
        retry_ms: int,
        timeout_ms: int,
    ) -> None:
        self.path = path
        self.lock_path = f"{path}.lock"
        self._local_lock = local_lock
        self._stale_ms = stale_ms
        self._retry_ms = retry_ms
        self._timeout_ms = timeout_ms

    async def __aenter__(self) -> StoreLock:
        await self._local_lock.acquire()
        try:
            await self._acquire_file()
        except BaseException:
            self._local_lock.release()
            raise
        return self

    async def __aexit__(self, _exc_type, _exc, _tb) -> bool:
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove lock %s: %s", self.lock_path, exc)
        finally:
            self._local_lock.release()
        return False

    async def _acquire_file(self) -> None:
        deadline = time.monotonic() + self._timeout_ms / 1000
        while True:
            if self._try_create():
                return
            age_ms = self._age_ms()
            if age_ms is not None and age_ms > self._stale_ms:
                logger.warning("Reclaiming stale lock %s (age %d ms)", self.lock_path, age_ms)
                try:
                    os.unlink(self.lock_path)
                except FileNotFoundError:
                    pass
                continue
            if time.monotonic() >= deadline:
                raise LockTimeoutError(f"timed out waiting for {self.lock_path}")
            logger.info("Waiting for lock %s", self.lock_path)
            await asyncio.sleep(self._retry_ms / 1000)

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(_now_ms()))
        return True

    def _age_ms(self) -> int | None:
        try:
            mtime = os.stat(self.lock_path).st_mtime
        except FileNotFoundError:
            return None
        return int((time.time() - mtime) * 1000)


# --- Pipeline ---


class StorePipeline:
    """Buffers crawled pages and merges them into per-source store files.

    Each source has at most one flush task, moving through
    ``idle -> scheduled -> flushing -> idle``. Saves arriving while a task
    exists attach to it; pages that arrive during a flush get one more
    debounce window in the same task.
    """

    def __init__(self, config: CrawlerConfig, similar: SimilarityCheck = is_similar_content) -> None:
        self.config = config
        self.similar = similar
        self._sources: dict[str, Source] = {}
        self._cache: dict[str, dict[str, PageRecord]] = {}
        self._pending: dict[str, set[str]] = {}
        self._states: dict[str, str] = {}
        self._flushes: dict[str, asyncio.Task] = {}
        self._path_locks: dict[str, asyncio.Lock] = {}

    def state(self, source: Source) -> str:
        return self._states.get(source.key, IDLE)

    def pending_urls(self, source: Source) -> set[str]:
        return set(self._pending.get(source.key, ()))

    def save_page(self, source: Source, url: str, record: PageRecord) -> Awaitable[None]:
        """Buffer ``record`` and make sure a flush for ``source`` is scheduled."""
        key = source.key
        self._sources[key] = source
        self._cache.setdefault(key, {})[url] = record
        self._pending.setdefault(key, set()).add(url)

        task = self._flushes.get(key)
        if task is not None:
            return task

        self._states[key] = SCHEDULED
        task = asyncio.create_task(self._flush_loop(key))
        self._flushes[key] = task
        return task

    async def drain(self) -> None:
        """Wait until every scheduled or running flush has finished."""
        while self._flushes:
            await asyncio.gather(*list(self._flushes.values()), return_exceptions=True)

    async def _flush_loop(self, key: str) -> None:
        source = self._sources[key]
        try:
            while True:
                await asyncio.sleep(self.config.save_debounce_ms / 1000)
                self._states[key] = FLUSHING
                batch = set(self._pending.get(key, ()))
                await self._flush_with_retry(source)
                if not self._pending.get(key, set()) - batch:
                    break
                self._states[key] = SCHEDULED
        finally:
            self._states[key] = IDLE
            self._flushes.pop(key, None)

    async def _flush_with_retry(self, source: Source) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.config.save_retry_delay_ms / 1000),
            retry=retry_if_exception_type((OSError, StoreError)),
            before_sleep=partial(_log_failed_save, source),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.perform_save(source)
                    if attempt.retry_state.attempt_number > 1:
                        logger.info("Retried save for %s succeeded", source.name)
        except (OSError, StoreError) as exc:
            logger.error("Retried save for %s failed: %s", source.name, exc)
            await self._write_emergency_backup(source)

    async def perform_save(self, source: Source) -> int:
        """Merge pending pages of ``source`` into its store file.

        Returns the number of pages written. Raises ``StoreError`` or
        ``OSError`` when the file cannot be locked or written; pending pages
        are kept in that case.
        """
        key = source.key
        path = self.config.store_path(source)
        await aiofiles.os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

        lock = StoreLock(
            path,
            self._path_locks.setdefault(path, asyncio.Lock()),
            stale_ms=self.config.lock_stale_ms,
            retry_ms=self.config.lock_retry_ms,
            timeout_ms=self.config.lock_timeout_ms,
        )
        async with lock:
            batch = sorted(self._pending.get(key, ()))
            if not batch:
                logger.debug("No pending pages for %s", source.name)
                return 0

            document = await self.load_store(source)
            pages = document["pages"]
            cache = self._cache.get(key, {})
            updated = 0
            for url in batch:
                record = cache.get(url)
                if record is None:
                    continue
                page = _coerce_page(record)
                similar_url = find_similar_page(pages, url, PageRecord(**page), self.similar)
                if similar_url is not None:
                    logger.info("Skipping %s: similar to %s", url, similar_url)
                    continue
                if pages.get(url) == page:
                    continue
                pages[url] = page
                updated += 1

            if updated:
                document["lastUpdated"] = _utcnow_iso()
                await self._write_atomic(path, serialize_store(document, source))
                logger.info(
                    "Saved %d pages for %s, %d total: %s", updated, source.name, len(pages), path
                )
            else:
                logger.info("No changed pages for %s, skipping write", source.name)

            self._pending[key].difference_update(batch)
            return updated

    async def load_store(self, source: Source) -> dict[str, Any]:
        """Existing store contents, or an empty store when absent or unreadable."""
        path = self.config.store_path(source)
        if not await aiofiles.os.path.exists(path):
            return empty_store(source)

        try:
            async with aiofiles.open(path, mode="r", encoding=FILE_ENCODING) as f:
                text = await f.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read store %s: %s", path, exc)
            text = None

        document = parse_store(text, source) if text is not None else None
        if document is not None:
            logger.debug("Loaded %d pages from %s", len(document["pages"]), path)
            return document

        backup_path = f"{path}.error-{_now_ms()}.bak"
        try:
            await asyncio.to_thread(shutil.copyfile, path, backup_path)
            logger.warning("Unreadable store %s backed up to %s", path, backup_path)
        except OSError as exc:
            logger.warning("Failed to back up unreadable store %s: %s", path, exc)
        return empty_store(source)

    async def _write_atomic(self, path: str, data: bytes) -> None:
        temp_path = f"{path}.new"
        backup_path = f"{path}.bak"
        if await aiofiles.os.path.exists(path):
            await asyncio.to_thread(shutil.copyfile, path, backup_path)

        async with aiofiles.open(temp_path, mode="wb") as f:
            await f.write(data)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(temp_path, path)

        try:
            await aiofiles.os.remove(backup_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove backup %s: %s", backup_path, exc)

    async def _write_emergency_backup(self, source: Source) -> str | None:
        path = f"{self.config.store_path(source)}.backup-{_now_ms()}.json"
        document = empty_store(source)
        for url, record in self._cache.get(source.key, {}).items():
            document["pages"][url] = _coerce_page(record)
        try:
            async with aiofiles.open(path, mode="wb") as f:
                await f.write(serialize_store(document, source))
        except OSError as exc:
            logger.error("Emergency backup for %s failed: %s", source.name, exc)
            return None
        logger.warning("Emergency backup for %s written to %s", source.name, path)
        return path


def _log_failed_save(source: Source, retry_state: RetryCallState) -> None:
    logger.error("Saving %s failed, retrying: %s", source.name, retry_state.outcome.exception())


__all__ = [
    "PageRecord",
    "StoreLock",
    "StorePipeline",
    "empty_store",
    "find_similar_page",
    "is_similar_content",
    "parse_store",
    "serialize_store",
]
