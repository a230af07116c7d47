from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import doccrawl as dc


def build_config(tmp_path: Any, **overrides: Any) -> dc.CrawlerConfig:
    """Return a CrawlerConfig with delays short enough for tests."""

    cfg = dc.CrawlerConfig(
        output_dir=str(tmp_path / "docs"),
        max_concurrency=2,
        max_retries=3,
        retry_delay_ms=1,
        detached_retry_delay_ms=2,
        request_delay_ms=0,
        page_load_timeout_ms=1_000,
        save_debounce_ms=20,
        save_retry_delay_ms=1,
        lock_stale_ms=1_000,
        lock_retry_ms=5,
        lock_timeout_ms=2_000,
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def read_store(config: dc.CrawlerConfig, source: dc.Source) -> dict:
    return json.loads(Path(config.store_path(source)).read_text(encoding="utf-8"))


class FakeRenderer:
    """Scripted renderer.

    ``outcomes`` maps a URL to a RenderedPage, an exception, or a list of
    those consumed one per call (the last one repeats).
    """

    def __init__(
        self,
        outcomes: dict[str, Any],
        delays: dict[str, float] | None = None,
        fail_start: bool = False,
    ) -> None:
        self.outcomes = outcomes
        self.delays = delays or {}
        self.fail_start = fail_start
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0
        self.closed = False

    async def __aenter__(self) -> FakeRenderer:
        if self.fail_start:
            raise dc.RendererInitError("browser executable not found")
        return self

    async def __aexit__(self, _exc_type, _exc, _tb) -> bool:
        self.closed = True
        return False

    async def fetch_and_render(self, url: str) -> dc.RenderedPage:
        self.calls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delays.get(url, 0))
            outcome = self.outcomes.get(url)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is None:
                raise dc.RenderError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
            return outcome
        finally:
            self.active -= 1


def page(title: str, content: str, links: list[str] | None = None) -> dc.RenderedPage:
    return dc.RenderedPage(title=title, content=content, links=links or [])
