"""Renderer interface and the default Playwright implementation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urljoin

from lxml import html
from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright

from .config import CrawlerConfig
from .errors import RenderError, RendererInitError, SessionDetachedError

logger = logging.getLogger(__name__)

CONTENT_XPATHS = (
    "//*[contains(concat(' ', normalize-space(@class), ' '), ' markdown-body ')]",
    "//*[contains(concat(' ', normalize-space(@class), ' '), ' doc-content ')]",
    "//article",
    "//main",
    "//*[contains(concat(' ', normalize-space(@class), ' '), ' content ')]",
)
LINK_ATTRIBUTES = ("href", "data-href", "data-url", "data-link")
NON_NAVIGATION_TAGS = {"link", "base"}
_DETACHED_MARKERS = ("detached", "target closed", "target page, context or browser has been closed")
_WHITESPACE_RE = re.compile(r"\s+")
SCROLL_HEIGHT_JS = "document.body.scrollHeight"
SCROLL_TO_END_JS = "window.scrollTo(0, document.body.scrollHeight)"


@dataclass
class RenderedPage:
    title: str
    content: str
    links: list[str] = field(default_factory=list)


class Renderer(Protocol):
    """Turns a URL into extracted page text and links.

    Entering the context starts the rendering session and raises
    ``RendererInitError`` if that is impossible. Each ``fetch_and_render``
    call uses its own page.
    """

    async def __aenter__(self) -> Renderer: ...

    async def __aexit__(self, exc_type, exc, tb) -> bool | None: ...

    async def fetch_and_render(self, url: str) -> RenderedPage: ...


def is_detached_error(exc: BaseException) -> bool:
    if isinstance(exc, SessionDetachedError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _DETACHED_MARKERS)


class PlaywrightRenderer:
    """Headless Chromium renderer; one browser context per run, one page per fetch."""

    def __init__(self, config: CrawlerConfig) -> None:
        self.config = config
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None

    async def __aenter__(self) -> PlaywrightRenderer:
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
            self._context = await self._browser.new_context(
                viewport=self.config.viewport,
                user_agent=self.config.user_agent,
            )
        except Exception as exc:  # noqa: BLE001
            await self.close()
            raise RendererInitError(f"failed to start browser: {exc}") from exc
        logger.info("Browser started")
        return self

    async def __aexit__(self, _exc_type, _exc, _tb) -> bool:
        await self.close()
        return False

    async def close(self) -> None:
        for resource in (self._context, self._browser):
            if resource is not None:
                try:
                    await resource.close()
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to close browser resource: %s", exc)
        if self._playwright is not None:
            await self._playwright.stop()
        self._context = self._browser = self._playwright = None

    async def fetch_and_render(self, url: str) -> RenderedPage:
        if self._context is None:
            raise RendererInitError("renderer used before it was started")

        try:
            page = await self._context.new_page()
        except Exception as exc:  # noqa: BLE001
            raise _classify(exc, url) from exc

        try:
            page.set_default_timeout(self.config.page_load_timeout_ms)
            if self.config.block_resources:
                await page.route("**/*", self._route_handler)

            response = await page.goto(url, wait_until="domcontentloaded")
            if response is None:
                raise RenderError(f"no response for {url}")

            await self._scroll_to_end(page)

            content = await page.content()
            return extract_page(content, page.url)
        except RenderError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise _classify(exc, url) from exc
        finally:
            try:
                await page.close()
            except Exception:  # noqa: BLE001
                pass

    async def _route_handler(self, route: Route) -> None:
        if route.request.resource_type in self.config.block_resources:
            await route.abort()
        else:
            await route.continue_()

    async def _scroll_to_end(self, page: Page) -> None:
        """Scroll until the document stops growing or ``scroll_rounds`` runs out."""
        if self.config.scroll_rounds <= 0:
            return
        height = await _scroll_height(page)
        rounds = 0
        while height is not None and rounds < self.config.scroll_rounds:
            rounds += 1
            try:
                await page.evaluate(SCROLL_TO_END_JS)
                await page.wait_for_timeout(self.config.scroll_wait_ms)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Stopped scrolling %s: %s", page.url, exc)
                return
            grown = await _scroll_height(page)
            if grown is None or grown <= height:
                return
            height = grown


def _classify(exc: Exception, url: str) -> RenderError:
    if is_detached_error(exc):
        return SessionDetachedError(f"session detached while rendering {url}: {exc}")
    return RenderError(f"failed to render {url}: {exc}")


def extract_page(content: str | bytes, page_url: str) -> RenderedPage:
    """Title, main text and outgoing links of an HTML document."""
    try:
        document = html.fromstring(content)
    except Exception as exc:  # noqa: BLE001
        raise RenderError(f"unparseable HTML at {page_url}: {exc}") from exc

    title = _collapse(document.findtext(".//title") or "")
    links = extract_links(document, page_url)

    for element in document.xpath("//script | //style | //noscript"):
        element.drop_tree()

    root = document
    for xpath in CONTENT_XPATHS:
        matches = document.xpath(xpath)
        if matches:
            root = matches[0]
            break
    else:
        bodies = document.xpath("//body")
        if bodies:
            root = bodies[0]

    return RenderedPage(title=title, content=_collapse(root.text_content()), links=links)


def extract_links(document: html.HtmlElement, base_url: str) -> list[str]:
    """Absolute URLs of anchors and data-* link attributes, in document order."""
    seen: dict[str, None] = {}
    for attribute in LINK_ATTRIBUTES:
        for element in document.xpath(f"//*[@{attribute}]"):
            if element.tag in NON_NAVIGATION_TAGS:
                continue
            value = (element.get(attribute) or "").strip()
            if value and not value.startswith(("#", "javascript:")):
                seen.setdefault(urljoin(base_url, value), None)
    return list(seen)


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


async def _scroll_height(page: Page) -> int | None:
    try:
        return await page.evaluate(SCROLL_HEIGHT_JS)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Cannot read scroll height of %s: %s", page.url, exc)
        return None


__all__ = [
    "PlaywrightRenderer",
    "RenderedPage",
    "Renderer",
    "extract_links",
    "extract_page",
    "is_detached_error",
]
