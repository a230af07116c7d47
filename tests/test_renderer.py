from __future__ import annotations

import pytest

import doccrawl as dc
from doccrawl.renderer import extract_page, is_detached_error
from tests.helpers import build_config

HTML = """
<html>
  <head>
    <title>  Button | Element  </title>
    <link rel="stylesheet" href="/assets/style.css">
    <script>var tracking = 1;</script>
  </head>
  <body>
    <nav>
      <a href="/en-US/component/input">Input</a>
      <a href="#basic-usage">Basic usage</a>
      <a href="javascript:void(0)">Toggle</a>
    </nav>
    <article>
      <h1>Button</h1>
      <p>Commonly   used button.</p>
      <style>.x { color: red; }</style>
    </article>
    <div data-href="select">Select</div>
    <footer><a href="https://github.test/element">GitHub</a></footer>
  </body>
</html>
"""


def test_extract_page_reads_title_and_main_content() -> None:
    rendered = extract_page(HTML, "https://element.test/en-US/component/button")
    assert rendered.title == "Button | Element"
    assert rendered.content == "Button Commonly used button."


def test_extract_page_collects_absolute_navigation_links() -> None:
    rendered = extract_page(HTML, "https://element.test/en-US/component/button")
    assert rendered.links == [
        "https://element.test/en-US/component/input",
        "https://github.test/element",
        "https://element.test/en-US/component/select",
    ]


def test_extract_page_falls_back_to_body() -> None:
    rendered = extract_page("<html><body><p>Only body</p></body></html>", "https://x.test/")
    assert rendered.title == ""
    assert rendered.content == "Only body"


def test_extract_page_rejects_empty_documents() -> None:
    with pytest.raises(dc.RenderError):
        extract_page("", "https://x.test/")


def test_is_detached_error() -> None:
    assert is_detached_error(dc.SessionDetachedError("x"))
    assert is_detached_error(RuntimeError("Execution context was destroyed: detached Frame"))
    assert is_detached_error(RuntimeError("Target closed"))
    assert not is_detached_error(TimeoutError("Timeout 30000ms exceeded"))


class ScrollingPage:
    """Page double whose body grows by one step per scroll until ``max_height``."""

    url = "https://x.test/long"

    def __init__(self, step: int, max_height: int) -> None:
        self.height = step
        self.step = step
        self.max_height = max_height
        self.scrolls = 0
        self.waits: list[int] = []

    async def evaluate(self, script: str):
        if script.startswith("window.scrollTo"):
            self.scrolls += 1
            self.height = min(self.height + self.step, self.max_height)
            return None
        return self.height

    async def wait_for_timeout(self, ms: int) -> None:
        self.waits.append(ms)


@pytest.mark.asyncio
async def test_scrolling_stops_at_configured_rounds(tmp_path) -> None:
    config = build_config(tmp_path, scroll_rounds=3, scroll_wait_ms=7)
    page = ScrollingPage(step=100, max_height=10_000)
    await dc.PlaywrightRenderer(config)._scroll_to_end(page)
    assert page.scrolls == 3
    assert page.waits == [7, 7, 7]


@pytest.mark.asyncio
async def test_scrolling_stops_when_page_stops_growing(tmp_path) -> None:
    config = build_config(tmp_path, scroll_rounds=10)
    page = ScrollingPage(step=100, max_height=200)
    await dc.PlaywrightRenderer(config)._scroll_to_end(page)
    assert page.scrolls == 2


@pytest.mark.asyncio
async def test_scrolling_disabled_touches_nothing(tmp_path) -> None:
    config = build_config(tmp_path, scroll_rounds=0)
    page = ScrollingPage(step=100, max_height=200)
    await dc.PlaywrightRenderer(config)._scroll_to_end(page)
    assert page.scrolls == 0
