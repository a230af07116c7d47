from __future__ import annotations

import pytest

import doccrawl as dc
from doccrawl.frontier import PENDING, PROCESSING


def _frontier() -> tuple[dc.Frontier, dc.TaskGroup]:
    frontier = dc.Frontier()
    group = frontier.add_source(dc.Source(name="Docs", url="https://x.test/a"))
    return frontier, group


def test_add_source_enqueues_start_url() -> None:
    frontier, group = _frontier()
    assert list(group.pending) == ["https://x.test/a"]
    assert group.pending["https://x.test/a"].status == PENDING
    assert frontier.has_work


def test_add_source_rejects_duplicate_names_ignoring_case() -> None:
    frontier, _ = _frontier()
    with pytest.raises(ValueError):
        frontier.add_source(dc.Source(name="DOCS", url="https://y.test/"))


def test_enqueue_skips_crawled_in_flight_and_already_pending() -> None:
    frontier, group = _frontier()
    group.pages["https://x.test/done"] = dc.PageRecord("Done", "")
    frontier.processing.add("https://x.test/busy")

    assert frontier.enqueue(group, "https://x.test/done/") is False
    assert frontier.enqueue(group, "https://x.test/busy?page=2") is False
    assert frontier.enqueue(group, "https://x.test/a") is False
    assert frontier.enqueue(group, "https://x.test/new") is True
    assert frontier.enqueue(group, "https://x.test/new") is False


def test_pending_keys_keep_distinct_raw_urls() -> None:
    frontier, group = _frontier()
    assert frontier.enqueue(group, "https://x.test/b?tab=1") is True
    assert frontier.enqueue(group, "https://x.test/b?tab=2") is True
    assert len(group.pending) == 3


def test_claim_moves_entry_to_in_flight() -> None:
    frontier, group = _frontier()
    entry = frontier.claim(group, "https://x.test/a")
    assert entry is not None
    assert entry.status == PROCESSING
    assert "https://x.test/a" not in group.pending
    assert frontier.processing == {"https://x.test/a"}
    assert frontier.in_flight == 1


def test_claim_drops_duplicate_of_in_flight_page() -> None:
    frontier, group = _frontier()
    frontier.enqueue(group, "https://x.test/a/?ref=nav")
    frontier.claim(group, "https://x.test/a")

    assert frontier.claim(group, "https://x.test/a/?ref=nav") is None
    assert frontier.in_flight == 1
    assert not group.pending


def test_claim_next_respects_limit_and_dedupes() -> None:
    frontier, group = _frontier()
    for url in ["https://x.test/a/", "https://x.test/b", "https://x.test/c", "https://x.test/d"]:
        frontier.enqueue(group, url)

    claimed = frontier.claim_next(2)
    assert [entry.url for _, entry in claimed] == ["https://x.test/a", "https://x.test/b"]
    # The trailing-slash duplicate of /a was dropped, not claimed.
    assert list(group.pending) == ["https://x.test/c", "https://x.test/d"]
    assert frontier.claim_next(0) == []


def test_claim_next_never_claims_same_page_twice() -> None:
    frontier, group = _frontier()
    frontier.enqueue(group, "https://x.test/a#intro")
    frontier.enqueue(group, "https://x.test/a?x=1")
    claimed = frontier.claim_next(10)
    assert len(claimed) == 1
    assert len(frontier.processing) == 1


def test_release_frees_slot_without_requeueing() -> None:
    frontier, group = _frontier()
    frontier.claim(group, "https://x.test/a")
    frontier.release("https://x.test/a")
    assert frontier.in_flight == 0
    assert not group.pending
    assert not frontier.has_work


def test_group_for_routes_by_hostname() -> None:
    frontier, group = _frontier()
    other = frontier.add_source(dc.Source(name="Other", url="https://y.test/"))
    assert frontier.group_for("https://y.test/page") is other
    assert frontier.group_for("https://x.test/page") is group
    assert frontier.group_for("https://z.test/page") is None


def test_page_counts_by_source_name() -> None:
    frontier, group = _frontier()
    group.pages["https://x.test/a"] = dc.PageRecord("A", "")
    assert frontier.page_counts() == {"Docs": 1}
