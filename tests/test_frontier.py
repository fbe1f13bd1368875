import pytest

from crawler.frontier import (
    Frontier,
    best_entry,
    estimate_url_priority,
    filter_links,
    from_archived_links,
    generate_pagination_seeds,
    is_external_apply_url,
    repopulate,
    reseed_start_url,
)
from crawler.models import CrawlState, FrontierEntry


def _state(max_depth=999):
    return CrawlState(start_url="https://example.com/jobs", source_domain="example.com", max_depth=max_depth)


def test_push_dedupes_on_normalized_key():
    state = _state()
    f = Frontier(state)
    assert f.push("https://example.com/jobs/1-a", 1)
    assert not f.push("https://EXAMPLE.com/jobs/1-a/", 1)
    assert not f.push("https://example.com/jobs/1-a?utm_source=feed#apply", 2)
    assert len(f) == 1

    f.mark_seen("https://example.com/jobs/2-b")
    assert not f.push("https://example.com/jobs/2-b", 1)
    assert not f.push("ftp://example.com/x", 1)


def test_push_respects_max_depth():
    f = Frontier(_state(max_depth=2))
    assert f.push("https://example.com/a", 2)
    assert not f.push("https://example.com/b", 3)


def test_best_entry_prefers_priority_then_fifo_and_skips_seen():
    state = _state()
    f = Frontier(state)
    f.push("https://example.com/about", 1, 50)
    f.push("https://example.com/jobs", 0, 90)
    f.push("https://example.com/jobs/search", 1, 90)
    assert best_entry(state).url == "https://example.com/jobs"

    state.url_seen.add("https://example.com/jobs")
    assert f.peek_best().url == "https://example.com/jobs/search"

    popped = f.pop_best()
    assert popped.url == "https://example.com/jobs/search"
    assert [e.url for e in state.frontier] == ["https://example.com/about", "https://example.com/jobs"]


def test_take_unsee_and_purge():
    state = _state()
    f = Frontier(state)
    f.push("https://example.com/a", 1)
    state.frontier.append(FrontierEntry("https://example.com/a/", 2))
    assert f.take("https://example.com/a").depth == 1
    assert f.is_queued("https://example.com/a")
    assert f.purge("https://example.com/a") == 1
    assert not f.is_queued("https://example.com/a")

    f.mark_seen("https://example.com/a")
    assert f.is_seen("https://example.com/a")
    f.unsee("https://example.com/a")
    assert not f.is_seen("https://example.com/a")


def test_filter_links_scope_and_depth():
    state = _state()
    state.url_seen.add("https://example.com/jobs/9-seen")
    queued = [FrontierEntry("https://example.com/jobs/8-queued", 1)]
    out = filter_links(
        [
            "https://example.com/jobs/1-engineer",
            "https://example.com/jobs/9-seen",
            "https://example.com/jobs/8-queued/",
            "https://other.org/jobs/2-x",
            "https://example.com/login",
            "https://example.com/company/login-startup",
            "https://example.com/static/app.js",
            "https://example.com/logo.png",
            "https://example.com/_next/data/x",
            "mailto:hr@example.com",
            "https://example.com/jobs/1-engineer#apply",
        ],
        source_domain="example.com",
        url_seen=state.url_seen,
        frontier=queued,
        current_depth=2,
        max_depth=5,
    )
    assert [e.url for e in out] == [
        "https://example.com/jobs/1-engineer",
        "https://example.com/company/login-startup",
    ]
    assert all(e.depth == 3 for e in out)

    assert filter_links(
        ["https://example.com/jobs/1-engineer"],
        source_domain="example.com",
        url_seen=set(),
        frontier=[],
        current_depth=5,
        max_depth=5,
    ) == []


def test_filter_links_accepts_subdomains_and_drops_ats():
    out = filter_links(
        ["https://www.example.com/jobs", "https://example.greenhouse.io/jobs/1"],
        source_domain="example.com",
        url_seen=set(),
        frontier=[],
        current_depth=0,
        max_depth=3,
    )
    assert [e.url for e in out] == ["https://www.example.com/jobs"]
    assert is_external_apply_url("https://jobs.lever.co/acme/123")
    assert not is_external_apply_url("https://example.com/jobs/123")


def test_url_priorities():
    assert estimate_url_priority("https://x.com/jobs") == 90
    assert estimate_url_priority("https://x.com/jobs/search/") == 90
    assert estimate_url_priority("https://x.com/company/acme/jobs") == 85
    assert estimate_url_priority("https://x.com/company/acme") == 80
    assert estimate_url_priority("https://x.com/remote?page=3") == 75
    assert estimate_url_priority("https://x.com/role/engineering") == 70
    assert estimate_url_priority("https://x.com/jobs/123-backend-engineer") == 40
    assert estimate_url_priority("https://x.com/about") == 50


def test_pagination_seeds():
    seeds = generate_pagination_seeds("https://x.com/jobs?role=eng&page=1", 3)
    assert seeds == [
        "https://x.com/jobs?role=eng&page=2",
        "https://x.com/jobs?role=eng&page=3",
        "https://x.com/jobs?role=eng&page=4",
    ]
    assert len(generate_pagination_seeds("https://x.com/company/acme/jobs", 100)) == 30
    assert generate_pagination_seeds("https://x.com/jobs/123-engineer", 5) == []
    assert generate_pagination_seeds("https://x.com/jobs", 0) == []


def test_repopulate_prefers_archived_links():
    state = _state()
    f = Frontier(state)
    state.url_seen.add("https://example.com/jobs")
    archived = from_archived_links(lambda: [["https://example.com/jobs/5-a", "https://other.org/x"], ["https://example.com/jobs/6-b"]])

    added = repopulate(state, f, [archived, reseed_start_url])
    assert added == 2
    assert {e.url for e in state.frontier} == {"https://example.com/jobs/5-a", "https://example.com/jobs/6-b"}
    # start URL stays seen since the first strategy succeeded
    assert f.is_seen("https://example.com/jobs")


def test_repopulate_falls_back_to_start_url():
    state = _state()
    f = Frontier(state)
    state.url_seen.add("https://example.com/jobs")

    def boom(state, frontier):
        raise RuntimeError("archive unreadable")

    empty = from_archived_links(lambda: [])
    assert repopulate(state, f, [boom, empty, reseed_start_url]) == 1
    assert state.frontier[0].url == "https://example.com/jobs"
    assert state.frontier[0].depth == 0
    assert not f.is_seen("https://example.com/jobs")


def test_repopulate_returns_zero_when_nothing_helps():
    state = _state()
    f = Frontier(state)
    assert repopulate(state, f, [from_archived_links(lambda: [])]) == 0
