import asyncio
import time

import pytest

from crawler.cancellation import StopToken
from crawler.frontier import Frontier
from crawler.human import HumanHandler, HumanSignals, marker_path, write_marker
from crawler.models import CrawlState, HumanKind, Source
from crawler.pipeline import VisitPipeline, VisitSettings
from crawler.utils import HumanWaitTimeout, StopRequested

from fakes import FakeExtraction, FakeSession, jobs, make_caps

W = "https://example.com/jobs?page=3"
SOURCE = Source(id="ex", name="Example", url="https://example.com/jobs", slug="example")
UNBLOCKED = '<html><body><a href="/jobs/11-sre">SRE</a><a href="/jobs?page=3">again</a></body></html>'


def _setup(stop, *, pages=None, extract=None):
    sessions = []

    async def open_session(visible=False):
        s = FakeSession(pages if pages is not None else {W: UNBLOCKED})
        s.visible = visible
        sessions.append(s)
        return s

    caps = make_caps(open_session=open_session, extract=extract)
    pipeline = VisitPipeline(caps, stop, VisitSettings(settle_min_ms=0, settle_max_ms=0))
    state = CrawlState(start_url=SOURCE.url, source_domain="example.com")
    frontier = Frontier(state)
    return caps, pipeline, state, frontier, sessions


@pytest.mark.asyncio
async def test_captcha_resolved_in_process_runs_full_pipeline():
    stop = StopToken(poll_s=0.05)
    signals = HumanSignals(poll_s=0.05)
    caps, pipeline, state, frontier, sessions = _setup(
        stop, extract=lambda html, url, hints=None: FakeExtraction(jobs("SRE", "QA"), "json_ld"),
    )
    frontier.push(W, 2, 75)
    handler = HumanHandler(caps.open_session, pipeline, signals, stop, timeout_s=5)

    loop = asyncio.get_running_loop()
    loop.call_later(0.1, signals.resolve, "ex", "captcha")
    result = await handler.handle(HumanKind.CAPTCHA, SOURCE, W, 2, state, frontier)

    assert result.ok
    assert result.jobs_count == 2
    assert result.extraction_strategy == "captcha_json_ld"
    assert sessions[0].visible is True
    assert sessions[0].navigated == [W]
    assert sessions[0].closed is True
    assert signals.pending() == []

    # discovered link queued, the blocked URL never again
    urls = [e.url for e in state.frontier]
    assert "https://example.com/jobs/11-sre" in urls
    assert not frontier.is_queued(W)
    assert not frontier.push(W, 2, 75)


@pytest.mark.asyncio
async def test_login_wall_resolved_by_marker_file(tmp_path):
    stop = StopToken(poll_s=0.05)
    signals = HumanSignals(tmp_path, poll_s=0.05)
    caps, pipeline, state, frontier, _ = _setup(stop)
    handler = HumanHandler(caps.open_session, pipeline, signals, stop, timeout_s=5)

    # stale marker from an earlier run must not short-circuit the wait
    write_marker(tmp_path, "ex", "login_wall")
    asyncio.get_running_loop().call_later(0.15, write_marker, tmp_path, "ex", "login_wall")

    t0 = time.monotonic()
    result = await handler.handle(HumanKind.LOGIN_WALL, SOURCE, W, 1, state, frontier)
    assert time.monotonic() - t0 >= 0.1
    assert result.ok
    assert result.extraction_strategy.startswith("login_wall_")
    assert not marker_path(tmp_path, "ex", "login_wall").exists()


@pytest.mark.asyncio
async def test_timeout_returns_error_and_purges_url():
    stop = StopToken(poll_s=0.05)
    signals = HumanSignals(poll_s=0.05)
    caps, pipeline, state, frontier, sessions = _setup(stop)
    frontier.push(W, 1, 75)
    handler = HumanHandler(caps.open_session, pipeline, signals, stop, timeout_s=0.1)

    result = await handler.handle(HumanKind.CAPTCHA, SOURCE, W, 1, state, frontier)
    assert not result.ok
    assert "not resolved" in result.error
    assert result.page_type is None
    assert not frontier.is_queued(W)
    assert frontier.is_seen(W)
    assert sessions[0].closed is True


@pytest.mark.asyncio
async def test_stop_abandons_the_wait():
    stop = StopToken(poll_s=0.05)
    signals = HumanSignals(poll_s=0.05)
    caps, pipeline, state, frontier, sessions = _setup(stop)
    handler = HumanHandler(caps.open_session, pipeline, signals, stop, timeout_s=600)

    asyncio.get_running_loop().call_later(0.1, stop.request, "test")
    t0 = time.monotonic()
    with pytest.raises(StopRequested):
        await handler.handle(HumanKind.LOGIN_WALL, SOURCE, W, 1, state, frontier)
    assert time.monotonic() - t0 < 1.0
    assert sessions[0].closed is True


@pytest.mark.asyncio
async def test_signals_registry():
    stop = StopToken(poll_s=0.05)
    signals = HumanSignals(poll_s=0.05)
    assert signals.resolve("ex", "captcha") is False

    waiter = asyncio.ensure_future(signals.wait("ex", "captcha", stop, 5))
    await asyncio.sleep(0.01)
    assert signals.is_pending("ex", "captcha")
    assert signals.pending() == [("ex", "captcha")]
    assert signals.resolve("ex", "captcha") is True
    await waiter
    assert not signals.is_pending("ex", "captcha")

    with pytest.raises(HumanWaitTimeout):
        await signals.wait("ex", "login_wall", stop, 0.05)


def test_marker_path_is_slugged(tmp_path):
    p = marker_path(tmp_path, "Acme Jobs/EU", "captcha")
    assert p.parent == tmp_path
    assert p.name == "acme-jobs-eu-captcha.resolved"
