from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .brain import Brain, apply_decision
from .cancellation import StopToken
from .capabilities import Capabilities
from .correction import UrlCorrector
from .frontier import Frontier, from_archived_links, repopulate, reseed_start_url
from .human import HumanHandler, HumanSignals
from .models import (
    ApplyUrlCorrection,
    BrainContext,
    CrawlOutcome,
    CrawlState,
    CycleDone,
    HumanKind,
    RetryWait,
    Source,
    SourceStatus,
    TriggerCaptcha,
    TriggerLoginWall,
    VisitResult,
    VisitUrl,
)
from .pipeline import VisitPipeline, VisitSettings
from .planner import REASON_EXHAUSTED, REASON_STOP, PlannerLimits, commit_action, plan_next_action
from .utils import SourceFatalError, StopRequested, domain_of, extract_links_static, url_key

logger = logging.getLogger(__name__)

REASON_CAP = "job cap reached"
LOG_TAIL_LINES = 20


@dataclass
class CrawlOptions:
    session: Any
    stop: StopToken
    caps: Capabilities
    signals: HumanSignals
    cycle: int = 1
    max_jobs: int = 5000
    event_stream: Any = None
    limits: PlannerLimits = field(default_factory=PlannerLimits)
    visit: VisitSettings = field(default_factory=VisitSettings)
    max_depth: int = 999
    max_repopulations: int = 5
    human_timeout_s: float = 300.0
    brain_timeout_s: float = 30.0


# ---------------------------------------------------------------------------
# Single-source crawl
# ---------------------------------------------------------------------------

async def _validate_once(opts: CrawlOptions, source: Source) -> Tuple[bool, Optional[str]]:
    try:
        v = await opts.stop.race(opts.caps.validator.validate(source.id, source.url))
    except StopRequested:
        raise
    except Exception as e:
        logger.warning("Validation error for %s (%s); proceeding", source.url, e)
        return False, str(e)
    message = v.error_message or (f"HTTP {v.status_code}" if v.status_code else None)
    if not v.is_valid:
        logger.warning("Source validation failed for %s: %s", source.url, message)
    return bool(v.is_valid), message


async def _seed_state(opts: CrawlOptions, source: Source) -> Tuple[CrawlState, Frontier]:
    state = CrawlState(start_url=source.url, source_domain=domain_of(source.url), max_depth=opts.max_depth)
    frontier = Frontier(state)
    try:
        state.url_seen.update(await opts.caps.jobs.visited_urls(source.id))
    except Exception as e:
        logger.warning("Could not load visited URLs for %s: %s", source.id, e)
    # a restart must still be able to begin from the start URL
    state.url_seen.discard(url_key(source.url))
    frontier.push(source.url, 0, 100)
    logger.info("Crawl state for %s: %d URLs already visited", source.id, len(state.url_seen))
    return state, frontier


def _archived_links(caps: Capabilities, source: Source) -> List[List[str]]:
    return [extract_links_static(html, entry.url) for entry, html in caps.captures.iter_cleaned(source.slug)]


def _depth_of(state: CrawlState, url: str) -> int:
    last = state.last_result
    return last.depth if last is not None and last.url == url else 0


def _record_visit(state: CrawlState, result: VisitResult) -> None:
    state.pages_visited += 1
    state.jobs_extracted += result.jobs_count
    if result.jobs_count > 0:
        state.zero_job_visits = 0
    else:
        state.zero_job_visits += 1


async def _review(
    brain: Brain, opts: CrawlOptions, source: Source, state: CrawlState,
    result: VisitResult, validation: Tuple[bool, Optional[str]],
) -> None:
    if not result.ok:
        state.last_result = result
        return
    try:
        history = await asyncio.to_thread(opts.caps.captures.capture_summary, source.slug)
    except Exception as e:
        logger.debug("capture summary unavailable: %s", e)
        history = None
    recent = opts.event_stream.tail_text(source.slug, LOG_TAIL_LINES) if opts.event_stream is not None else ""
    ctx = BrainContext(
        source_name=source.name,
        source_url=result.url,
        source_slug=source.slug,
        jobs_extracted=result.jobs_count,
        validation_passed=validation[0],
        validation_message=validation[1],
        recent_log=recent,
        content_size=result.content_size,
        cycle=opts.cycle,
        attempt=state.retry_count + 1,
        extraction_strategy=result.extraction_strategy,
        capture_history=history,
        page_type=result.page_type,
        depth=result.depth,
        frontier_size=len(state.frontier),
        url_correction_attempts=state.url_correction_attempts,
        page_excerpt=result.excerpt,
    )
    decision = await opts.stop.race(brain.review(ctx))
    apply_decision(state, result, decision)


async def run_crawl(source: Source, opts: CrawlOptions) -> CrawlOutcome:
    """
    Crawl one source for one scheduler cycle: until stop, the job cap, or a
    terminal CycleDone. An exhausted cycle is not the end of the source; the
    scheduler starts it again next cycle from its visited ledger.
    Exceptions other than cancellation propagate to the scheduler.
    """
    stop = opts.stop
    caps = opts.caps
    settings = replace(opts.visit, max_jobs=opts.max_jobs)
    pipeline = VisitPipeline(caps, stop, settings)
    brain = Brain(caps.advisor, timeout_s=opts.brain_timeout_s)
    human = HumanHandler(caps.open_session, pipeline, opts.signals, stop, timeout_s=opts.human_timeout_s)
    corrector = UrlCorrector(caps.resolver, caps.sources, stop, max_attempts=opts.limits.max_url_corrections)
    strategies = [from_archived_links(lambda: _archived_links(caps, source)), reseed_start_url]

    state: Optional[CrawlState] = None
    reason = REASON_STOP
    repopulations = 0
    try:
        state, frontier = await _seed_state(opts, source)
        validation = await _validate_once(opts, source)

        while True:
            if stop.stop_requested:
                state.stop_requested = True
            if state.jobs_extracted >= opts.max_jobs:
                reason = REASON_CAP
                logger.info("Job cap %d reached for %s", opts.max_jobs, source.id)
                break

            action = plan_next_action(state, source.name, opts.limits)
            depth = _depth_of(state, getattr(action, "url", ""))
            commit_action(state, frontier, action)

            if isinstance(action, CycleDone):
                if action.terminal:
                    reason = action.reason
                    break
                repopulations += 1
                state.zero_job_visits += 1
                if repopulations > opts.max_repopulations or not repopulate(state, frontier, strategies):
                    reason = REASON_EXHAUSTED
                    break
            elif isinstance(action, VisitUrl):
                if action.wait_ms:
                    logger.info("Waiting %.1fs before re-extracting %s", action.wait_ms / 1000.0, action.url)
                    await stop.sleep(action.wait_ms / 1000.0)
                result = await pipeline.visit(opts.session, source, action.url, action.depth, state, frontier)
                _record_visit(state, result)
                await _review(brain, opts, source, state, result, validation)
            elif isinstance(action, (TriggerLoginWall, TriggerCaptcha)):
                kind = HumanKind.LOGIN_WALL if isinstance(action, TriggerLoginWall) else HumanKind.CAPTCHA
                result = await human.handle(kind, source, action.url, depth, state, frontier)
                _record_visit(state, result)
            elif isinstance(action, ApplyUrlCorrection):
                await corrector.apply(source, action.url, state, frontier)
            elif isinstance(action, RetryWait):
                logger.info("Waiting %.1fs before retry (%s)", action.wait_ms / 1000.0, action.reason)
                await stop.sleep(action.wait_ms / 1000.0)
            else:
                raise AssertionError(f"unhandled action {action!r}")
    except StopRequested:
        reason = REASON_STOP

    if reason == REASON_EXHAUSTED:
        logger.info("No productive URLs left for %s this cycle; it resumes next cycle", source.id)
    jobs = state.jobs_extracted if state else 0
    pages = state.pages_visited if state else 0
    logger.info("Crawl of %s finished: %d jobs, %d pages (%s)", source.id, jobs, pages, reason)
    return CrawlOutcome(jobs_extracted=jobs, pages_visited=pages, reason=reason, cycle_delay_hint=brain.last_cycle_delay)


# ---------------------------------------------------------------------------
# Multi-source scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    """
    Cycle loop over enabled sources. Several sources run in bounded parallel
    batches, each with its own headless browser; a lone source in visible
    mode reuses one visible session across cycles.
    """

    def __init__(
        self,
        caps: Capabilities,
        signals: HumanSignals,
        *,
        visible: bool = False,
        max_parallel: int = 3,
        cycle_delay_s: float = 10.0,
        max_jobs: int = 5000,
        limits: PlannerLimits = PlannerLimits(),
        visit: VisitSettings = VisitSettings(),
        max_depth: int = 999,
        human_timeout_s: float = 300.0,
        brain_timeout_s: float = 30.0,
        log_ext: Any = None,
    ) -> None:
        self.caps = caps
        self.signals = signals
        self.visible = visible
        self.max_parallel = max(1, max_parallel)
        self.cycle_delay_s = cycle_delay_s
        self.max_jobs = max_jobs
        self.limits = limits
        self.visit = visit
        self.max_depth = max_depth
        self.human_timeout_s = human_timeout_s
        self.brain_timeout_s = brain_timeout_s
        self.log_ext = log_ext
        self._delay_hint: Optional[float] = None

    @classmethod
    def from_config(cls, cfg, caps: Capabilities, signals: HumanSignals, **overrides) -> "Scheduler":
        kwargs = dict(
            visible=False,
            max_parallel=cfg.max_parallel_sources,
            cycle_delay_s=cfg.cycle_delay_seconds,
            max_jobs=cfg.max_jobs_per_source,
            limits=PlannerLimits.from_config(cfg),
            visit=VisitSettings.from_config(cfg),
            max_depth=cfg.max_depth,
            human_timeout_s=cfg.human_wait_timeout_seconds,
            brain_timeout_s=cfg.advisor_timeout_seconds,
        )
        kwargs.update(overrides)
        return cls(caps, signals, **kwargs)

    def _options(self, session, stop: StopToken, cycle: int) -> CrawlOptions:
        return CrawlOptions(
            session=session,
            stop=stop,
            caps=self.caps,
            signals=self.signals,
            cycle=cycle,
            max_jobs=self.max_jobs,
            event_stream=self.caps.events,
            limits=self.limits,
            visit=self.visit,
            max_depth=self.max_depth,
            human_timeout_s=self.human_timeout_s,
            brain_timeout_s=self.brain_timeout_s,
        )

    async def _set_status(self, source_id: str, status: SourceStatus, jobs: int = 0, message: Optional[str] = None) -> None:
        try:
            await self.caps.jobs.set_status(source_id, status, jobs, message)
        except Exception as e:
            logger.warning("Could not record status %s for %s: %s", status.value, source_id, e)

    async def _crawl_source(self, source: Source, session, stop: StopToken, cycle: int) -> CrawlOutcome:
        """Raises SourceFatalError for anything but cancellation."""
        owned = session is None
        try:
            if owned:
                session = await stop.race(self.caps.open_session(visible=False))
            return await run_crawl(source, self._options(session, stop, cycle))
        except StopRequested:
            raise
        except Exception as e:
            raise SourceFatalError(source.id, e) from e
        finally:
            if owned and session is not None:
                await session.close()

    async def _run_source(self, source: Source, session, stop: StopToken, cycle: int) -> CrawlOutcome:
        token = None
        if self.log_ext is not None:
            self.log_ext.get_source_logger(source.slug)
            token = self.log_ext.set_source_context(source.slug)
        try:
            await self._set_status(source.id, SourceStatus.RUNNING)
            try:
                outcome = await self._crawl_source(source, session, stop, cycle)
            except SourceFatalError as e:
                logger.error("Source %s failed: %r", source.id, e.cause)
                await self._set_status(source.id, SourceStatus.FAILED, 0, repr(e.cause))
                return CrawlOutcome(0, 0, f"failed: {e.cause}")
            except StopRequested:
                logger.info("Source %s interrupted by stop", source.id)
                await self._set_status(source.id, SourceStatus.PARTIAL, 0, REASON_STOP)
                return CrawlOutcome(0, 0, REASON_STOP)
            status = SourceStatus.SUCCESS if outcome.jobs_extracted > 0 else SourceStatus.PARTIAL
            await self._set_status(source.id, status, outcome.jobs_extracted, outcome.reason)
            if outcome.cycle_delay_hint:
                self._delay_hint = max(self._delay_hint or 0.0, outcome.cycle_delay_hint)
            return outcome
        finally:
            if token is not None:
                self.log_ext.reset_source_context(token)

    async def _run_cycle(self, sources: List[Source], stop: StopToken, cycle: int, shared) -> Dict[str, CrawlOutcome]:
        results: Dict[str, CrawlOutcome] = {}
        if len(sources) == 1 and shared is not None:
            results[sources[0].id] = await self._run_source(sources[0], shared, stop, cycle)
            return results

        for i in range(0, len(sources), self.max_parallel):
            stop.raise_if_stopped()
            batch = sources[i:i + self.max_parallel]
            logger.info("Cycle %d: batch of %d sources", cycle, len(batch))
            outs = await asyncio.gather(
                *(self._run_source(src, None, stop, cycle) for src in batch),
                return_exceptions=True,
            )
            for src, out in zip(batch, outs):
                if isinstance(out, BaseException):
                    logger.error("Source task %s raised: %r", src.id, out)
                    continue
                results[src.id] = out
        return results

    async def run(self, stop: StopToken, *, once: bool = False) -> Dict[str, CrawlOutcome]:
        results: Dict[str, CrawlOutcome] = {}
        shared = None
        cycle = 0
        try:
            while True:
                stop.raise_if_stopped()
                cycle += 1
                self._delay_hint = None
                sources = await self.caps.sources.list_enabled()
                logger.info("Cycle %d: %d enabled sources", cycle, len(sources))

                if not sources:
                    logger.warning("No enabled sources")
                else:
                    if len(sources) == 1 and self.visible and (shared is None or shared.closed):
                        shared = await stop.race(self.caps.open_session(visible=True))
                    results.update(await self._run_cycle(sources, stop, cycle, shared if len(sources) == 1 else None))

                if once:
                    break
                delay = max(self.cycle_delay_s, self._delay_hint or 0.0)
                stop.raise_if_stopped()
                logger.info("Cycle %d done; next in %.0fs", cycle, delay)
                await stop.sleep(delay)
                stop.raise_if_stopped()
        except StopRequested:
            logger.info("Scheduler stopped after %d cycles", cycle)
        finally:
            await self._teardown(shared)
        return results

    async def _teardown(self, shared) -> None:
        if shared is not None:
            try:
                await shared.close()
            except Exception as e:
                logger.warning("Error while closing shared session: %s", e)
        self.signals.clear()
        if self.caps.events is not None:
            self.caps.events.flush()
        logger.info("Scheduler teardown complete")
