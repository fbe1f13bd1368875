from __future__ import annotations

import logging
from dataclasses import dataclass

from .frontier import Frontier, best_entry
from .models import (
    Action,
    Adaptation,
    ApplyUrlCorrection,
    CrawlState,
    CycleDone,
    RetryWait,
    TriggerCaptcha,
    TriggerLoginWall,
    VisitUrl,
)
from .utils import url_key

logger = logging.getLogger(__name__)

REASON_STOP = "Stop requested"
REASON_FRONTIER_EMPTY = "frontier empty"
REASON_EXHAUSTED = "cycle exhausted"


@dataclass(frozen=True)
class PlannerLimits:
    max_retries: int = 3
    max_url_corrections: int = 5
    max_zero_job_visits: int = 15
    retry_wait_default_ms: int = 10_000

    @classmethod
    def from_config(cls, cfg) -> "PlannerLimits":
        return cls(
            max_retries=cfg.max_retry_count,
            max_url_corrections=cfg.max_url_correction_attempts,
            max_zero_job_visits=cfg.max_zero_job_visits,
            retry_wait_default_ms=cfg.retry_wait_default_ms,
        )


def plan_next_action(state: CrawlState, source_name: str, limits: PlannerLimits = PlannerLimits()) -> Action:
    """
    Decide the next action from the crawl state. Pure: reads state, never
    mutates it and performs no I/O.
    """
    if state.stop_requested:
        return CycleDone(REASON_STOP, terminal=True)

    last = state.last_result
    if last is not None:
        action = _from_adaptation(state, source_name, limits)
        if action is not None:
            return action
        action = _from_page_type(state, source_name, limits)
        if action is not None:
            return action

    if state.zero_job_visits >= limits.max_zero_job_visits:
        return CycleDone(REASON_EXHAUSTED, terminal=True)

    entry = best_entry(state)
    if entry is not None:
        return VisitUrl(entry.url, entry.depth)
    return CycleDone(REASON_FRONTIER_EMPTY, terminal=False)


def _from_adaptation(state: CrawlState, source_name: str, limits: PlannerLimits):
    last = state.last_result
    adaptation = last.adaptation or Adaptation.CONTINUE

    if adaptation is Adaptation.CONTINUE:
        return None
    if adaptation is Adaptation.RETRY_EXTRACTION:
        if state.retry_count < limits.max_retries:
            return VisitUrl(last.url, last.depth, last.wait_ms or 0)
        return None
    if adaptation is Adaptation.TRY_NEW_URL:
        if state.url_correction_attempts < limits.max_url_corrections:
            return ApplyUrlCorrection(last.suggested_url or last.url, source_name)
        return None
    if adaptation is Adaptation.CAPTCHA_HUMAN_SOLVE:
        return TriggerCaptcha(last.url)
    if adaptation is Adaptation.LOGIN_WALL_HUMAN:
        return TriggerLoginWall(last.url)
    if adaptation is Adaptation.RETRY_CYCLE_SOON:
        if state.retry_count < limits.max_retries:
            return RetryWait(
                wait_ms=last.wait_ms if last.wait_ms is not None else limits.retry_wait_default_ms,
                reason="advisor asked to retry soon",
                retry_url=last.url,
                retry_depth=last.depth,
            )
        return None
    raise AssertionError(f"unhandled adaptation {adaptation!r}")


def _from_page_type(state: CrawlState, source_name: str, limits: PlannerLimits):
    last = state.last_result
    if last.page_type == "login_wall":
        return TriggerLoginWall(last.url)
    if last.page_type == "captcha_challenge":
        return TriggerCaptcha(last.url)
    if (
        last.page_type == "error"
        and last.depth == 0
        and state.url_correction_attempts < limits.max_url_corrections
    ):
        return ApplyUrlCorrection(last.url, source_name)
    return None


def commit_action(state: CrawlState, frontier: Frontier, action: Action) -> None:
    """
    Executor-side bookkeeping for a planned action: consume the frontier
    entry, mark it seen and clear the consumed adaptation.
    """
    last = state.last_result

    if isinstance(action, VisitUrl):
        is_retry = (
            last is not None
            and last.adaptation is Adaptation.RETRY_EXTRACTION
            and last.url == action.url
        )
        if is_retry:
            frontier.unsee(action.url)
            state.retry_count += 1
            state.retry_target = url_key(action.url)
        elif state.retry_target != url_key(action.url):
            state.retry_count = 0
            state.retry_target = None
        frontier.take(action.url)
        frontier.mark_seen(action.url)
        state.last_result = None
    elif isinstance(action, (TriggerLoginWall, TriggerCaptcha)):
        state.last_result = None
    elif isinstance(action, ApplyUrlCorrection):
        state.last_result = None
    elif isinstance(action, RetryWait):
        state.retry_count += 1
        if action.retry_url:
            state.retry_target = url_key(action.retry_url)
            frontier.unsee(action.retry_url)
            frontier.push(action.retry_url, action.retry_depth, 100, front=True)
        state.last_result = None
    elif isinstance(action, CycleDone):
        pass
    else:
        raise AssertionError(f"unhandled action {action!r}")
