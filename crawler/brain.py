from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Protocol

from .models import Adaptation, BrainContext, BrainDecision, CrawlState, VisitResult

logger = logging.getLogger(__name__)

WAIT_SECONDS_MIN, WAIT_SECONDS_MAX, WAIT_SECONDS_DEFAULT = 5.0, 20.0, 10.0
CYCLE_DELAY_MIN, CYCLE_DELAY_MAX, CYCLE_DELAY_DEFAULT = 10.0, 60.0, 10.0


class Advisor(Protocol):
    async def analyze(self, ctx: BrainContext) -> Mapping[str, Any]: ...


def _clamp(v: Any, lo: float, hi: float, default: float) -> float:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return default
    return max(lo, min(hi, float(v)))


def fallback_decision(reason: str = "advisor unavailable") -> BrainDecision:
    return BrainDecision(
        verdict="ok",
        next_action=Adaptation.CONTINUE,
        reasoning=reason,
        cycle_delay_seconds=CYCLE_DELAY_DEFAULT,
    )


def decision_from_reply(reply: Mapping[str, Any]) -> BrainDecision:
    """
    Turn a raw advisor reply into a bounded decision: unknown actions become
    CONTINUE, wait/cycle delays are clamped, non-http suggestions dropped.
    """
    action = Adaptation.parse(reply.get("nextAction"))
    suggested = reply.get("suggestedUrl")
    if not (isinstance(suggested, str) and suggested.startswith("http")):
        suggested = None
    wait = _clamp(reply.get("waitSeconds"), WAIT_SECONDS_MIN, WAIT_SECONDS_MAX, WAIT_SECONDS_DEFAULT)
    reasoning = reply.get("diagnosis") or reply.get("message") or ""
    return BrainDecision(
        verdict="problem" if reply.get("verdict") == "problem" else "ok",
        next_action=action,
        reasoning=str(reasoning),
        suggested_url=suggested,
        wait_seconds=wait if action is Adaptation.RETRY_EXTRACTION else None,
        cycle_delay_seconds=_clamp(
            reply.get("cycleDelaySeconds"), CYCLE_DELAY_MIN, CYCLE_DELAY_MAX, CYCLE_DELAY_DEFAULT
        ),
    )


class Brain:
    """Asks the advisor to judge each visit. Never raises; failures mean CONTINUE."""

    def __init__(self, advisor: Advisor, *, timeout_s: float = 30.0) -> None:
        self.advisor = advisor
        self.timeout_s = timeout_s
        self.last_cycle_delay: Optional[float] = None

    async def review(self, ctx: BrainContext) -> BrainDecision:
        try:
            reply = await asyncio.wait_for(self.advisor.analyze(ctx), timeout=self.timeout_s)
            decision = decision_from_reply(reply or {})
        except asyncio.TimeoutError:
            logger.warning("Brain analysis timed out after %.0fs; continuing", self.timeout_s)
            decision = fallback_decision("advisor timed out")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Brain analysis failed: %s. Defaulting to CONTINUE.", e)
            decision = fallback_decision(f"advisor failed: {e}")

        self.last_cycle_delay = decision.cycle_delay_seconds
        level = logging.WARNING if decision.verdict == "problem" else logging.INFO
        logger.log(level, "Brain: %s -> %s", decision.reasoning or decision.verdict, decision.next_action.value)
        return decision


def apply_decision(state: CrawlState, result: VisitResult, decision: BrainDecision) -> None:
    """Record a non-CONTINUE decision on the result the planner reads next."""
    state.last_result = result
    if decision.next_action is Adaptation.CONTINUE:
        return
    result.adaptation = decision.next_action
    result.suggested_url = decision.suggested_url
    if decision.wait_seconds:
        result.wait_ms = int(decision.wait_seconds * 1000)
    elif decision.next_action is Adaptation.RETRY_CYCLE_SOON and decision.cycle_delay_seconds:
        result.wait_ms = int(decision.cycle_delay_seconds * 1000)
