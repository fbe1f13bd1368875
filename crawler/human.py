from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .browser import SessionFactory
from .cancellation import StopToken
from .frontier import Frontier
from .models import CrawlState, HumanKind, Source, VisitResult
from .pipeline import VisitPipeline
from .utils import HumanWaitTimeout, StopRequested, slugify

logger = logging.getLogger(__name__)

MARKER_SUFFIX = ".resolved"


def marker_path(signals_dir: Path, source_id: str, kind: str) -> Path:
    return Path(signals_dir) / f"{slugify(str(source_id))}-{kind}{MARKER_SUFFIX}"


def write_marker(signals_dir: Path, source_id: str, kind: str) -> Path:
    """Signal from another process that a human finished a login/captcha."""
    p = marker_path(signals_dir, source_id, kind)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.touch()
    return p


class HumanSignals:
    """
    Registry of pending human-resolution waits keyed by (source_id, kind).

    In-process callers call resolve(); out-of-process operators touch the
    marker file, which the waiter consumes on its next poll.
    """

    def __init__(self, signals_dir: Optional[Path] = None, poll_s: float = 0.25) -> None:
        self.signals_dir = Path(signals_dir) if signals_dir is not None else None
        self.poll_s = poll_s
        self._events: Dict[Tuple[str, str], asyncio.Event] = {}

    def request(self, source_id: str, kind: str) -> asyncio.Event:
        key = (str(source_id), str(kind))
        ev = self._events.get(key)
        if ev is None:
            ev = asyncio.Event()
            self._events[key] = ev
            # a marker left over from an earlier wait must not resolve this one
            if self.signals_dir is not None:
                marker_path(self.signals_dir, *key).unlink(missing_ok=True)
        return ev

    def resolve(self, source_id: str, kind: str) -> bool:
        ev = self._events.get((str(source_id), str(kind)))
        if ev is None:
            return False
        ev.set()
        return True

    def is_pending(self, source_id: str, kind: str) -> bool:
        ev = self._events.get((str(source_id), str(kind)))
        return ev is not None and not ev.is_set()

    def pending(self) -> List[Tuple[str, str]]:
        return [k for k, ev in self._events.items() if not ev.is_set()]

    def clear(self) -> None:
        self._events.clear()

    def _consume_marker(self, source_id: str, kind: str) -> bool:
        if self.signals_dir is None:
            return False
        p = marker_path(self.signals_dir, source_id, kind)
        if not p.exists():
            return False
        p.unlink(missing_ok=True)
        return True

    async def wait(self, source_id: str, kind: str, stop: StopToken, timeout_s: float) -> None:
        """
        Block until resolved. Raises HumanWaitTimeout after timeout_s and
        StopRequested within one poll interval of a stop.
        """
        key = (str(source_id), str(kind))
        ev = self.request(*key)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        try:
            while not ev.is_set():
                if self._consume_marker(*key):
                    ev.set()
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise HumanWaitTimeout(f"{kind} for {source_id} not resolved within {timeout_s:.0f}s")
                try:
                    await stop.race(ev.wait(), timeout=min(self.poll_s, remaining))
                except asyncio.TimeoutError:
                    pass
        finally:
            self._events.pop(key, None)


class HumanHandler:
    """
    Opens a visible side session at a blocked URL, waits for a person to get
    past the login wall or captcha, then runs the page through the normal
    clean/extract/discover steps.
    """

    def __init__(
        self,
        open_session: SessionFactory,
        pipeline: VisitPipeline,
        signals: HumanSignals,
        stop: StopToken,
        *,
        timeout_s: float = 300.0,
        nav_timeout_ms: int = 30_000,
        signals_hint: str = "run_crawl.py resolve",
    ) -> None:
        self.open_session = open_session
        self.pipeline = pipeline
        self.signals = signals
        self.stop = stop
        self.timeout_s = timeout_s
        self.nav_timeout_ms = nav_timeout_ms
        self.signals_hint = signals_hint

    async def handle(
        self, kind: HumanKind, source: Source, url: str, depth: int, state: CrawlState, frontier: Frontier
    ) -> VisitResult:
        label = "Login wall" if kind is HumanKind.LOGIN_WALL else "Captcha"
        session = None
        try:
            logger.warning("%s at %s: opening a visible browser for a human", label, url)
            session = await self.stop.race(self.open_session(visible=True))
            await self.stop.race(session.navigate(url, self.nav_timeout_ms))
            logger.warning(
                "Waiting up to %.0fs for %s on %s. When done, run: %s %s %s",
                self.timeout_s, kind.value, source.id, self.signals_hint, source.id, kind.value,
            )
            await self.signals.wait(source.id, kind.value, self.stop, self.timeout_s)
            logger.info("%s resolved for %s; processing page", label, source.id)
            html = await self.stop.race(session.read_rendered_content())
            return await self.pipeline.process_content(
                source, url, depth, html, state, frontier, strategy_prefix=f"{kind.value}_",
            )
        except StopRequested:
            logger.info("%s wait for %s abandoned: stop requested", label, source.id)
            raise
        except HumanWaitTimeout as e:
            logger.warning("%s", e)
            return VisitResult(url=url, depth=depth, error=str(e))
        except Exception as e:
            logger.warning("%s handling failed for %s: %s", label, url, e)
            return VisitResult(url=url, depth=depth, error=str(e) or type(e).__name__)
        finally:
            # never queue the blocked URL again, whatever happened
            frontier.mark_seen(url)
            frontier.purge(url)
            if session is not None:
                await session.close()
