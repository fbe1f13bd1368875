from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from .utils import StopRequested, await_cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_S = 0.25


class StopToken:
    """
    Explicit cancellation handle passed to the scheduler and every source task.

    Waits are raced against an internal asyncio.Event and also re-check the
    flag every poll interval, so a stop is observed within poll_s even when
    request() is called from a signal handler or another thread.
    """

    def __init__(self, poll_s: float = DEFAULT_POLL_S) -> None:
        if poll_s >= 1.0:
            raise ValueError("poll interval must be sub-second")
        self.poll_s = poll_s
        self._flag = False
        self._event: Optional[asyncio.Event] = None
        self.reason: Optional[str] = None

    @property
    def stop_requested(self) -> bool:
        return self._flag

    def _ev(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._flag:
                self._event.set()
        return self._event

    def request(self, reason: str = "stop requested") -> None:
        if self._flag:
            return
        self._flag = True
        self.reason = reason
        logger.info("Stop requested: %s", reason)
        if self._event is not None:
            try:
                self._event.set()
            except RuntimeError:
                # set from a foreign thread; the poll loop still sees _flag
                pass

    def raise_if_stopped(self) -> None:
        if self._flag:
            raise StopRequested(self.reason or "stop requested")

    async def sleep(self, seconds: float) -> None:
        """Sleep up to `seconds`; raise StopRequested as soon as stop is seen."""
        self.raise_if_stopped()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, seconds)
        ev = self._ev()
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(ev.wait(), timeout=min(self.poll_s, remaining))
            except asyncio.TimeoutError:
                pass
            self.raise_if_stopped()
        self.raise_if_stopped()

    async def race(self, aw: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await `aw` unless stop arrives first (StopRequested) or `timeout`
        elapses (asyncio.TimeoutError). The losing task is always cancelled.
        """
        self.raise_if_stopped()
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(aw)
        deadline = None if timeout is None else loop.time() + timeout
        ev = self._ev()
        try:
            while True:
                step = self.poll_s
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    step = min(step, remaining)
                stop_waiter = asyncio.ensure_future(ev.wait())
                try:
                    done, _ = await asyncio.wait({task, stop_waiter}, timeout=step, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    await await_cancelled(stop_waiter)
                if task in done:
                    return task.result()
                self.raise_if_stopped()
        finally:
            if not task.done():
                await await_cancelled(task)
