from __future__ import annotations

import logging
from typing import Optional

from .cancellation import StopToken
from .frontier import Frontier
from .models import CrawlState, Source
from .utils import StopRequested

logger = logging.getLogger(__name__)


class UrlCorrector:
    """Swap a broken source URL for a working one found by the resolver."""

    def __init__(self, resolver, registry, stop: Optional[StopToken] = None, *, max_attempts: int = 5) -> None:
        self.resolver = resolver
        self.registry = registry
        self.stop = stop or StopToken()
        self.max_attempts = max_attempts

    async def apply(self, source: Source, broken_url: str, state: CrawlState, frontier: Frontier) -> Optional[str]:
        before = state.url_correction_attempts
        try:
            # a stop interrupts the candidate checks
            res = await self.stop.race(self.resolver.resolve(broken_url, source.name, before))
        except StopRequested:
            raise
        except Exception as e:
            logger.warning("URL resolver failed for %s: %s", broken_url, e)
            state.url_correction_attempts = min(self.max_attempts, before + 1)
            return None

        # each round counts at least once so a resolver that tries nothing cannot loop forever
        state.url_correction_attempts = min(self.max_attempts, before + max(1, res.attempts_made))

        corrected = res.corrected_url
        if not corrected:
            logger.warning(
                "No working URL found for %s (%d candidates tried, %d/%d attempts used)",
                source.name, res.attempts_made, state.url_correction_attempts, self.max_attempts,
            )
            return None

        try:
            await self.registry.update_url(source.id, corrected)
        except Exception as e:
            logger.warning("Could not persist corrected URL for %s: %s", source.id, e)

        state.start_url = corrected
        frontier.unsee(corrected)
        frontier.purge(corrected)
        frontier.push(corrected, 0, 100, front=True)
        logger.info("URL corrected via %s: %s -> %s", res.method, broken_url, corrected)
        return corrected
