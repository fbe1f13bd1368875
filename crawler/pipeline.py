from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .cancellation import StopToken
from .capabilities import Capabilities
from .frontier import Frontier, filter_links, generate_pagination_seeds
from .models import LISTING_PAGE_TYPES, CrawlState, RawJobListing, Source, VisitResult
from .utils import StopRequested, extract_links_static, url_key

logger = logging.getLogger(__name__)

# Anything that shows a Next.js SPA has hydrated its job list
_HYDRATION_SELECTOR = 'script#__NEXT_DATA__, a[href*="/company/"][href*="/jobs"]'
_HYDRATION_SELECTOR_TIMEOUT_MS = 15_000


@dataclass(frozen=True)
class VisitSettings:
    settle_min_ms: int = 3500
    settle_max_ms: int = 7000
    hydration_min_ms: int = 5000
    hydration_max_ms: int = 12000
    spa_slugs: Tuple[str, ...] = ("wellfound",)
    large_raw_threshold_chars: int = 50_000
    max_pagination_seeds: int = 30
    pagination_priority: int = 75
    max_jobs: int = 5000
    nav_timeout_ms: Optional[int] = None

    @classmethod
    def from_config(cls, cfg, *, max_jobs: Optional[int] = None) -> "VisitSettings":
        return cls(
            settle_min_ms=cfg.settle_min_ms,
            settle_max_ms=max(cfg.settle_min_ms, cfg.settle_max_ms),
            hydration_min_ms=cfg.hydration_min_ms,
            hydration_max_ms=max(cfg.hydration_min_ms, cfg.hydration_max_ms),
            spa_slugs=tuple(cfg.spa_slugs),
            large_raw_threshold_chars=cfg.large_raw_threshold_chars,
            max_pagination_seeds=cfg.max_pagination_seeds,
            pagination_priority=cfg.pagination_priority,
            max_jobs=max_jobs if max_jobs is not None else cfg.max_jobs_per_source,
            nav_timeout_ms=cfg.nav_timeout_ms,
        )


def _jitter_s(lo_ms: int, hi_ms: int) -> float:
    return random.randint(lo_ms, max(lo_ms, hi_ms)) / 1000.0


class VisitPipeline:
    """
    navigate -> settle -> capture -> clean -> extract -> classify -> persist
    -> discover links -> seed pagination. One call per frontier entry.
    """

    def __init__(self, caps: Capabilities, stop: StopToken, settings: VisitSettings = VisitSettings()) -> None:
        self.caps = caps
        self.stop = stop
        self.settings = settings

    # ---------------- entry point ----------------

    async def visit(self, session, source: Source, url: str, depth: int, state: CrawlState, frontier: Frontier) -> VisitResult:
        """
        Never raises except StopRequested; every other failure comes back as
        an error VisitResult so the crawl moves on to the next entry.
        """
        self.stop.raise_if_stopped()
        logger.info("Visiting %s (depth %d)", url, depth)
        try:
            status = await self.stop.race(session.navigate(url, self.settings.nav_timeout_ms))
            await self._wait_for_content(session, source)
            html = await self.stop.race(session.read_rendered_content())
            result = await self.process_content(source, url, depth, html, state, frontier, status_code=status)
        except StopRequested:
            raise
        except Exception as e:
            logger.warning("Failed to visit %s: %s", url, e)
            return VisitResult(url=url, depth=depth, page_type="error", error=str(e) or type(e).__name__)

        try:
            await self.caps.jobs.mark_visited(source.id, url_key(url))
        except Exception as e:
            logger.warning("Failed to persist visited URL %s: %s", url, e)
        return result

    async def _wait_for_content(self, session, source: Source) -> None:
        s = self.settings
        await self.stop.sleep(_jitter_s(s.settle_min_ms, s.settle_max_ms))
        if (source.slug or "") in s.spa_slugs:
            found = await self.stop.race(session.wait_for_selector(_HYDRATION_SELECTOR, _HYDRATION_SELECTOR_TIMEOUT_MS))
            logger.debug("hydration marker %s for %s", "found" if found else "missing", source.slug)
            await self.stop.sleep(_jitter_s(s.hydration_min_ms, s.hydration_max_ms))

    # ---------------- shared with the human handlers ----------------

    async def process_content(
        self,
        source: Source,
        url: str,
        depth: int,
        html: str,
        state: CrawlState,
        frontier: Frontier,
        *,
        status_code: Optional[int] = None,
        strategy_prefix: str = "",
    ) -> VisitResult:
        caps = self.caps
        slug = source.slug
        html = html or ""

        capture_id = await self._persist("save raw capture", caps.captures.save_capture, slug, url, html)

        cleanup = await asyncio.to_thread(caps.clean, html, url)
        cleaned = cleanup.cleaned_html or ""
        if capture_id:
            await self._persist("save cleaned capture", caps.captures.save_cleaned, slug, capture_id, cleaned)
        if cleanup.original_size:
            logger.info(
                "Cleanup: %d -> %d chars (%.0f%% smaller, %d elements removed)",
                cleanup.original_size, cleanup.cleaned_size,
                100.0 * (1 - cleanup.cleaned_size / max(1, cleanup.original_size)),
                cleanup.elements_removed,
            )

        listings, strategy = await self._extract_with_fallbacks(source, url, html, cleaned, capture_id)
        if strategy_prefix:
            strategy = f"{strategy_prefix}{strategy}"

        page_type = await self._classify(cleaned, url, status_code)

        jobs_count = await self._save_jobs(source, listings, state)
        logger.info("Extracted %d jobs via %s; page type %s", jobs_count, strategy, page_type)
        if capture_id:
            await self._persist(
                "update capture type", caps.captures.update_capture_type,
                slug, capture_id, page_type, jobs_count, strategy,
            )

        links = await asyncio.to_thread(extract_links_static, cleaned, url)
        if not links:
            links = await asyncio.to_thread(extract_links_static, html, url)
        entries = filter_links(
            links,
            source_domain=state.source_domain,
            url_seen=state.url_seen,
            frontier=state.frontier,
            current_depth=depth,
            max_depth=state.max_depth,
        )
        added = frontier.extend(entries)

        seeded = 0
        if page_type in LISTING_PAGE_TYPES:
            for seed in generate_pagination_seeds(url, self.settings.max_pagination_seeds):
                if frontier.push(seed, depth + 1, self.settings.pagination_priority):
                    seeded += 1
        if added or seeded:
            logger.info("Discovered %d links, %d pagination seeds; frontier %d", added, seeded, len(frontier))

        try:
            excerpt = await asyncio.to_thread(caps.excerpt, cleaned)
        except Exception as e:
            logger.debug("excerpt failed for %s: %s", url, e)
            excerpt = None

        return VisitResult(
            url=url,
            depth=depth,
            capture_id=capture_id,
            page_type=page_type,
            jobs_count=jobs_count,
            extraction_strategy=strategy,
            links_discovered=added + seeded,
            content_size=len(html),
            excerpt=excerpt,
        )

    # ---------------- steps ----------------

    async def _extract_with_fallbacks(
        self, source: Source, url: str, raw: str, cleaned: str, capture_id: Optional[str]
    ) -> Tuple[List[RawJobListing], str]:
        hints = {"slug": source.slug, "source_name": source.name}
        res = await asyncio.to_thread(self.caps.extract, cleaned, url, hints)
        if res.listings:
            return list(res.listings), res.strategy

        res_raw = await asyncio.to_thread(self.caps.extract, raw, url, hints)
        if res_raw.listings:
            logger.info("Cleaned content had no jobs; raw content yielded %d", len(res_raw.listings))
            return list(res_raw.listings), f"raw_{res_raw.strategy}"

        if len(raw) > self.settings.large_raw_threshold_chars:
            best = await self._persist(
                "read best capture", self.caps.captures.read_best_capture, source.slug, exclude_id=capture_id
            )
            if best:
                entry, prior_html = best
                res_prior = await asyncio.to_thread(self.caps.extract, prior_html, entry.url, hints)
                if res_prior.listings:
                    logger.info("Recovered %d jobs from prior capture %s", len(res_prior.listings), entry.id)
                    return list(res_prior.listings), f"prior_capture_{res_prior.strategy}"

        return [], res.strategy or "none"

    async def _classify(self, cleaned: str, url: str, status_code: Optional[int]) -> str:
        try:
            return (await asyncio.to_thread(self.caps.classify, cleaned, url, status_code)).type
        except Exception as e:
            logger.warning("Classification failed for %s (%s); assuming listing", url, e)
            return "listing"

    async def _save_jobs(self, source: Source, listings: List[RawJobListing], state: CrawlState) -> int:
        remaining = self.settings.max_jobs - state.jobs_extracted
        saved = 0
        for raw in listings:
            if saved >= remaining:
                logger.info("Job cap %d reached for %s", self.settings.max_jobs, source.id)
                break
            job = self.caps.normalize(raw, source.id)
            if job is None:
                continue
            try:
                await self.caps.jobs.upsert_job(job)
            except Exception as e:
                logger.warning("Failed to save job %r: %s", job.title, e)
                continue
            saved += 1
        return saved

    async def _persist(self, what: str, fn, *args, **kwargs):
        """Run a blocking store call off the loop; failures are logged, not raised."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            logger.warning("Failed to %s: %s", what, e)
            return None
