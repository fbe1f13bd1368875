from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Literal, Optional
from urllib.parse import urlparse

from .source_validator import SourceValidator

logger = logging.getLogger(__name__)

SAME_DOMAIN_PATHS = (
    "/jobs", "/careers", "/openings", "/jobs/search", "/career", "/positions",
    "/job-openings", "/work-with-us", "/",
)

MAX_ATTEMPTS_PER_SOURCE = 5
CANDIDATE_TIMEOUT_S = 8.0


@dataclass
class ResolveResult:
    corrected_url: Optional[str]
    attempts_made: int
    method: Literal["same_domain", "search_based", "none"]
    tried_urls: List[str] = field(default_factory=list)


def _name_patterns(source_name: str) -> List[str]:
    clean = re.sub(r"\s*\(.*\)$", "", source_name or "").strip().lower()
    clean = re.sub(r"[^a-z0-9]+", "", clean)
    if not clean:
        return []
    return [
        f"https://careers.{clean}.com",
        f"https://{clean}.com/careers",
        f"https://{clean}.com/jobs",
        f"https://jobs.{clean}.com",
    ]


class UrlResolver:
    """
    Finds a working replacement for a broken source URL: same-host career
    paths first, then hosts guessed from the source name. Every candidate is
    validated over HTTP and must show job content.
    """

    def __init__(
        self,
        validator: SourceValidator,
        *,
        max_attempts: int = MAX_ATTEMPTS_PER_SOURCE,
        candidate_timeout_s: float = CANDIDATE_TIMEOUT_S,
    ) -> None:
        self.validator = validator
        self.max_attempts = max_attempts
        self.candidate_timeout_s = candidate_timeout_s

    async def resolve(self, broken_url: str, source_name: str, attempts_so_far: int) -> ResolveResult:
        if attempts_so_far >= self.max_attempts:
            return ResolveResult(None, 0, "none")
        parsed = urlparse(broken_url)
        if not parsed.scheme or not parsed.netloc:
            return ResolveResult(None, 0, "none")

        remaining = self.max_attempts - attempts_so_far
        tried: List[str] = []
        base = f"{parsed.scheme}://{parsed.netloc}"

        phases = (
            ("same_domain", [f"{base}{p}" for p in SAME_DOMAIN_PATHS]),
            ("search_based", _name_patterns(source_name)),
        )
        for method, candidates in phases:
            for candidate in candidates:
                if len(tried) >= remaining:
                    return ResolveResult(None, len(tried), "none", tried)
                if candidate.rstrip("/") == broken_url.rstrip("/") or candidate in tried:
                    continue
                tried.append(candidate)
                result = await self.validator.validate("url-resolver", candidate, timeout_s=self.candidate_timeout_s)
                logger.debug("resolver candidate %s -> %s", candidate, result.summary())
                if result.is_valid and result.has_job_indicators:
                    return ResolveResult(candidate, len(tried), method, tried)  # type: ignore[arg-type]

        return ResolveResult(None, len(tried), "none", tried)
