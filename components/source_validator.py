from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from crawler.utils import TransientHTTPError, http_status_to_exc, retry_async

logger = logging.getLogger(__name__)

# "recaptcha" alone shows up in scripts on normal pages; only clear prompts count.
BLOCKER_PATTERNS = {
    "captcha": (
        "complete the captcha", "verify you are human", "solve the captcha",
        "captcha challenge", "please complete the captcha",
    ),
    "login_required": ("login required", "please sign in", "sign in to continue", "log in to continue"),
    "access_denied": ("access denied", "403 forbidden", "blocked by"),
    "not_found": (
        "404 - page not found", "404 page", "page not found", "this page does not exist",
        "no longer available",
    ),
}

JOB_INDICATORS = (
    "job", "career", "position", "opening", "hiring", "vacanc",
    "job-card", "job-listing", "jobposting", "job-title", "apply now",
)


@dataclass
class ValidationResult:
    source_id: str
    url: str
    is_valid: bool
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    has_job_indicators: bool = False
    blockers: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.is_valid:
            return f"valid (HTTP {self.status_code}, job indicators={self.has_job_indicators})"
        return f"invalid (HTTP {self.status_code}): {self.error_message}"


def detect_blockers(html: str) -> List[str]:
    lower = (html or "").lower()
    return [kind for kind, pats in BLOCKER_PATTERNS.items() if any(p in lower for p in pats)]


def has_job_content(html: str) -> bool:
    lower = (html or "").lower()
    return any(p in lower for p in JOB_INDICATORS)


class SourceValidator:
    """HTTP reachability + blocker check for a source URL. Never raises."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    @retry_async(max_attempts=3, initial_delay_ms=500, max_delay_ms=4000, jitter_ms=300)
    async def _get(self, url: str, timeout_s: Optional[float]) -> httpx.Response:
        try:
            resp = await self.client.get(url, timeout=timeout_s) if timeout_s else await self.client.get(url)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransientHTTPError(str(e) or type(e).__name__) from e
        exc = http_status_to_exc(resp.status_code)
        if isinstance(exc, TransientHTTPError):
            raise exc
        return resp

    async def validate(self, source_id: str, url: str, *, timeout_s: Optional[float] = None) -> ValidationResult:
        try:
            resp = await self._get(url, timeout_s)
        except TransientHTTPError as e:
            logger.info("Validation of %s failed: %s", url, e)
            return ValidationResult(source_id, url, False, error_message=str(e))
        except httpx.HTTPError as e:
            logger.info("Validation of %s failed: %s", url, e)
            return ValidationResult(source_id, url, False, error_message=str(e) or type(e).__name__)

        html = resp.text or ""
        blockers = detect_blockers(html)
        status = resp.status_code
        if blockers:
            return ValidationResult(
                source_id, url, False, status,
                error_message=f"Blocked: {blockers[0]} detected",
                has_job_indicators=has_job_content(html),
                blockers=blockers,
            )
        return ValidationResult(
            source_id, url,
            is_valid=200 <= status < 400,
            status_code=status,
            error_message=None if status < 400 else f"HTTP {status}",
            has_job_indicators=has_job_content(html),
        )
