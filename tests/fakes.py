"""In-memory stand-ins for the crawl capabilities (no browser, network or disk)."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from crawler.capabilities import Capabilities
from crawler.models import NormalizedJob, RawJobListing


@dataclass
class FakeCleanup:
    cleaned_html: str
    original_size: int
    cleaned_size: int
    elements_removed: int = 0


@dataclass
class FakeExtraction:
    listings: List[RawJobListing] = field(default_factory=list)
    strategy: str = "none"


@dataclass
class FakeClassification:
    type: str
    confidence: float = 0.9
    method: str = "fake"


@dataclass
class FakeValidation:
    is_valid: bool = True
    status_code: Optional[int] = 200
    error_message: Optional[str] = None


@dataclass
class FakeResolve:
    corrected_url: Optional[str]
    attempts_made: int
    method: str = "none"


@dataclass
class FakeCapture:
    id: str
    url: str
    raw: str
    cleaned: Optional[str] = None
    type: str = "unclassified"
    jobs_extracted: int = 0
    strategy: Optional[str] = None


def jobs(*titles: str, company: str = "Acme") -> List[RawJobListing]:
    return [RawJobListing(title=t, company=company, url=f"https://jobs.example.com/jobs/{i}-x") for i, t in enumerate(titles)]


def fake_normalize(raw: RawJobListing, source_id: str, fallback_company: str = "Unknown Company") -> Optional[NormalizedJob]:
    if not raw.title:
        return None
    return NormalizedJob(
        source_id=source_id,
        dedupe_key=f"{(raw.company or fallback_company).lower()}::{raw.title.lower()}",
        title=raw.title,
        company_name=raw.company or fallback_company,
        source_url=raw.url or "",
    )


class FakeCaptureStore:
    def __init__(self) -> None:
        self.captures: Dict[str, List[FakeCapture]] = {}
        self._n = 0

    def save_capture(self, slug, url, html, page_type="unclassified"):
        self._n += 1
        cid = f"c{self._n}"
        self.captures.setdefault(slug, []).append(FakeCapture(cid, url, html))
        return cid

    def _get(self, slug, cid):
        return next((c for c in self.captures.get(slug, []) if c.id == cid), None)

    def save_cleaned(self, slug, capture_id, cleaned_html):
        self._get(slug, capture_id).cleaned = cleaned_html

    def update_capture_type(self, slug, capture_id, page_type, jobs_extracted, strategy=None):
        c = self._get(slug, capture_id)
        c.type, c.jobs_extracted, c.strategy = page_type, jobs_extracted, strategy

    def read_best_capture(self, slug, *, exclude_id=None):
        for c in reversed(self.captures.get(slug, [])):
            if c.id != exclude_id and c.jobs_extracted > 0:
                return c, c.cleaned or c.raw
        return None

    def iter_cleaned(self, slug):
        for c in self.captures.get(slug, []):
            if c.cleaned:
                yield c, c.cleaned

    def capture_summary(self, slug, limit=10):
        return "\n".join(f"{c.type} jobs={c.jobs_extracted} {c.url}" for c in self.captures.get(slug, [])[-limit:])


class FakeJobStore:
    def __init__(self, visited: Optional[Dict[str, set]] = None) -> None:
        self.jobs: Dict[tuple, NormalizedJob] = {}
        self.visited: Dict[str, set] = visited or {}
        self.statuses: List[tuple] = []

    async def upsert_job(self, job):
        self.jobs[(job.source_id, job.dedupe_key)] = job

    async def mark_visited(self, source_id, normalized_url):
        self.visited.setdefault(source_id, set()).add(normalized_url)

    async def visited_urls(self, source_id):
        return set(self.visited.get(source_id, set()))

    async def set_status(self, source_id, status, jobs_extracted=0, message=None):
        self.statuses.append((source_id, status, jobs_extracted))


class FakeSourceRegistry:
    def __init__(self, sources=()) -> None:
        self.sources = list(sources)
        self.updated: Dict[str, str] = {}

    async def list_enabled(self):
        return [s for s in self.sources if s.enabled_for_scraping]

    async def update_url(self, source_id, url):
        self.updated[source_id] = url


class FakeResolver:
    def __init__(self, result: FakeResolve) -> None:
        self.result = result
        self.calls: List[tuple] = []

    async def resolve(self, broken_url, source_name, attempts_so_far):
        self.calls.append((broken_url, source_name, attempts_so_far))
        return self.result


class FakeValidator:
    def __init__(self, result: Optional[FakeValidation] = None) -> None:
        self.result = result or FakeValidation()

    async def validate(self, source_id, url, **kwargs):
        return self.result


class FakeAdvisor:
    def __init__(self, replies=None) -> None:
        self.replies = list(replies or [])
        self.contexts = []

    async def analyze(self, ctx):
        self.contexts.append(ctx)
        return self.replies.pop(0) if self.replies else {"nextAction": "CONTINUE"}


class FakeSession:
    """Serves canned HTML per URL; records navigation."""

    def __init__(self, pages: Optional[Dict[str, str]] = None, *, fail: Optional[Dict[str, Exception]] = None,
                 nav_delay: float = 0.0) -> None:
        self.pages = pages or {}
        self.fail = fail or {}
        self.nav_delay = nav_delay
        self.navigated: List[str] = []
        self.closed = False
        self._current = None

    async def navigate(self, url, timeout_ms=None):
        self.navigated.append(url)
        if self.nav_delay:
            await asyncio.sleep(self.nav_delay)
        if url in self.fail:
            raise self.fail[url]
        self._current = url
        return 200

    async def wait_for_selector(self, selector, timeout_ms):
        return True

    async def read_rendered_content(self):
        return self.pages.get(self._current, "<html><body></body></html>")

    async def close(self):
        self.closed = True


def make_caps(
    *,
    extract: Optional[Callable] = None,
    classify: Optional[Callable] = None,
    advisor=None,
    resolver=None,
    validator=None,
    captures=None,
    jobs_store=None,
    sources=None,
    open_session=None,
    events=None,
) -> Capabilities:
    async def _no_session(visible=False):
        return FakeSession()

    return Capabilities(
        open_session=open_session or _no_session,
        clean=lambda html, url: FakeCleanup(html, len(html), len(html)),
        extract=extract or (lambda html, url, hints=None: FakeExtraction()),
        classify=classify or (lambda html, url, status=None: FakeClassification("listing")),
        normalize=fake_normalize,
        excerpt=lambda html: html[:100],
        captures=captures or FakeCaptureStore(),
        jobs=jobs_store or FakeJobStore(),
        sources=sources or FakeSourceRegistry(),
        resolver=resolver or FakeResolver(FakeResolve(None, 0)),
        validator=validator or FakeValidator(),
        advisor=advisor or FakeAdvisor(),
        events=events,
    )
