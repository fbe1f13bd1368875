from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .models import CrawlState, FrontierEntry
from .utils import is_http_url, url_key

logger = logging.getLogger(__name__)

# ===== Paths that are never job content (prefix match) =====
_BLOCKED_PATH_PREFIXES = (
    "/api/", "/static/", "/assets/", "/css/", "/js/", "/fonts/", "/images/", "/img/",
    "/media/", "/wp-content/", "/wp-admin/", "/feed/", "/rss/", "/.well-known/",
    "/cdn-cgi/", "/_next/", "/talent/_next/",
)

# ===== Blocked only as the full path; /company/login-startup stays allowed =====
_BLOCKED_EXACT_PATHS = frozenset({
    "/login", "/signin", "/signup", "/register", "/auth", "/privacy", "/terms",
    "/robots.txt", "/sitemap.xml",
})

_EXTERNAL_ATS_DOMAINS = (
    "greenhouse.io", "lever.co", "workday.com", "icims.com", "smartrecruiters.com",
    "ashbyhq.com", "bamboohr.com", "breezy.hr", "recruitee.com", "workable.com",
    "jazz.co", "jobvite.com", "myworkdayjobs.com", "taleo.net", "successfactors.com",
)

_ASSET_EXT = re.compile(r"\.(js|css|png|jpe?g|gif|svg|ico|woff2?|ttf|eot|map|json|xml)$", re.I)

_LISTING_PATH = re.compile(r"(/jobs/?$|/jobs/search/?$|/company/[^/]+/jobs/?$)", re.I)
_COMPANY_JOBS = re.compile(r"/company/[^/]+/jobs/?$", re.I)
_COMPANY = re.compile(r"/company/[^/]+/?$", re.I)
_JOB_DETAIL = re.compile(r"(/jobs/\d+-|/job/)", re.I)
_CATEGORY = re.compile(r"/(role|category|department)/", re.I)
_PAGE_PARAM = re.compile(r"(^|&)page=\d+", re.I)

MAX_PAGINATION_SEEDS = 30

# Strategy contract: enqueue into the frontier and return how many entries were added.
RepopulateStrategy = Callable[[CrawlState, "Frontier"], int]


def is_external_apply_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(d in host for d in _EXTERNAL_ATS_DOMAINS)


def estimate_url_priority(url: str) -> int:
    """Higher is visited sooner. Listing pages beat detail pages."""
    parsed = urlparse(url)
    path = (parsed.path or "/").lower()
    if _COMPANY_JOBS.search(path):
        return 85
    if path.endswith("/jobs") or path.endswith("/jobs/") or re.search(r"/jobs/search/?$", path):
        return 90
    if _COMPANY.search(path):
        return 80
    if _PAGE_PARAM.search(parsed.query or ""):
        return 75
    if _CATEGORY.search(path):
        return 70
    if _JOB_DETAIL.search(path):
        return 40
    return 50


def generate_pagination_seeds(url: str, max_count: int) -> list[str]:
    """
    Likely next pages for a listing URL: ?page=2 .. ?page=max_count+1, other
    query parameters preserved. Non-listing paths yield nothing.
    """
    max_count = max(0, min(int(max_count), MAX_PAGINATION_SEEDS))
    parsed = urlparse(url)
    if not max_count or not _LISTING_PATH.search(parsed.path or ""):
        return []
    base_q = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k.lower() != "page"]
    seeds = []
    for n in range(2, max_count + 2):
        q = urlencode(base_q + [("page", str(n))])
        seeds.append(urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", q, "")))
    return seeds


def filter_links(
    candidates: Iterable[str],
    *,
    source_domain: str,
    url_seen: set[str],
    frontier: Sequence[FrontierEntry],
    current_depth: int,
    max_depth: int,
) -> list[FrontierEntry]:
    """
    Keep same-domain, unseen, unqueued links whose depth stays within max_depth.
    Returned entries carry depth = current_depth + 1 and an estimated priority.
    """
    next_depth = current_depth + 1
    if next_depth > max_depth:
        return []

    queued = {url_key(e.url) for e in frontier}
    domain = (source_domain or "").lower()
    out: list[FrontierEntry] = []

    for raw in candidates:
        if not raw or not is_http_url(raw):
            continue
        key = url_key(raw)
        if key in url_seen or key in queued:
            continue
        parsed = urlparse(raw)
        host = (parsed.hostname or "").lower()
        if not host or not (domain in host or host in domain):
            continue
        if is_external_apply_url(raw):
            continue
        path = (parsed.path or "/").lower()
        if path.startswith(_BLOCKED_PATH_PREFIXES):
            continue
        if path.rstrip("/") in _BLOCKED_EXACT_PATHS:
            continue
        if _ASSET_EXT.search(path):
            continue
        queued.add(key)
        out.append(FrontierEntry(url=raw.split("#", 1)[0], depth=next_depth, priority=estimate_url_priority(raw)))
    return out


class Frontier:
    """
    Priority queue view over CrawlState.frontier plus the visited set.

    A normalized key is in at most one of (queued, seen) at any time.
    """

    def __init__(self, state: CrawlState) -> None:
        self.state = state

    def __len__(self) -> int:
        return len(self.state.frontier)

    def is_seen(self, url: str) -> bool:
        return url_key(url) in self.state.url_seen

    def is_queued(self, url: str) -> bool:
        key = url_key(url)
        return any(url_key(e.url) == key for e in self.state.frontier)

    def push(self, url: str, depth: int, priority: int = 50, *, front: bool = False) -> bool:
        if not url or not is_http_url(url):
            return False
        if depth > self.state.max_depth:
            logger.debug("depth %d > max %d; dropping %s", depth, self.state.max_depth, url)
            return False
        if self.is_seen(url) or self.is_queued(url):
            return False
        entry = FrontierEntry(url=url, depth=depth, priority=priority)
        if front:
            self.state.frontier.insert(0, entry)
        else:
            self.state.frontier.append(entry)
        return True

    def extend(self, entries: Iterable[FrontierEntry]) -> int:
        return sum(1 for e in entries if self.push(e.url, e.depth, e.priority))

    def peek_best(self) -> Optional[FrontierEntry]:
        return best_entry(self.state)

    def pop_best(self) -> Optional[FrontierEntry]:
        entry = best_entry(self.state)
        if entry is not None:
            self.state.frontier.remove(entry)
        return entry

    def take(self, url: str) -> Optional[FrontierEntry]:
        key = url_key(url)
        for e in self.state.frontier:
            if url_key(e.url) == key:
                self.state.frontier.remove(e)
                return e
        return None

    def mark_seen(self, url: str) -> None:
        self.state.url_seen.add(url_key(url))

    def unsee(self, url: str) -> None:
        self.state.url_seen.discard(url_key(url))

    def purge(self, url: str) -> int:
        """Drop every queued copy of url. Returns how many were removed."""
        key = url_key(url)
        before = len(self.state.frontier)
        self.state.frontier[:] = [e for e in self.state.frontier if url_key(e.url) != key]
        return before - len(self.state.frontier)


def best_entry(state: CrawlState) -> Optional[FrontierEntry]:
    """Highest priority unseen entry; earliest queued wins ties. Pure."""
    best: Optional[FrontierEntry] = None
    for e in state.frontier:
        if url_key(e.url) in state.url_seen:
            continue
        if best is None or e.priority > best.priority:
            best = e
    return best


# ---------------------------------------------------------------------------
# Repopulation: ordered fallbacks, first non-empty wins
# ---------------------------------------------------------------------------

def repopulate(state: CrawlState, frontier: Frontier, strategies: Sequence[RepopulateStrategy]) -> int:
    for strategy in strategies:
        name = getattr(strategy, "__name__", type(strategy).__name__)
        try:
            added = int(strategy(state, frontier) or 0)
        except Exception as e:
            logger.warning("repopulate strategy %s failed: %s", name, e)
            continue
        if added > 0:
            logger.info("Frontier repopulated with %d entries via %s", added, name)
            return added
    return 0


def from_archived_links(links_by_capture: Callable[[], Iterable[Iterable[str]]]) -> RepopulateStrategy:
    """Re-run link filtering over links re-extracted from archived cleaned captures."""

    def from_archived_captures(state: CrawlState, frontier: Frontier) -> int:
        added = 0
        for links in links_by_capture():
            entries = filter_links(
                links,
                source_domain=state.source_domain,
                url_seen=state.url_seen,
                frontier=state.frontier,
                current_depth=0,
                max_depth=state.max_depth,
            )
            added += frontier.extend(entries)
        return added

    return from_archived_captures


def reseed_start_url(state: CrawlState, frontier: Frontier) -> int:
    """Clear the start URL's seen flag and queue it again at depth 0."""
    frontier.unsee(state.start_url)
    if frontier.is_queued(state.start_url):
        return 1
    return 1 if frontier.push(state.start_url, 0, 100, front=True) else 0
