from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Union


class Adaptation(enum.Enum):
    """Deviation from 'visit the next frontier entry', proposed by the brain."""

    CONTINUE = "CONTINUE"
    RETRY_EXTRACTION = "RETRY_EXTRACTION"
    TRY_NEW_URL = "TRY_NEW_URL"
    CAPTCHA_HUMAN_SOLVE = "CAPTCHA_HUMAN_SOLVE"
    LOGIN_WALL_HUMAN = "LOGIN_WALL_HUMAN"
    RETRY_CYCLE_SOON = "RETRY_CYCLE_SOON"

    @classmethod
    def parse(cls, raw: object) -> "Adaptation":
        if isinstance(raw, cls):
            return raw
        key = str(raw or "").strip().upper()
        try:
            return cls(key)
        except ValueError:
            return cls.CONTINUE


class SourceStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class HumanKind(str, enum.Enum):
    LOGIN_WALL = "login_wall"
    CAPTCHA = "captcha"


LISTING_PAGE_TYPES = frozenset({"listing", "category_listing"})


@dataclass
class Source:
    id: str
    name: str
    url: str
    slug: str
    type: str = "job_board"
    enabled_for_scraping: bool = True


@dataclass
class FrontierEntry:
    url: str
    depth: int
    priority: int = 50


@dataclass
class VisitResult:
    url: str
    depth: int
    capture_id: Optional[str] = None
    page_type: Optional[str] = None
    jobs_count: int = 0
    extraction_strategy: Optional[str] = None
    links_discovered: int = 0
    content_size: int = 0
    error: Optional[str] = None
    adaptation: Optional[Adaptation] = None
    suggested_url: Optional[str] = None
    wait_ms: Optional[int] = None
    excerpt: Optional[str] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CrawlState:
    """Per-source mutable crawl state; never shared between sources."""

    start_url: str
    source_domain: str
    max_depth: int = 999
    frontier: list[FrontierEntry] = field(default_factory=list)
    url_seen: set[str] = field(default_factory=set)
    retry_count: int = 0
    retry_target: Optional[str] = None
    url_correction_attempts: int = 0
    zero_job_visits: int = 0
    pages_visited: int = 0
    jobs_extracted: int = 0
    stop_requested: bool = False
    last_result: Optional[VisitResult] = None


@dataclass
class RawJobListing:
    title: str
    company: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    posted_date: Optional[str] = None
    salary: Optional[str] = None
    description: Optional[str] = None
    extracted_from: Optional[str] = None
    confidence: float = 0.5


@dataclass
class NormalizedJob:
    source_id: str
    dedupe_key: str
    title: str
    company_name: str
    source_url: str
    location: Optional[str] = None
    description: Optional[str] = None
    posted_date: Optional[str] = None
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    salary_currency: Optional[str] = None
    apply_url: Optional[str] = None
    confidence: Optional[float] = None
    raw_extract: Optional[dict] = None


@dataclass
class BrainDecision:
    verdict: str = "ok"
    next_action: Adaptation = Adaptation.CONTINUE
    reasoning: str = ""
    suggested_url: Optional[str] = None
    wait_seconds: Optional[float] = None
    cycle_delay_seconds: Optional[float] = None


@dataclass
class BrainContext:
    """Everything the advisor sees about the visit it is asked to judge."""

    source_name: str
    source_url: str
    source_slug: Optional[str]
    jobs_extracted: int
    validation_passed: bool
    validation_message: Optional[str] = None
    recent_log: str = ""
    content_size: Optional[int] = None
    cycle: int = 1
    attempt: Optional[int] = None
    extraction_strategy: Optional[str] = None
    capture_history: Optional[str] = None
    page_type: Optional[str] = None
    depth: Optional[int] = None
    frontier_size: Optional[int] = None
    url_correction_attempts: Optional[int] = None
    page_excerpt: Optional[str] = None


@dataclass
class CrawlOutcome:
    jobs_extracted: int
    pages_visited: int
    reason: str
    cycle_delay_hint: Optional[float] = None


# ---------- Planner actions (closed union) ----------

@dataclass(frozen=True)
class VisitUrl:
    url: str
    depth: int
    wait_ms: int = 0  # render time to allow before a retried visit


@dataclass(frozen=True)
class TriggerLoginWall:
    url: str


@dataclass(frozen=True)
class TriggerCaptcha:
    url: str


@dataclass(frozen=True)
class ApplyUrlCorrection:
    url: str
    source_name: str


@dataclass(frozen=True)
class RetryWait:
    wait_ms: int
    reason: str
    retry_url: Optional[str] = None
    retry_depth: int = 0


@dataclass(frozen=True)
class CycleDone:
    reason: str
    terminal: bool = False


Action = Union[VisitUrl, TriggerLoginWall, TriggerCaptcha, ApplyUrlCorrection, RetryWait, CycleDone]
