from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

PAGE_TYPES = (
    "listing", "detail", "category_listing", "company_careers", "pagination",
    "search_landing", "login_wall", "captcha_challenge", "error", "expired",
    "external_apply", "irrelevant",
)

CONFIDENCE_THRESHOLD = 0.6

_CAPTCHA_PHRASES = (
    "verify you are human", "complete the captcha", "captcha challenge",
    "solve the captcha", "please verify",
)
_LOGIN_PHRASES = (
    "sign in to continue", "log in to continue", "login required",
    "please sign in", "please log in",
)
_EXPIRED_PHRASES = (
    "no longer available", "job has been removed", "position has been filled",
    "listing has expired", "this job is closed",
)
_ATS_DOMAINS = ("greenhouse.io", "lever.co", "workday.com", "icims.com", "smartrecruiters.com", "ashbyhq.com")
_IRRELEVANT_PATHS = ("/blog", "/about", "/privacy", "/terms", "/contact", "/faq", "/help")

_DETAIL_URL = re.compile(
    r"(/jobs/\d+-|/job/\d+|/jobs/view/\d+|/careers?/details?/|/career/[^/]+|/position/[^/]+|"
    r"/opening/[^/]+|/vacancy/[^/]+|/job/[^/]+)"
)
_JOB_LINK = re.compile(r"/jobs/\d+-")
_SALARY_RANGE = re.compile(r"\$[\d,]+(\s*to|-)\s*\$[\d,]+")
_PAGE_N = re.compile(r"[?&]page=(\d+)")


@dataclass
class Classification:
    type: str
    confidence: float
    method: str = "heuristic"
    signals: List[str] = field(default_factory=list)


def _any(text: str, phrases) -> List[str]:
    return [p for p in phrases if p in text]


def _scores(html: str, url: str, status_code: Optional[int]) -> dict[str, tuple[float, List[str]]]:
    lower = (html or "").lower()
    url_l = (url or "").lower()
    path = (urlparse(url_l).path or "/")
    size = len(html or "")
    job_links = len(_JOB_LINK.findall(lower))
    out: dict[str, tuple[float, List[str]]] = {}

    # error
    s, sig = 0.0, []
    if status_code is not None and status_code >= 400:
        s += 0.8
        sig.append(f"status_{status_code}")
    if "page not found" in lower:
        s += 0.3
        sig.append("not_found_text")
    if size < 3000 and ("not found" in lower or "does not exist" in lower):
        s += 0.3
        sig.append("short_error_page")
    out["error"] = (s, sig)

    # captcha
    hits = _any(lower, _CAPTCHA_PHRASES)
    s = 0.4 * len(hits)
    if size < 5000 and s > 0:
        s += 0.2
    out["captcha_challenge"] = (s, hits)

    # login wall
    hits = _any(lower, _LOGIN_PHRASES)
    s, sig = 0.35 * len(hits), list(hits)
    if "<form" in lower and ("password" in lower or "email" in lower) and "/jobs/" not in lower:
        s += 0.25
        sig.append("login_form")
    if any(p in path for p in ("/login", "/signin", "/auth")):
        s += 0.3
        sig.append("login_url")
    out["login_wall"] = (s, sig)

    hits = _any(lower, _EXPIRED_PHRASES)
    out["expired"] = (0.4 * len(hits), hits)

    # detail
    s, sig = 0.0, []
    if _DETAIL_URL.search(path) or (re.search(r"/jobs/[^/?#]+", path) and not path.rstrip("/").endswith("/search")):
        s += 0.5
        sig.append("detail_url")
    if lower.count("<h1") == 1:
        s += 0.15
        sig.append("single_h1")
    if any(p in lower for p in ("apply now", "apply for this", "start application", "submit application")):
        s += 0.2
        sig.append("apply_button")
    if "attach" in lower and ("resume" in lower or "curriculum" in lower):
        s += 0.25
        sig.append("attach_resume")
    if any(p in lower for p in ("job description", "responsibilities", "requirements")):
        s += 0.15
        sig.append("jd_keywords")
    if any(p in lower for p in ("salary", "compensation", "base salary range")) or _SALARY_RANGE.search(lower):
        s += 0.2
        sig.append("salary")
    if job_links <= 2:
        s += 0.1
    out["detail"] = (s, sig)

    # listing
    s, sig = 0.0, []
    if job_links >= 5:
        s += 0.5
        sig.append(f"job_links={job_links}")
    elif job_links >= 2:
        s += 0.25
        sig.append(f"job_links={job_links}")
    if path.rstrip("/").endswith("/jobs") or "/jobs?" in url_l or "/jobs/search" in path:
        s += 0.3
        sig.append("listing_url")
    if any(p in lower for p in ("job-card", "job-listing", "jobposting")):
        s += 0.15
        sig.append("job_card")
    out["listing"] = (s, sig)

    s, sig = 0.0, []
    if re.search(r"/company/[^/]+/?$", path) or re.search(r"/company/[^/]+/jobs", path):
        s += 0.4
        sig.append("company_url")
    if any(p in lower for p in ("open positions", "view jobs", "see all jobs")):
        s += 0.25
        sig.append("company_jobs_cta")
    out["company_careers"] = (s, sig)

    s, sig = 0.0, []
    if re.search(r"/(role|category|department)/", path):
        s += 0.4
        sig.append("category_url")
    if any(p in lower for p in ("engineering jobs", "remote jobs", "marketing jobs")):
        s += 0.2
        sig.append("category_heading")
    if job_links >= 3 and s > 0:
        s += 0.2
    out["category_listing"] = (s, sig)

    s, sig = 0.0, []
    m = _PAGE_N.search(url_l)
    if m and m.group(1) != "1":
        s += 0.5
        sig.append("page_param")
    if any(p in lower for p in ("next page", "load more", "show more")):
        s += 0.15
        sig.append("pagination_text")
    out["pagination"] = (s, sig)

    s, sig = 0.0, []
    if "search" in lower and ("<form" in lower or "search-input" in lower):
        s += 0.2
        sig.append("search_form")
    if job_links == 0 and s > 0:
        s += 0.2
    out["search_landing"] = (s, sig)

    host = urlparse(url_l).hostname or ""
    hits = [d for d in _ATS_DOMAINS if d in host]
    out["external_apply"] = (0.7 if hits else 0.0, hits)

    s, sig = 0.0, []
    for p in _IRRELEVANT_PATHS:
        if path.startswith(p):
            s += 0.4
            sig.append(p)
    if job_links == 0 and not any(p in lower for p in ("career", "position", "hiring", "job")):
        s += 0.15
        sig.append("no_job_signals")
    out["irrelevant"] = (s, sig)
    return out


def classify(html: str, url: str, status_code: Optional[int] = None) -> Classification:
    """
    Heuristic page-type classifier. The best-scoring type wins; below
    CONFIDENCE_THRESHOLD it is still returned but tagged low confidence.
    """
    scores = _scores(html, url, status_code)
    best_type, (best_score, signals) = max(scores.items(), key=lambda kv: kv[1][0])
    if best_score <= 0:
        return Classification("irrelevant", 0.3, "heuristic", ["no_signals"])
    if best_score >= CONFIDENCE_THRESHOLD:
        return Classification(best_type, min(0.95, best_score), "heuristic", signals)
    return Classification(best_type, best_score, "heuristic_low_confidence", signals)
