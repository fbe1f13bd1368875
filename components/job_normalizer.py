from __future__ import annotations

import re
from typing import Optional, Tuple

from crawler.models import NormalizedJob, RawJobListing

_WS = re.compile(r"\s+")
_SALARY_NUM = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*([kK])?")

_US_STATES = {
    "CA": "California", "NY": "New York", "TX": "Texas", "WA": "Washington",
    "MA": "Massachusetts", "IL": "Illinois", "CO": "Colorado", "FL": "Florida",
    "GA": "Georgia", "OR": "Oregon", "NC": "North Carolina", "VA": "Virginia",
    "PA": "Pennsylvania", "NJ": "New Jersey", "AZ": "Arizona", "UT": "Utah",
}


def _clean(s: Optional[str]) -> str:
    return _WS.sub(" ", s or "").strip()


def dedupe_key(title: str, company: str) -> str:
    def norm(s: str) -> str:
        return re.sub(r"[^a-z0-9]", "", (s or "").lower())
    return f"{norm(company)}::{norm(title)}"


def canonicalize_location(location: Optional[str]) -> Optional[str]:
    loc = _clean(location)
    if not loc:
        return None
    # only expand state codes in "City, ST" shapes
    if "," in loc:
        for abbrev, full in _US_STATES.items():
            if full not in loc:
                loc = re.sub(rf"\b{abbrev}\b", full, loc)
    return loc[:255]


def parse_salary(raw: Optional[str]) -> Tuple[Optional[float], Optional[float], Optional[str]]:
    if not raw:
        return None, None, None
    nums = []
    for num, k in _SALARY_NUM.findall(raw):
        try:
            v = float(num.replace(",", ""))
        except ValueError:
            continue
        nums.append(v * 1000 if k else v)
    if not nums:
        return None, None, None
    currency = "USD"
    if "£" in raw:
        currency = "GBP"
    elif "€" in raw:
        currency = "EUR"
    elif "CAD" in raw:
        currency = "CAD"
    return min(nums), max(nums), currency


def normalize(raw: RawJobListing, source_id: str, fallback_company: str = "Unknown Company") -> Optional[NormalizedJob]:
    """Map an extracted listing onto the cache row shape. None if it has no title."""
    title = _clean(raw.title)[:512]
    if not title:
        return None
    company = (_clean(raw.company) or fallback_company)[:255]
    source_url = (raw.url or raw.extracted_from or "")[:2048]
    lo, hi, cur = parse_salary(raw.salary)
    return NormalizedJob(
        source_id=source_id,
        dedupe_key=dedupe_key(title, company),
        title=title,
        company_name=company,
        source_url=source_url,
        location=canonicalize_location(raw.location),
        description=_clean(raw.description) or None,
        posted_date=_clean(raw.posted_date) or None,
        salary_min=lo,
        salary_max=hi,
        salary_currency=cur,
        apply_url=raw.url,
        confidence=raw.confidence,
        raw_extract={
            "title": raw.title,
            "company": raw.company,
            "location": raw.location,
            "salary": raw.salary,
            "extracted_from": raw.extracted_from,
        },
    )
