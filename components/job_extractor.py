from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from crawler.models import RawJobListing

logger = logging.getLogger(__name__)

_JOB_DETAIL_PATH = re.compile(r"/(jobs?|positions?|openings?|careers?)/(\d+[-/]?[^/?#]*|[^/?#]*-\d+[^/?#]*)/?$", re.I)
_COMPANY_FROM_LOGO = re.compile(r"^(.+?)\s+company logo$", re.I)
_SALARY = re.compile(r"\$[\d,.]+k?\s*[–-]\s*\$[\d,.]+k?", re.I)
_NAV_TEXT = re.compile(r"^(apply|apply now|view|view job|see more|learn more|next|previous|more|jobs?)$", re.I)

MAX_NEXT_DATA_DEPTH = 10


@dataclass
class ExtractionResult:
    listings: List[RawJobListing] = field(default_factory=list)
    strategy: str = "none"
    confidence: float = 0.0


def extract(html: str, url: str, hints: Optional[dict] = None) -> ExtractionResult:
    """
    Pull job postings out of a page, trying embedded structured data first:
      1) __NEXT_DATA__ job objects (SPA boards)
      2) JSON-LD JobPosting blocks
      3) anchors that look like job-detail links
    Cleaned HTML has no <script> tags, so 1) and 2) only fire on raw captures.
    """
    if not html:
        return ExtractionResult()
    try:
        soup = BeautifulSoup(html, "lxml")
    except Exception:
        soup = BeautifulSoup(html, "html.parser")

    jobs = _from_next_data(soup, url)
    if jobs:
        return ExtractionResult(jobs, "site_specific", 0.85)

    jobs = _from_json_ld(soup, url)
    if jobs:
        return ExtractionResult(jobs, "json_ld", 0.95)

    jobs = _from_job_anchors(soup, url)
    if jobs:
        return ExtractionResult(jobs, "anchor_heuristic", 0.5)
    return ExtractionResult([], "none", 0.0)


# ---------------------------------------------------------------------------
# __NEXT_DATA__
# ---------------------------------------------------------------------------

def _from_next_data(soup: BeautifulSoup, page_url: str) -> List[RawJobListing]:
    tag = soup.find("script", id="__NEXT_DATA__")
    if tag is None or not tag.string:
        return []
    try:
        data = json.loads(tag.string)
    except ValueError:
        logger.debug("__NEXT_DATA__ on %s is not valid JSON", page_url)
        return []
    return _dedupe(_walk_next_data(data, page_url, 0))


def _job_from_obj(obj: dict, page_url: str) -> Optional[RawJobListing]:
    title = obj.get("title") or obj.get("name") or obj.get("position")
    if not isinstance(title, str) or len(title.strip()) < 2:
        return None
    comp = obj.get("company")
    if isinstance(comp, dict):
        company = comp.get("name")
    else:
        company = comp or obj.get("companyName")
    link = obj.get("url") or obj.get("jobUrl") or obj.get("slug")
    if isinstance(link, str) and link:
        link = link if link.startswith("http") else urljoin(page_url, link)
    else:
        link = page_url
    location = obj.get("location") or obj.get("locationNames")
    if isinstance(location, list):
        location = ", ".join(str(x) for x in location if x)
    return RawJobListing(
        title=title.strip()[:512],
        company=str(company).strip() if company else None,
        location=location if isinstance(location, str) and location else None,
        url=link,
        extracted_from=page_url,
        confidence=0.9,
    )


def _walk_next_data(node: Any, page_url: str, depth: int) -> Iterable[RawJobListing]:
    if depth > MAX_NEXT_DATA_DEPTH:
        return
    if isinstance(node, dict):
        for key in ("jobs", "jobListings", "edges"):
            items = node.get(key)
            if isinstance(items, list):
                for item in items:
                    if isinstance(item, dict):
                        job = _job_from_obj(item.get("node", item), page_url)
                        if job:
                            yield job
        for v in node.values():
            if isinstance(v, (dict, list)):
                yield from _walk_next_data(v, page_url, depth + 1)
    elif isinstance(node, list):
        for v in node:
            if isinstance(v, (dict, list)):
                yield from _walk_next_data(v, page_url, depth + 1)


# ---------------------------------------------------------------------------
# JSON-LD
# ---------------------------------------------------------------------------

def _format_salary(base: Any) -> Optional[str]:
    if not isinstance(base, dict):
        return None
    cur = base.get("currency") or ""
    val = base.get("value")
    if isinstance(val, dict):
        lo, hi = val.get("minValue"), val.get("maxValue")
        if lo is not None and hi is not None:
            return f"{cur} {lo}-{hi}".strip()
        single = val.get("value", lo or hi)
        return f"{cur} {single}".strip() if single is not None else None
    return f"{cur} {val}".strip() if val is not None else None


def _ld_location(loc: Any) -> Optional[str]:
    if isinstance(loc, list):
        loc = loc[0] if loc else None
    if isinstance(loc, dict):
        addr = loc.get("address") or {}
        if isinstance(addr, dict):
            parts = [addr.get("addressLocality"), addr.get("addressRegion"), addr.get("addressCountry")]
            parts = [p if isinstance(p, str) else (p or {}).get("name") for p in parts]
            return ", ".join(p for p in parts if p) or None
    return None


def _iter_ld_nodes(data: Any) -> Iterable[dict]:
    if isinstance(data, list):
        for d in data:
            yield from _iter_ld_nodes(d)
    elif isinstance(data, dict):
        if "@graph" in data:
            yield from _iter_ld_nodes(data["@graph"])
        yield data


def _from_json_ld(soup: BeautifulSoup, page_url: str) -> List[RawJobListing]:
    out: List[RawJobListing] = []
    for tag in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(tag.string or "")
        except ValueError:
            continue
        for node in _iter_ld_nodes(data):
            kind = node.get("@type")
            kinds = kind if isinstance(kind, list) else [kind]
            if "JobPosting" not in kinds:
                continue
            org = node.get("hiringOrganization")
            out.append(RawJobListing(
                title=str(node.get("title") or "").strip()[:512],
                company=(org.get("name") if isinstance(org, dict) else org) or None,
                location=_ld_location(node.get("jobLocation")),
                url=node.get("url") or page_url,
                posted_date=node.get("datePosted") or None,
                salary=_format_salary(node.get("baseSalary")),
                description=node.get("description") or None,
                extracted_from=page_url,
                confidence=0.95,
            ))
    return _dedupe(j for j in out if j.title)


# ---------------------------------------------------------------------------
# Anchor heuristics
# ---------------------------------------------------------------------------

def _title_from_slug(path: str) -> str:
    last = path.rstrip("/").rsplit("/", 1)[-1]
    last = re.sub(r"^\d+-", "", last)
    last = re.sub(r"-\d+$", "", last)
    return last.replace("-", " ").strip().title()


def _from_job_anchors(soup: BeautifulSoup, page_url: str) -> List[RawJobListing]:
    page_host = (urlparse(page_url).hostname or "").lower()
    out: List[RawJobListing] = []
    for a in soup.select("a[href]"):
        href = urljoin(page_url, a.get("href") or "")
        parsed = urlparse(href)
        if (parsed.hostname or "").lower() != page_host:
            continue
        if not _JOB_DETAIL_PATH.search(parsed.path or ""):
            continue
        text = a.get_text(" ", strip=True)
        if not text or _NAV_TEXT.match(text) or len(text) > 160:
            text = _title_from_slug(parsed.path)
        if len(text) < 2:
            continue

        company = None
        salary = None
        container = a.find_parent(["li", "article", "div", "tr"])
        if container is not None:
            logo = container.find("img", alt=_COMPANY_FROM_LOGO)
            if logo is not None:
                company = _COMPANY_FROM_LOGO.match(logo.get("alt", "")).group(1).strip()
            m = _SALARY.search(container.get_text(" ", strip=True))
            if m:
                salary = m.group(0)

        out.append(RawJobListing(
            title=text[:512],
            company=company,
            url=href.split("#", 1)[0],
            salary=salary,
            extracted_from=page_url,
            confidence=0.5,
        ))
    return _dedupe(out)


def _dedupe(jobs: Iterable[RawJobListing]) -> List[RawJobListing]:
    seen: set[tuple[str, str]] = set()
    out: List[RawJobListing] = []
    for j in jobs:
        key = ((j.url or "").lower(), j.title.lower())
        if key in seen:
            continue
        seen.add(key)
        out.append(j)
    return out
