from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse

import httpx
import tldextract
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

# ========== Environment helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)


# ========== Exceptions ==========

class TransientHTTPError(Exception):
    """Retryable transient HTTP/Net error (429/5xx/timeouts)."""

class NonRetryableHTTPError(Exception):
    """Non-retryable client error (e.g., 404) or policy block."""

class NavigationError(TransientHTTPError):
    """Browser navigation failed (timeout, DNS, net::ERR_*)."""

class StopRequested(Exception):
    """Raised at a suspension point once the stop token is set."""

class HumanWaitTimeout(Exception):
    """No human resolution signal arrived before the deadline."""

class SourceFatalError(RuntimeError):
    """An exception escaped a source's crawl loop."""

    def __init__(self, source_id: str, cause: BaseException):
        super().__init__(f"source {source_id} failed: {cause!r}")
        self.source_id = source_id
        self.cause = cause

def http_status_to_exc(status: Optional[int]) -> Optional[Exception]:
    if status is None:
        return None
    if status in (404, 410):
        return NonRetryableHTTPError(f"HTTP {status}")
    if status == 429 or status >= 500:
        return TransientHTTPError(f"HTTP {status}")
    if status >= 400:
        return NonRetryableHTTPError(f"HTTP {status}")
    return None


# ========== URL & domain helpers ==========

# bundled public suffix snapshot; never fetched at runtime
_TLD = tldextract.TLDExtract(suffix_list_urls=())

def get_base_domain(host: str) -> str:
    """
    Return registrable domain (eTLD+1); fall back to host if unknown.
    """
    if not host:
        return "unknown-host"
    host = host.strip().lower()
    if host.startswith("www."):
        host = host[4:]
    try:
        ext = _TLD(host)
        td = getattr(ext, "top_domain_under_public_suffix", None)
        if td:
            return td
        if ext.domain and ext.suffix:
            return f"{ext.domain}.{ext.suffix}"
    except Exception:
        pass
    return host

def domain_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host

# Query keys that survive url_key(); pagination seeds differ only by these.
_KEY_QUERY_KEYS = ("page",)

def url_key(url: str) -> str:
    """
    Dedupe key: lowercased scheme/host, no fragment, no trailing slash and no
    query except the page number.
    """
    parsed = urlparse((url or "").strip())
    host = (parsed.hostname or "").lower()
    netloc = f"{host}:{parsed.port}" if parsed.port and parsed.port not in (80, 443) else host
    path = parsed.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    kept = [(k, v) for k, v in parse_qsl(parsed.query) if k.lower() in _KEY_QUERY_KEYS]
    query = urlencode(kept)
    key = f"{(parsed.scheme or 'https').lower()}://{netloc}{'' if path == '/' else path}"
    return f"{key}?{query}" if query else key

def is_http_url(url: str) -> bool:
    s = urlparse(url).scheme.lower()
    return s in {"http", "https"}


# ========== HTTPX client ==========

def httpx_client(cfg, timeout_ms: Optional[int] = None, **kwargs) -> httpx.AsyncClient:
    """Preconfigured AsyncClient with browser-like headers; extra kwargs pass through."""
    timeout = httpx.Timeout((timeout_ms or cfg.validator_timeout_ms) / 1000.0)
    headers = {
        "User-Agent": cfg.user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }
    return httpx.AsyncClient(
        timeout=timeout,
        headers=headers,
        follow_redirects=True,
        limits=httpx.Limits(max_keepalive_connections=8, max_connections=32),
        **kwargs,
    )


# ========== Retry decorators ==========

def retry_async(max_attempts: int, initial_delay_ms: int, max_delay_ms: int, jitter_ms: int):
    def _decorator(fn: Callable[..., Awaitable]):
        @retry(
            reraise=True,
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential_jitter(
                initial=initial_delay_ms / 1000.0,
                max=max_delay_ms / 1000.0,
                jitter=jitter_ms / 1000.0,
            ),
            retry=retry_if_exception_type((TransientHTTPError, TimeoutError)),
        )
        async def wrapper(*args, **kwargs):
            return await fn(*args, **kwargs)
        return wrapper
    return _decorator


# ========== Static parsing / HTML utils ==========

def extract_links_static(html: str, base_url: str) -> list[str]:
    links: list[str] = []
    seen = set()
    try:
        soup = BeautifulSoup(html, "lxml")
        for a in soup.select("a[href]"):
            href = (a.get("href") or "").strip()
            if not href or href.startswith(("javascript:", "mailto:", "tel:", "#")):
                continue
            abs_u = urljoin(base_url, href)
            abs_u = re.sub(r"#.*$", "", abs_u)
            if abs_u not in seen:
                seen.add(abs_u)
                links.append(abs_u)
        return links
    except Exception:
        return []

def slugify(text: str, max_len: int = 80) -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9\-_.]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-._")
    if len(text) > max_len:
        text = text[:max_len].rstrip("-._")
    return text or "untitled"

def safe_json_loads(s: str) -> Optional[dict]:
    if not isinstance(s, str):
        return None
    try:
        obj = json.loads(s)
        return obj if isinstance(obj, dict) else None
    except Exception:
        pass
    # LLMs like to wrap JSON in prose; take the outermost object
    start, end = s.find("{"), s.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        obj = json.loads(s[start:end + 1])
        return obj if isinstance(obj, dict) else None
    except Exception:
        return None


# ========== File I/O ==========

def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """
    Write text atomically using a NamedTemporaryFile and os.replace on the same filesystem.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding=encoding, dir=str(path.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# ========== Async helpers ==========

async def try_close_page(page, timeout_ms: int = 1500) -> None:
    """
    Best-effort, bounded-time page close to avoid dangling Playwright objects.
    """
    if page is None:
        return
    try:
        await asyncio.wait_for(page.close(), timeout=max(0.1, (timeout_ms or 1) / 1000.0))
    except Exception:
        # page might already be gone
        pass

async def await_cancelled(task: asyncio.Task, *, timeout: float = 1.0) -> None:
    """
    Cancel an asyncio task and await its completion to avoid the
    'Future exception was never retrieved' warning.
    """
    if task.done():
        with suppress(Exception, asyncio.CancelledError):
            _ = task.result()
        return
    task.cancel()
    with suppress(asyncio.CancelledError, PlaywrightError, Exception):
        await asyncio.wait_for(task, timeout=timeout)
