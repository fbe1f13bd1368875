from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from .browser import SessionFactory, session_factory
from .config import Config

logger = logging.getLogger(__name__)


@dataclass
class Capabilities:
    """
    External collaborators of the crawl core. The loop, pipeline and handlers
    only talk to these, so tests swap in fakes field by field.
    """

    open_session: SessionFactory
    clean: Callable[..., Any]
    extract: Callable[..., Any]
    classify: Callable[..., Any]
    normalize: Callable[..., Any]
    excerpt: Callable[[str], str]
    captures: Any
    jobs: Any
    sources: Any
    resolver: Any
    validator: Any
    advisor: Any
    events: Any = None
    _closers: List[Callable[[], Any]] = field(default_factory=list, repr=False)

    async def aclose(self) -> None:
        for closer in reversed(self._closers):
            try:
                res = closer()
                if hasattr(res, "__await__"):
                    await res
            except Exception as e:
                logger.warning("Error while closing capability: %s", e)
        self._closers.clear()


def build_default(cfg: Config, *, advisor_enabled: Optional[bool] = None, events: Any = None) -> Capabilities:
    """Wire the stock adapters: Playwright, bs4 cleaner/extractor, httpx, sqlite, Ollama."""
    from components import html_cleaner, job_extractor, job_normalizer, page_classifier
    from components.advisor import NullAdvisor, OllamaAdvisor
    from components.source_validator import SourceValidator
    from components.url_resolver import UrlResolver
    from extensions.capture_store import CaptureStore
    from extensions.job_cache import JobStore
    from extensions.source_registry import SourceRegistry

    from .utils import httpx_client

    http = httpx_client(cfg)
    validator = SourceValidator(http)
    resolver = UrlResolver(
        validator,
        max_attempts=cfg.max_url_correction_attempts,
        candidate_timeout_s=cfg.resolver_timeout_ms / 1000.0,
    )

    closers: List[Callable[[], Any]] = [http.aclose]
    enabled = cfg.advisor_enabled if advisor_enabled is None else advisor_enabled
    if enabled:
        llm_http = httpx_client(cfg, timeout_ms=int(cfg.advisor_timeout_seconds * 1000))
        advisor = OllamaAdvisor(llm_http, base_url=cfg.ollama_base_url, model=cfg.ollama_model)
        closers.append(llm_http.aclose)
    else:
        advisor = NullAdvisor()

    jobs = JobStore(cfg.db_path)
    sources = SourceRegistry(cfg.db_path)
    closers += [jobs.close, sources.close]

    return Capabilities(
        open_session=session_factory(cfg),
        clean=html_cleaner.clean,
        extract=job_extractor.extract,
        classify=page_classifier.classify,
        normalize=job_normalizer.normalize,
        excerpt=html_cleaner.markdown_excerpt,
        captures=CaptureStore(cfg.data_sources_dir, max_captures=cfg.max_captures_per_source),
        jobs=jobs,
        sources=sources,
        resolver=resolver,
        validator=validator,
        advisor=advisor,
        events=events,
        _closers=closers,
    )
