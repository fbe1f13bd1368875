from __future__ import annotations

import logging
import time
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Deque, Dict, List, Optional

from .output_paths import ensure_source_dirs

# Per-task context: which source slug are we crawling right now?
_CURRENT_SOURCE: ContextVar[Optional[str]] = ContextVar("_CURRENT_SOURCE", default=None)


def current_source() -> Optional[str]:
    return _CURRENT_SOURCE.get()


class _SourceFilter(logging.Filter):
    """
    Allow records if they belong to the current source context OR
    if their logger name starts with source.<slug>.
    This lets us attach the handler high (root) and still isolate per source.
    """
    def __init__(self, slug: str) -> None:
        super().__init__()
        self.slug = str(slug)

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        if _CURRENT_SOURCE.get() == self.slug:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"source.{self.slug}")


# ---------------------------------------------------------------------------
# Structured event stream
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CrawlEvent:
    ts: float
    component: str
    level: str
    message: str
    source: Optional[str]


def _component_for(name: str) -> str:
    # crawler.pipeline -> pipeline, source.acme -> acme
    return (name or "root").rsplit(".", 1)[-1]


class EventStream(logging.Handler):
    """
    Bounded ring buffer of crawl events fed by the logging tree.

    A pure sink: emit() never raises into the caller.
    """

    def __init__(self, maxlen: int = 500, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self._events: Deque[CrawlEvent] = deque(maxlen=maxlen)
        self._events_lock = Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            ev = CrawlEvent(
                ts=record.created,
                component=_component_for(record.name),
                level=record.levelname.lower(),
                message=record.getMessage(),
                source=getattr(record, "source", None) or _CURRENT_SOURCE.get(),
            )
            with self._events_lock:
                self._events.append(ev)
        except Exception:
            self.handleError(record)

    def snapshot(self, source: Optional[str] = None, limit: Optional[int] = None) -> List[CrawlEvent]:
        with self._events_lock:
            items = [e for e in self._events if source is None or e.source == source]
        return items[-limit:] if limit else items

    def tail_text(self, source: Optional[str] = None, limit: int = 30) -> str:
        lines = []
        for e in self.snapshot(source, limit):
            stamp = time.strftime("%H:%M:%S", time.localtime(e.ts))
            lines.append(f"[{stamp}] {e.level.upper()} {e.component}: {e.message}")
        return "\n".join(lines)

    def clear(self) -> None:
        with self._events_lock:
            self._events.clear()


class LoggingExtension:
    def __init__(
        self,
        *,
        global_level: int = logging.INFO,
        per_source_level: Optional[int] = None,  # default to global_level if None
        log_file: Optional[Path] = None,
        event_buffer_size: int = 500,
        root_dir: Optional[Path] = None,
    ) -> None:
        self.global_level = global_level
        self.per_source_level = per_source_level if per_source_level is not None else global_level
        self.root_dir = root_dir
        self._source_handlers: Dict[str, logging.Handler] = {}
        self._extra_handlers: List[logging.Handler] = []

        self._install_console(self.global_level)
        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
            fh.setLevel(self.global_level)
            fh.setFormatter(logging.Formatter(
                fmt="%(levelname)s %(asctime)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._extra_handlers.append(fh)

        self.events = EventStream(maxlen=event_buffer_size, level=self.global_level)
        logging.getLogger().addHandler(self.events)
        self._extra_handlers.append(self.events)

        # Make root permissive; rely on handler levels to filter.
        logging.getLogger().setLevel(logging.DEBUG)
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(ch)
        self._extra_handlers.append(ch)

    # ---------------- Source logger ----------------

    def get_source_logger(self, slug: str) -> logging.Logger:
        """
        Return a source-scoped logger and make sure a per-source file handler
        is attached at root, filtered to that source's records.
        """
        dirs = ensure_source_dirs(slug, self.root_dir)
        log_path = dirs["logs"] / f"{slug}.log"

        if slug not in self._source_handlers:
            fh = logging.FileHandler(log_path, mode="a", encoding="utf-8")
            fh.setLevel(self.per_source_level)
            fh.addFilter(_SourceFilter(slug))
            fh.setFormatter(logging.Formatter(
                fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._source_handlers[slug] = fh

        logger = logging.getLogger(f"source.{slug}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    # ---------------- Context helpers ----------------

    def set_source_context(self, slug: str):
        """
        Activate the per-task source context; returns a token for reset.
        """
        return _CURRENT_SOURCE.set(str(slug))

    def reset_source_context(self, token) -> None:
        try:
            _CURRENT_SOURCE.reset(token)
        except ValueError:
            # token created in another context
            pass

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        root = logging.getLogger()
        for h in list(self._source_handlers.values()) + self._extra_handlers:
            try:
                root.removeHandler(h)
                h.flush()
                h.close()
            except Exception:
                pass
        self._source_handlers.clear()
        self._extra_handlers.clear()
