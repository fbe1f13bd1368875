from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from hashlib import sha1
from pathlib import Path
from typing import Dict, List, Optional

from crawler.utils import atomic_write_text

from .output_paths import ensure_source_dirs

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
MAX_CAPTURES = 30

_LOCKS_LOCK = threading.Lock()
_LOCKS: Dict[str, threading.Lock] = {}


def _lock_for(key: str) -> threading.Lock:
    with _LOCKS_LOCK:
        lk = _LOCKS.get(key)
        if lk is None:
            lk = threading.Lock()
            _LOCKS[key] = lk
        return lk


@dataclass
class CaptureEntry:
    id: str
    url: str
    type: str
    filename: str
    captured_at: float
    size: int
    filename_cleaned: Optional[str] = None
    jobs_extracted: int = 0
    strategy: Optional[str] = None


class CaptureStore:
    """
    File-backed archive of raw and cleaned page captures, one manifest per
    source. The manifest is the source of truth for a capture's type; files
    stay in the folder of the type they were saved under.

    Layout: <root>/<slug>/captures/<type>/<id>.html and <id>-cleaned.html
    """

    def __init__(self, root: Path, max_captures: int = MAX_CAPTURES) -> None:
        self.root = Path(root)
        self.max_captures = max_captures

    # ---------------- manifest ----------------

    def _captures_dir(self, slug: str) -> Path:
        return ensure_source_dirs(slug, self.root)["captures"]

    def _manifest_path(self, slug: str) -> Path:
        return self._captures_dir(slug) / MANIFEST_NAME

    def _read_manifest(self, slug: str) -> List[CaptureEntry]:
        p = self._manifest_path(slug)
        if not p.exists():
            return []
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Unreadable capture manifest %s: %s", p, e)
            return []
        out = []
        for raw in data.get("captures", []):
            try:
                out.append(CaptureEntry(**raw))
            except TypeError:
                continue
        return out

    def _write_manifest(self, slug: str, entries: List[CaptureEntry]) -> None:
        payload = {"slug": slug, "captures": [asdict(e) for e in entries]}
        atomic_write_text(self._manifest_path(slug), json.dumps(payload, ensure_ascii=False, indent=2))

    # ---------------- writes ----------------

    def save_capture(self, slug: str, url: str, html: str, page_type: str = "unclassified") -> str:
        ts = time.time()
        capture_id = f"{int(ts * 1000)}-{sha1(url.encode('utf-8')).hexdigest()[:8]}"
        rel = f"{page_type}/{capture_id}.html"
        atomic_write_text(self._captures_dir(slug) / rel, html or "")

        with _lock_for(slug):
            entries = self._read_manifest(slug)
            entries.append(CaptureEntry(
                id=capture_id, url=url, type=page_type, filename=rel,
                captured_at=ts, size=len(html or ""),
            ))
            while len(entries) > self.max_captures:
                self._delete_files(slug, entries.pop(0))
            self._write_manifest(slug, entries)
        return capture_id

    def save_cleaned(self, slug: str, capture_id: str, cleaned_html: str) -> None:
        with _lock_for(slug):
            entries = self._read_manifest(slug)
            entry = next((e for e in entries if e.id == capture_id), None)
            if entry is None:
                logger.debug("save_cleaned: unknown capture %s/%s", slug, capture_id)
                return
            rel = entry.filename.replace(".html", "-cleaned.html")
            atomic_write_text(self._captures_dir(slug) / rel, cleaned_html or "")
            entry.filename_cleaned = rel
            self._write_manifest(slug, entries)

    def update_capture_type(
        self,
        slug: str,
        capture_id: str,
        page_type: str,
        jobs_extracted: int,
        strategy: Optional[str] = None,
    ) -> None:
        with _lock_for(slug):
            entries = self._read_manifest(slug)
            entry = next((e for e in entries if e.id == capture_id), None)
            if entry is None:
                return
            entry.type = page_type
            entry.jobs_extracted = int(jobs_extracted)
            entry.strategy = strategy
            self._write_manifest(slug, entries)

    def _delete_files(self, slug: str, entry: CaptureEntry) -> None:
        base = self._captures_dir(slug)
        for rel in (entry.filename, entry.filename_cleaned):
            if not rel:
                continue
            try:
                (base / rel).unlink(missing_ok=True)
            except OSError as e:
                logger.debug("could not prune %s: %s", rel, e)

    # ---------------- reads ----------------

    def list_captures(self, slug: str) -> List[CaptureEntry]:
        return self._read_manifest(slug)

    def _read(self, slug: str, rel: Optional[str]) -> Optional[str]:
        if not rel:
            return None
        p = self._captures_dir(slug) / rel
        try:
            return p.read_text(encoding="utf-8")
        except OSError:
            return None

    def read_raw(self, slug: str, capture_id: str) -> Optional[str]:
        entry = next((e for e in self._read_manifest(slug) if e.id == capture_id), None)
        return self._read(slug, entry.filename) if entry else None

    def read_cleaned(self, slug: str, capture_id: str) -> Optional[str]:
        entry = next((e for e in self._read_manifest(slug) if e.id == capture_id), None)
        return self._read(slug, entry.filename_cleaned) if entry else None

    def read_best_capture(self, slug: str, *, exclude_id: Optional[str] = None) -> Optional[tuple[CaptureEntry, str]]:
        """Latest capture that produced jobs, cleaned copy preferred."""
        for entry in reversed(self._read_manifest(slug)):
            if entry.id == exclude_id or entry.jobs_extracted <= 0:
                continue
            html = self._read(slug, entry.filename_cleaned) or self._read(slug, entry.filename)
            if html:
                return entry, html
        return None

    def iter_cleaned(self, slug: str):
        """Yield (entry, cleaned_html) for every capture with a cleaned copy."""
        for entry in self._read_manifest(slug):
            html = self._read(slug, entry.filename_cleaned)
            if html:
                yield entry, html

    def capture_summary(self, slug: str, limit: int = 10) -> str:
        entries = self._read_manifest(slug)[-limit:]
        if not entries:
            return "no prior captures"
        lines = [
            f"{e.type} jobs={e.jobs_extracted} size={e.size} strategy={e.strategy or '-'} {e.url}"
            for e in entries
        ]
        return "\n".join(lines)
