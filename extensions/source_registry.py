from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from crawler.models import Source
from crawler.utils import domain_of, get_base_domain, slugify

from .sqlite_db import SqliteStore, now_iso

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "t", "yes", "y", "on"}


def _default_slug(url: str, name: str) -> str:
    # jobs.acme.co.uk and www.acme.co.uk share the acme.co.uk slug
    host = domain_of(url)
    return slugify(get_base_domain(host) if host else name)


def _iter_csv_sources(path: Path, *, encoding: str = "utf-8") -> Iterable[Source]:
    """
    Yield Source rows from a CSV with columns id,name,url[,slug,type,enabled].
    Rows missing id/name/url are skipped.
    """
    with path.open("r", encoding=encoding, newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            sid = (row.get("id") or "").strip()
            name = (row.get("name") or "").strip()
            url = (row.get("url") or "").strip()
            if not (sid and name and url):
                continue
            enabled_raw = (row.get("enabled") or "true").strip().lower()
            yield Source(
                id=sid,
                name=name,
                url=url,
                slug=(row.get("slug") or "").strip() or _default_slug(url, name),
                type=(row.get("type") or "").strip() or "job_board",
                enabled_for_scraping=enabled_raw in _TRUE,
            )


class SourceRegistry(SqliteStore):
    """
    Configured sources. Read-only to the crawler except update_url(), which
    records a self-corrected start URL that then wins over the CSV value.
    """

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            corrected_url TEXT,
            slug TEXT NOT NULL,
            type TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        )
        """,
    )

    async def load_csv(self, path: Path) -> int:
        n = 0
        seen: set[str] = set()
        for src in _iter_csv_sources(Path(path)):
            if src.id in seen:
                continue
            seen.add(src.id)
            await self.upsert(src)
            n += 1
        logger.info("Loaded %d sources from %s", n, path)
        return n

    async def upsert(self, src: Source) -> None:
        await self._exec(
            """
            INSERT INTO sources (id, name, url, slug, type, enabled, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                url=excluded.url,
                slug=excluded.slug,
                type=excluded.type,
                enabled=excluded.enabled,
                updated_at=excluded.updated_at
            """,
            (src.id, src.name, src.url, src.slug, src.type, 1 if src.enabled_for_scraping else 0, now_iso()),
        )

    @staticmethod
    def _row_to_source(row) -> Source:
        return Source(
            id=row["id"],
            name=row["name"],
            url=row["corrected_url"] or row["url"],
            slug=row["slug"],
            type=row["type"],
            enabled_for_scraping=bool(row["enabled"]),
        )

    async def list_enabled(self) -> List[Source]:
        rows = await self._query_all("SELECT * FROM sources WHERE enabled=1 ORDER BY id", ())
        return [self._row_to_source(r) for r in rows]

    async def get(self, source_id: str) -> Optional[Source]:
        row = await self._query_one("SELECT * FROM sources WHERE id=?", (source_id,))
        return self._row_to_source(row) if row else None

    async def update_url(self, source_id: str, url: str) -> None:
        await self._exec(
            "UPDATE sources SET corrected_url=?, updated_at=? WHERE id=?",
            (url, now_iso(), source_id),
        )
        logger.info("Source %s start URL corrected to %s", source_id, url)

    async def set_enabled(self, source_id: str, enabled: bool) -> None:
        await self._exec(
            "UPDATE sources SET enabled=?, updated_at=? WHERE id=?",
            (1 if enabled else 0, now_iso(), source_id),
        )
