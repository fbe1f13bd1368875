from __future__ import annotations

import json
import logging
from typing import List, Optional, Set

from crawler.models import NormalizedJob, SourceStatus

from .sqlite_db import SqliteStore, now_iso

logger = logging.getLogger(__name__)


class JobStore(SqliteStore):
    """
    Job cache, per-source visited-URL ledger and last scrape status.

    Writes are idempotent upserts so parallel source tasks can share one store.
    """

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS job_listings (
            source_id TEXT NOT NULL,
            dedupe_key TEXT NOT NULL,
            title TEXT NOT NULL,
            company_name TEXT NOT NULL,
            source_url TEXT NOT NULL,
            location TEXT,
            description TEXT,
            posted_date TEXT,
            salary_min REAL,
            salary_max REAL,
            salary_currency TEXT,
            apply_url TEXT,
            confidence REAL,
            raw_extract TEXT,
            first_seen_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL,
            PRIMARY KEY (source_id, dedupe_key)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS visited_urls (
            source_id TEXT NOT NULL,
            normalized_url TEXT NOT NULL,
            visited_at TEXT NOT NULL,
            PRIMARY KEY (source_id, normalized_url)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS scrape_status (
            source_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            jobs_extracted INTEGER NOT NULL DEFAULT 0,
            message TEXT,
            updated_at TEXT NOT NULL
        )
        """,
    )

    # ---------------- jobs ----------------

    async def upsert_job(self, job: NormalizedJob) -> None:
        ts = now_iso()
        await self._exec(
            """
            INSERT INTO job_listings (
                source_id, dedupe_key, title, company_name, source_url, location,
                description, posted_date, salary_min, salary_max, salary_currency,
                apply_url, confidence, raw_extract, first_seen_at, last_seen_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_id, dedupe_key) DO UPDATE SET
                title=excluded.title,
                company_name=excluded.company_name,
                source_url=excluded.source_url,
                location=excluded.location,
                description=excluded.description,
                posted_date=excluded.posted_date,
                salary_min=excluded.salary_min,
                salary_max=excluded.salary_max,
                salary_currency=excluded.salary_currency,
                apply_url=excluded.apply_url,
                confidence=excluded.confidence,
                raw_extract=excluded.raw_extract,
                last_seen_at=excluded.last_seen_at
            """,
            (
                job.source_id, job.dedupe_key, job.title, job.company_name, job.source_url,
                job.location, job.description, job.posted_date, job.salary_min, job.salary_max,
                job.salary_currency, job.apply_url, job.confidence,
                json.dumps(job.raw_extract, ensure_ascii=False) if job.raw_extract else None,
                ts, ts,
            ),
        )

    async def count_jobs(self, source_id: str) -> int:
        row = await self._query_one("SELECT COUNT(*) AS n FROM job_listings WHERE source_id=?", (source_id,))
        return int(row["n"]) if row else 0

    async def list_jobs(self, source_id: str, limit: int = 100) -> List[dict]:
        rows = await self._query_all(
            "SELECT * FROM job_listings WHERE source_id=? ORDER BY last_seen_at DESC LIMIT ?",
            (source_id, int(limit)),
        )
        return [dict(r) for r in rows]

    # ---------------- visited ledger ----------------

    async def mark_visited(self, source_id: str, normalized_url: str) -> None:
        await self._exec(
            "INSERT OR IGNORE INTO visited_urls (source_id, normalized_url, visited_at) VALUES (?, ?, ?)",
            (source_id, normalized_url, now_iso()),
        )

    async def visited_urls(self, source_id: str) -> Set[str]:
        rows = await self._query_all("SELECT normalized_url FROM visited_urls WHERE source_id=?", (source_id,))
        return {r["normalized_url"] for r in rows}

    # ---------------- status ----------------

    async def set_status(
        self,
        source_id: str,
        status: SourceStatus,
        jobs_extracted: int = 0,
        message: Optional[str] = None,
    ) -> None:
        await self._exec(
            """
            INSERT INTO scrape_status (source_id, status, jobs_extracted, message, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(source_id) DO UPDATE SET
                status=excluded.status,
                jobs_extracted=excluded.jobs_extracted,
                message=excluded.message,
                updated_at=excluded.updated_at
            """,
            (source_id, SourceStatus(status).value, int(jobs_extracted), message, now_iso()),
        )
        logger.info("Source %s status=%s jobs=%d", source_id, SourceStatus(status).value, jobs_extracted)

    async def get_status(self, source_id: str) -> Optional[dict]:
        row = await self._query_one("SELECT * FROM scrape_status WHERE source_id=?", (source_id,))
        return dict(row) if row else None
