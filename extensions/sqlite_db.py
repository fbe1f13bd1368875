from __future__ import annotations

import asyncio
import sqlite3
import threading
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteStore:
    """
    Shared sqlite plumbing: one autocommit connection guarded by a thread
    lock, with blocking calls pushed onto a worker thread.
    """

    SCHEMA: Tuple[str, ...] = ()

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = self._connect(self.db_path)
        with self._lock:
            for stmt in self.SCHEMA:
                self._conn.execute(stmt)

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
            timeout=5.0,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def close(self) -> None:
        with suppress(Exception):
            with self._lock:
                self._conn.close()

    async def _exec(self, sql: str, args: Tuple[Any, ...]) -> None:
        def _run() -> None:
            with self._lock:
                self._conn.execute(sql, args)

        await asyncio.to_thread(_run)

    async def _query_one(self, sql: str, args: Tuple[Any, ...]) -> Optional[sqlite3.Row]:
        def _run() -> Optional[sqlite3.Row]:
            with self._lock:
                return self._conn.execute(sql, args).fetchone()

        return await asyncio.to_thread(_run)

    async def _query_all(self, sql: str, args: Tuple[Any, ...]) -> List[sqlite3.Row]:
        def _run() -> List[sqlite3.Row]:
            with self._lock:
                return self._conn.execute(sql, args).fetchall()

        return await asyncio.to_thread(_run)
