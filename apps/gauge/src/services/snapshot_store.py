from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from services.readings import BatchSnapshot, isoformat

logger = logging.getLogger("gauge.hub.snapshot_store")

# Instances may disagree slightly on wall-clock time.
CLOCK_SKEW_SECONDS = 5


def _from_unix(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass(slots=True)
class FetchMetadata:
    dataset: str
    last_successful_fetch: Optional[datetime]
    last_attempt: Optional[datetime]
    success_count: int
    error_count: int
    last_error: Optional[str]
    is_elevated: bool

    def as_payload(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset,
            "last_successful_fetch": isoformat(self.last_successful_fetch) if self.last_successful_fetch else None,
            "last_attempt": isoformat(self.last_attempt) if self.last_attempt else None,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "is_elevated": self.is_elevated,
        }


@dataclass(frozen=True, slots=True)
class StoredSnapshot:
    snapshot: BatchSnapshot
    fetched_at: datetime
    age_seconds: float


class SnapshotStore:
    """Latest snapshot per dataset in a shared SQLite file.

    This is a load-shedding path for a fleet of instances, not the system of
    record: every failure is logged and reported as "absent" or ``False``.
    """

    def __init__(
        self,
        *,
        db_path: Path,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = Path(db_path)
        self._enabled = enabled
        self._clock = clock
        self._lock = asyncio.Lock()
        if self._enabled:
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                self._initialize()
            except (OSError, sqlite3.Error):
                logger.warning("Snapshot store at %s unavailable; continuing without it", self._db_path, exc_info=True)
                self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _initialize(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    dataset TEXT PRIMARY KEY,
                    fetched_at INTEGER NOT NULL,
                    payload TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fetch_status (
                    dataset TEXT PRIMARY KEY,
                    last_successful_fetch INTEGER,
                    last_attempt INTEGER,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    is_elevated INTEGER NOT NULL DEFAULT 0
                );
                """
            )

    async def get(self, dataset: str, *, max_age_seconds: float) -> Optional[BatchSnapshot]:
        stored = await self.get_stored(dataset, max_age_seconds=max_age_seconds)
        return stored.snapshot if stored is not None else None

    async def get_stored(self, dataset: str, *, max_age_seconds: float) -> Optional[StoredSnapshot]:
        """Like ``get`` but keeps the write time so callers can report the real age."""
        if not self._enabled:
            return None
        try:
            async with self._lock:
                row = await asyncio.to_thread(self._select_snapshot, dataset)
        except sqlite3.Error:
            logger.warning("Snapshot read for %s failed", dataset, exc_info=True)
            return None
        if row is None:
            return None
        fetched_at, payload = row
        age = self._clock() - fetched_at
        if age > max_age_seconds or age < -CLOCK_SKEW_SECONDS:
            logger.debug("Durable snapshot for %s rejected (age %.0fs, limit %.0fs)", dataset, age, max_age_seconds)
            return None
        try:
            snapshot = BatchSnapshot.from_payload(json.loads(payload))
        except (ValueError, KeyError, TypeError):
            logger.warning("Durable snapshot for %s could not be decoded", dataset, exc_info=True)
            return None
        return StoredSnapshot(snapshot=snapshot, fetched_at=_from_unix(fetched_at), age_seconds=max(0.0, age))

    def _select_snapshot(self, dataset: str) -> Optional[tuple[int, str]]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT fetched_at, payload FROM snapshots WHERE dataset = ?;",
                (dataset,),
            ).fetchone()
        if row is None:
            return None
        return int(row["fetched_at"]), str(row["payload"])

    async def put(self, dataset: str, snapshot: BatchSnapshot) -> bool:
        if not self._enabled:
            return False
        try:
            payload = json.dumps(snapshot.as_payload(), separators=(",", ":"))
            async with self._lock:
                await asyncio.to_thread(self._upsert_snapshot, dataset, int(self._clock()), payload)
        except (sqlite3.Error, OSError, TypeError, ValueError):
            logger.warning("Snapshot write for %s failed", dataset, exc_info=True)
            return False
        return True

    def _upsert_snapshot(self, dataset: str, fetched_at: int, payload: str) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO snapshots (dataset, fetched_at, payload)
                VALUES (?, ?, ?)
                ON CONFLICT(dataset) DO UPDATE SET fetched_at = excluded.fetched_at, payload = excluded.payload;
                """,
                (dataset, fetched_at, payload),
            )

    async def record_success(self, dataset: str, *, elevated: bool) -> None:
        await self._record(dataset, success=True, error=None, elevated=elevated)

    async def record_error(self, dataset: str, error: str) -> None:
        await self._record(dataset, success=False, error=error, elevated=None)

    async def _record(self, dataset: str, *, success: bool, error: Optional[str], elevated: Optional[bool]) -> None:
        if not self._enabled:
            return
        try:
            async with self._lock:
                await asyncio.to_thread(self._update_status, dataset, success, error, elevated, int(self._clock()))
        except sqlite3.Error:
            logger.warning("Fetch status update for %s failed", dataset, exc_info=True)

    def _update_status(
        self,
        dataset: str,
        success: bool,
        error: Optional[str],
        elevated: Optional[bool],
        now: int,
    ) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute("INSERT OR IGNORE INTO fetch_status (dataset) VALUES (?);", (dataset,))
            if success:
                conn.execute(
                    """
                    UPDATE fetch_status
                    SET last_successful_fetch = ?, last_attempt = ?, success_count = success_count + 1,
                        last_error = NULL, is_elevated = ?
                    WHERE dataset = ?;
                    """,
                    (now, now, 1 if elevated else 0, dataset),
                )
            else:
                conn.execute(
                    """
                    UPDATE fetch_status
                    SET last_attempt = ?, error_count = error_count + 1, last_error = ?
                    WHERE dataset = ?;
                    """,
                    (now, (error or "unknown error")[:500], dataset),
                )

    async def get_metadata(self, dataset: str) -> Optional[FetchMetadata]:
        if not self._enabled:
            return None
        try:
            async with self._lock:
                return await asyncio.to_thread(self._select_status, dataset)
        except sqlite3.Error:
            logger.warning("Fetch status read for %s failed", dataset, exc_info=True)
            return None

    def _select_status(self, dataset: str) -> Optional[FetchMetadata]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM fetch_status WHERE dataset = ?;", (dataset,)).fetchone()
        if row is None:
            return None
        return FetchMetadata(
            dataset=row["dataset"],
            last_successful_fetch=_from_unix(row["last_successful_fetch"]),
            last_attempt=_from_unix(row["last_attempt"]),
            success_count=int(row["success_count"]),
            error_count=int(row["error_count"]),
            last_error=row["last_error"],
            is_elevated=bool(row["is_elevated"]),
        )

    async def clear(self) -> None:
        if not self._enabled:
            return
        async with self._lock:
            await asyncio.to_thread(self._truncate)

    def _truncate(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute("DELETE FROM snapshots;")
            conn.execute("DELETE FROM fetch_status;")


__all__ = ["FetchMetadata", "SnapshotStore", "StoredSnapshot"]
