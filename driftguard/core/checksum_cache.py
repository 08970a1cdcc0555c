"""
DriftGuard - Checksum cache.

Memoizes a file's content hash under the key (path, size, mtime) so an
untouched file is not rehashed on every scan. The cache is never
authoritative: a miss only costs a recomputation, and any failure of the
backing store degrades to "always recompute".
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Protocol

from driftguard.core.models import ChecksumCacheEntry, from_iso, to_iso, utc_now
from driftguard.core.storage import transaction

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 2160
MAX_ENTRIES = 10000
OVERFLOW_MAX_AGE = timedelta(hours=24)


class ChecksumCache(Protocol):
    """Keyed store consulted by the scanner before hashing a file."""

    def get(self, path: str, size: int, mtime: float) -> Optional[str]:
        ...

    def put(self, path: str, size: int, mtime: float, file_hash: str, ttl_hours: Optional[int] = None) -> None:
        ...


class InMemoryChecksumCache:
    """Dict-backed cache, mainly for tests and one-off scans."""

    def __init__(
        self,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ttl_hours = ttl_hours
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, ChecksumCacheEntry] = {}

    def get(self, path: str, size: int, mtime: float) -> Optional[str]:
        entry = self._entries.get(path)
        if entry is None or entry.size != size or entry.mtime != mtime:
            return None
        if entry.expires_at <= self._clock():
            return None
        return entry.hash

    def put(self, path: str, size: int, mtime: float, file_hash: str, ttl_hours: Optional[int] = None) -> None:
        now = self._clock()
        self._entries[path] = ChecksumCacheEntry(
            path=path,
            size=size,
            mtime=mtime,
            hash=file_hash,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours or self.ttl_hours),
        )

    def count(self) -> int:
        return len(self._entries)

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [p for p, e in self._entries.items() if e.expires_at <= now]
        for path in expired:
            del self._entries[path]
        return len(expired)

    def enforce_ceiling(self) -> int:
        if len(self._entries) <= self.max_entries:
            return 0
        cutoff = self._clock() - OVERFLOW_MAX_AGE
        stale = [p for p, e in self._entries.items() if e.created_at < cutoff]
        for path in stale:
            del self._entries[path]
        return len(stale)


class SQLiteChecksumCache:
    """
    Cache persisted in the checksum_cache table.

    One row per path; a lookup whose size or mtime differs from the stored
    row is a miss, and the next put replaces the row.
    """

    def __init__(
        self,
        db_path: str | Path,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.ttl_hours = ttl_hours
        self.max_entries = max_entries
        self._clock = clock

    def get(self, path: str, size: int, mtime: float) -> Optional[str]:
        try:
            with transaction(self.db_path) as conn:
                row = conn.execute(
                    "SELECT hash FROM checksum_cache WHERE path = ? AND size = ? AND mtime = ? AND expires_at > ?",
                    (path, size, mtime, to_iso(self._clock())),
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning("Checksum cache lookup failed for %s, recomputing: %s", path, e)
            return None
        return row["hash"] if row else None

    def put(self, path: str, size: int, mtime: float, file_hash: str, ttl_hours: Optional[int] = None) -> None:
        now = self._clock()
        expires = now + timedelta(hours=ttl_hours or self.ttl_hours)
        try:
            with transaction(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO checksum_cache (path, size, mtime, hash, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        size = excluded.size,
                        mtime = excluded.mtime,
                        hash = excluded.hash,
                        created_at = excluded.created_at,
                        expires_at = excluded.expires_at
                    """,
                    (path, size, mtime, file_hash, to_iso(now), to_iso(expires)),
                )
        except sqlite3.Error as e:
            logger.warning("Checksum cache write failed for %s: %s", path, e)

    def count(self) -> int:
        with transaction(self.db_path) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM checksum_cache").fetchone()[0])

    def cleanup_expired(self) -> int:
        """Delete every entry past its expires_at."""
        with transaction(self.db_path) as conn:
            cur = conn.execute("DELETE FROM checksum_cache WHERE expires_at <= ?", (to_iso(self._clock()),))
            return cur.rowcount

    def enforce_ceiling(self) -> int:
        """
        Once the live entry count exceeds max_entries, drop every entry
        created more than 24 hours ago regardless of its TTL.
        """
        if self.count() <= self.max_entries:
            return 0
        cutoff = self._clock() - OVERFLOW_MAX_AGE
        with transaction(self.db_path) as conn:
            cur = conn.execute("DELETE FROM checksum_cache WHERE created_at < ?", (to_iso(cutoff),))
            deleted = cur.rowcount
        if deleted:
            logger.warning(
                "Aggressive cache cleanup: %d entries older than %s removed",
                deleted,
                to_iso(cutoff),
                extra={"context": "cache"},
            )
        return deleted

    def statistics(self) -> dict:
        now = to_iso(self._clock())
        with transaction(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_entries,
                    SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END) AS expired_entries,
                    MIN(created_at) AS oldest_entry,
                    MAX(created_at) AS newest_entry,
                    MIN(expires_at) AS next_expiration
                FROM checksum_cache
                """,
                (now,),
            ).fetchone()
        return {
            "total_entries": int(row["total_entries"] or 0),
            "expired_entries": int(row["expired_entries"] or 0),
            "oldest_entry": from_iso(row["oldest_entry"]),
            "newest_entry": from_iso(row["newest_entry"]),
            "next_expiration": from_iso(row["next_expiration"]),
        }
