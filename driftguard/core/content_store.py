"""
DriftGuard - Content snapshots for diff generation.

Text-file content is stored zlib-compressed, keyed by its SHA256 checksum,
so the next change to that file can be diffed against what was seen last.
"""

import hashlib
import logging
import sqlite3
import zlib
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from driftguard.core.models import to_iso, utc_now
from driftguard.core.storage import transaction

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_LIMIT = 5000


class ContentStore:
    def __init__(
        self,
        db_path: str | Path,
        retention_limit: int = DEFAULT_RETENTION_LIMIT,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db_path = db_path
        self.retention_limit = retention_limit
        self.clock = clock or utc_now

    def store(self, checksum: str, content: bytes) -> bool:
        """Store content under checksum. Existing snapshots are left alone."""
        try:
            with transaction(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO file_contents (checksum, content, file_size, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (checksum, zlib.compress(content, 9), len(content), to_iso(self.clock())),
                )
        except sqlite3.Error as e:
            logger.warning("Failed to store content snapshot %s: %s", checksum[:12], e)
            return False
        return True

    def get(self, checksum: str) -> Optional[bytes]:
        """Verified snapshot content, or None when missing, corrupt or unreadable."""
        try:
            with transaction(self.db_path) as conn:
                row = conn.execute("SELECT content FROM file_contents WHERE checksum = ?", (checksum,)).fetchone()
        except sqlite3.Error as e:
            logger.warning("Failed to read content snapshot %s: %s", checksum[:12], e)
            return None
        if not row:
            return None
        try:
            content = zlib.decompress(row["content"])
        except zlib.error:
            logger.warning("Corrupt content snapshot %s", checksum[:12])
            return None
        if hashlib.sha256(content).hexdigest() != checksum:
            logger.warning("Content snapshot %s failed checksum verification", checksum[:12])
            return None
        return content

    def exists(self, checksum: str) -> bool:
        try:
            with transaction(self.db_path) as conn:
                row = conn.execute("SELECT 1 FROM file_contents WHERE checksum = ?", (checksum,)).fetchone()
        except sqlite3.Error as e:
            logger.warning("Failed to look up content snapshot %s: %s", checksum[:12], e)
            return False
        return row is not None

    def trim(self, keep: Optional[int] = None) -> int:
        """Keep only the newest `keep` snapshots."""
        keep = self.retention_limit if keep is None else keep
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                """
                DELETE FROM file_contents WHERE id NOT IN (
                    SELECT id FROM file_contents ORDER BY id DESC LIMIT ?
                )
                """,
                (keep,),
            )
            return cur.rowcount

    def statistics(self) -> dict:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_entries,
                       SUM(file_size) AS uncompressed,
                       SUM(LENGTH(content)) AS compressed
                FROM file_contents
                """
            ).fetchone()
        uncompressed = int(row["uncompressed"] or 0)
        compressed = int(row["compressed"] or 0)
        ratio = round((1 - compressed / uncompressed) * 100, 2) if uncompressed else 0.0
        return {
            "total_entries": int(row["total_entries"] or 0),
            "total_uncompressed_size": uncompressed,
            "total_compressed_size": compressed,
            "compression_ratio": ratio,
        }
