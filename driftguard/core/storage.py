"""
DriftGuard - Relational persistence (SQLite).

Schema, connection helpers, the ScanRun / FileRecord repositories and the
per-path file_state projection that change detection compares against.
Timestamps are stored as UTC ISO-8601 strings so range queries by age are
plain string comparisons.
"""

import contextlib
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from driftguard.core.errors import PersistenceError
from driftguard.core.models import (
    FileRecord,
    FileStatus,
    PriorityLevel,
    ScanRun,
    ScanStats,
    ScanStatus,
    ScanType,
    from_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scan_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    scan_type TEXT NOT NULL DEFAULT 'manual',
    total_files INTEGER NOT NULL DEFAULT 0,
    changed_files INTEGER NOT NULL DEFAULT 0,
    new_files INTEGER NOT NULL DEFAULT 0,
    deleted_files INTEGER NOT NULL DEFAULT 0,
    duration_seconds REAL NOT NULL DEFAULT 0,
    peak_memory INTEGER NOT NULL DEFAULT 0,
    is_baseline INTEGER NOT NULL DEFAULT 0,
    schedule_id INTEGER,
    notes TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS file_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_id INTEGER NOT NULL,
    path TEXT NOT NULL,
    hash TEXT NOT NULL,
    previous_hash TEXT,
    size INTEGER NOT NULL DEFAULT 0,
    last_modified REAL,
    status TEXT NOT NULL DEFAULT 'unchanged',
    priority TEXT NOT NULL DEFAULT 'none',
    diff TEXT,
    FOREIGN KEY (scan_id) REFERENCES scan_runs(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS file_state (
    path TEXT PRIMARY KEY,
    hash TEXT NOT NULL,
    scan_id INTEGER NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS checksum_cache (
    path TEXT PRIMARY KEY,
    size INTEGER NOT NULL,
    mtime REAL NOT NULL,
    hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS file_contents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    checksum TEXT NOT NULL UNIQUE,
    content BLOB NOT NULL,
    file_size INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS priority_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    match_type TEXT NOT NULL DEFAULT 'exact',
    priority_level TEXT NOT NULL,
    notify_immediately INTEGER NOT NULL DEFAULT 0,
    ignore_in_bulk_changes INTEGER NOT NULL DEFAULT 0,
    velocity_threshold INTEGER,
    velocity_window_hours INTEGER,
    maintenance_window_start TEXT,
    maintenance_window_end TEXT,
    execution_order INTEGER NOT NULL DEFAULT 100,
    is_active INTEGER NOT NULL DEFAULT 1,
    reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS velocity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER NOT NULL,
    path TEXT NOT NULL,
    scan_id INTEGER NOT NULL,
    change_type TEXT NOT NULL DEFAULT 'modified',
    detected_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    log_level TEXT NOT NULL DEFAULT 'info',
    context TEXT NOT NULL DEFAULT 'general',
    message TEXT NOT NULL,
    data TEXT,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_scan_runs_single_baseline ON scan_runs(is_baseline) WHERE is_baseline = 1;
CREATE INDEX IF NOT EXISTS idx_scan_runs_started_at ON scan_runs(started_at);
CREATE INDEX IF NOT EXISTS idx_scan_runs_status ON scan_runs(status);
CREATE INDEX IF NOT EXISTS idx_file_records_scan_id ON file_records(scan_id);
CREATE INDEX IF NOT EXISTS idx_file_records_path ON file_records(path);
CREATE INDEX IF NOT EXISTS idx_file_records_status ON file_records(status);
CREATE INDEX IF NOT EXISTS idx_file_records_priority ON file_records(priority);
CREATE INDEX IF NOT EXISTS idx_checksum_cache_expires_at ON checksum_cache(expires_at);
CREATE INDEX IF NOT EXISTS idx_checksum_cache_created_at ON checksum_cache(created_at);
CREATE INDEX IF NOT EXISTS idx_file_contents_created_at ON file_contents(created_at);
CREATE INDEX IF NOT EXISTS idx_priority_rules_order ON priority_rules(is_active, execution_order);
CREATE INDEX IF NOT EXISTS idx_velocity_rule_path_time ON velocity_log(rule_id, path, detected_at);
CREATE INDEX IF NOT EXISTS idx_logs_created_at ON logs(created_at);
CREATE INDEX IF NOT EXISTS idx_logs_level_context ON logs(log_level, context);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextlib.contextmanager
def transaction(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Open a connection, commit on success, roll back on error, always close."""
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


_BACKFILL_FILE_STATE_SQL = """
INSERT INTO file_state (path, hash, scan_id, is_deleted, updated_at)
SELECT fr.path, fr.hash, fr.scan_id, CASE WHEN fr.status = 'deleted' THEN 1 ELSE 0 END, ?
FROM file_records fr
JOIN (
    SELECT r.path AS path, MAX(r.id) AS id
    FROM file_records r
    JOIN scan_runs s ON s.id = r.scan_id
    WHERE s.status = 'completed'
    GROUP BY r.path
) latest ON latest.id = fr.id
"""


def init_db(db_path: str | Path) -> None:
    with transaction(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        # Databases written before file_state existed rebuild it once from history.
        if conn.execute("SELECT 1 FROM file_state LIMIT 1").fetchone() is None:
            cur = conn.execute(_BACKFILL_FILE_STATE_SQL, (to_iso(utc_now()),))
            if cur.rowcount > 0:
                logger.info("Rebuilt file state for %d paths from scan history", cur.rowcount)
    logger.info("SQLite initialized at %s", db_path)


def record_file_state(conn: sqlite3.Connection, scan_id: int, records: Iterable[FileRecord]) -> int:
    """
    Fold one scan's drift into the per-path state table.

    Unchanged records carry nothing new and are skipped. A row written by a
    later scan is never overwritten by an earlier one.
    """
    rows = [
        (r.path, r.hash, scan_id, int(r.status is FileStatus.DELETED), to_iso(utc_now()))
        for r in records
        if r.status is not FileStatus.UNCHANGED
    ]
    if rows:
        conn.executemany(
            """
            INSERT INTO file_state (path, hash, scan_id, is_deleted, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                hash = excluded.hash,
                scan_id = excluded.scan_id,
                is_deleted = excluded.is_deleted,
                updated_at = excluded.updated_at
            WHERE excluded.scan_id >= file_state.scan_id
            """,
            rows,
        )
    return len(rows)


def chunked(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _row_to_scan_run(row: sqlite3.Row) -> ScanRun:
    return ScanRun(
        id=row["id"],
        started_at=from_iso(row["started_at"]),
        finished_at=from_iso(row["finished_at"]),
        status=ScanStatus(row["status"]),
        scan_type=ScanType(row["scan_type"]),
        total_files=row["total_files"],
        changed_files=row["changed_files"],
        new_files=row["new_files"],
        deleted_files=row["deleted_files"],
        duration_seconds=row["duration_seconds"],
        peak_memory=row["peak_memory"],
        is_baseline=bool(row["is_baseline"]),
        schedule_id=row["schedule_id"],
        notes=row["notes"] or "",
    )


def _row_to_file_record(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        id=row["id"],
        scan_id=row["scan_id"],
        path=row["path"],
        hash=row["hash"],
        previous_hash=row["previous_hash"],
        size=row["size"],
        last_modified=row["last_modified"],
        status=FileStatus(row["status"]),
        priority=PriorityLevel(row["priority"]),
        diff=row["diff"],
    )


class ScanRunRepository:
    """CRUD and lifecycle transitions for ScanRun rows."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = db_path

    def create(
        self,
        scan_type: ScanType = ScanType.MANUAL,
        schedule_id: Optional[int] = None,
        started_at: Optional[datetime] = None,
    ) -> ScanRun:
        started = started_at or utc_now()
        notes = f"Scan started at {to_iso(started)}"
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "INSERT INTO scan_runs (started_at, status, scan_type, schedule_id, notes) VALUES (?, ?, ?, ?, ?)",
                (to_iso(started), ScanStatus.RUNNING.value, scan_type.value, schedule_id, notes),
            )
            scan_id = cur.lastrowid
        return ScanRun(
            id=scan_id,
            started_at=started,
            status=ScanStatus.RUNNING,
            scan_type=scan_type,
            schedule_id=schedule_id,
            notes=notes,
        )

    def get(self, scan_id: int) -> Optional[ScanRun]:
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM scan_runs WHERE id = ?", (scan_id,)).fetchone()
        return _row_to_scan_run(row) if row else None

    def _finish(
        self,
        scan_id: int,
        status: ScanStatus,
        fields: dict,
        records: Iterable[FileRecord] = (),
    ) -> bool:
        # Only a running scan may transition; terminal states are never reopened.
        fields = {"status": status.value, "finished_at": to_iso(utc_now()), **fields}
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                f"UPDATE scan_runs SET {assignments} WHERE id = ? AND status = ?",
                (*fields.values(), scan_id, ScanStatus.RUNNING.value),
            )
            if cur.rowcount != 1:
                return False
            record_file_state(conn, scan_id, records)
            return True

    def complete(
        self,
        scan_id: int,
        stats: ScanStats,
        duration_seconds: float,
        peak_memory: int,
        notes: str = "",
        records: Iterable[FileRecord] = (),
    ) -> bool:
        """
        Mark a running scan completed and, in the same transaction, fold its
        records into file_state. Returns False if the scan was not running.
        """
        return self._finish(
            scan_id,
            ScanStatus.COMPLETED,
            {
                "total_files": stats.total_files,
                "changed_files": stats.changed_files,
                "new_files": stats.new_files,
                "deleted_files": stats.deleted_files,
                "duration_seconds": duration_seconds,
                "peak_memory": peak_memory,
                "notes": notes,
            },
            records,
        )

    def fail(self, scan_id: int, notes: str) -> bool:
        return self._finish(scan_id, ScanStatus.FAILED, {"notes": notes})

    def cancel(self, scan_id: int) -> bool:
        return self._finish(scan_id, ScanStatus.CANCELLED, {"notes": "Scan cancelled"})

    def baseline(self) -> Optional[ScanRun]:
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM scan_runs WHERE is_baseline = 1 LIMIT 1").fetchone()
        return _row_to_scan_run(row) if row else None

    def mark_baseline_if_absent(self, scan_id: int) -> bool:
        """Flag a completed run as baseline unless one already exists. Atomic."""
        try:
            with transaction(self.db_path) as conn:
                cur = conn.execute(
                    """
                    UPDATE scan_runs SET is_baseline = 1
                    WHERE id = ? AND status = ?
                    AND NOT EXISTS (SELECT 1 FROM scan_runs WHERE is_baseline = 1)
                    """,
                    (scan_id, ScanStatus.COMPLETED.value),
                )
                return cur.rowcount == 1
        except sqlite3.IntegrityError:
            # Lost the race against another scan; the unique index kept one baseline.
            return False

    def latest_completed(self) -> Optional[ScanRun]:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM scan_runs WHERE status = ? ORDER BY id DESC LIMIT 1",
                (ScanStatus.COMPLETED.value,),
            ).fetchone()
        return _row_to_scan_run(row) if row else None

    def recent(self, limit: int = 10) -> list[ScanRun]:
        with transaction(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM scan_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_row_to_scan_run(r) for r in rows]

    def statistics(self) -> dict:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_scans,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed_scans,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed_scans,
                    AVG(CASE WHEN status = 'completed' THEN duration_seconds END) AS avg_scan_duration,
                    SUM(CASE WHEN status = 'completed' THEN changed_files ELSE 0 END) AS total_changed_files
                FROM scan_runs
                """
            ).fetchone()
        return {
            "total_scans": int(row["total_scans"] or 0),
            "completed_scans": int(row["completed_scans"] or 0),
            "failed_scans": int(row["failed_scans"] or 0),
            "avg_scan_duration": float(row["avg_scan_duration"] or 0.0),
            "total_changed_files": int(row["total_changed_files"] or 0),
        }

    def ids_older_than(self, cutoff: datetime, exclude: Iterable[int] = ()) -> list[int]:
        excluded = set(exclude)
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id FROM scan_runs WHERE started_at < ? AND status != ? ORDER BY id",
                (to_iso(cutoff), ScanStatus.RUNNING.value),
            ).fetchall()
        return [r["id"] for r in rows if r["id"] not in excluded]

    def delete(self, scan_ids: list[int], batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        deleted = 0
        for chunk in chunked(scan_ids, batch_size):
            with transaction(self.db_path) as conn:
                marks = _placeholders(len(chunk))
                conn.execute(f"DELETE FROM file_records WHERE scan_id IN ({marks})", chunk)
                conn.execute(f"DELETE FROM velocity_log WHERE scan_id IN ({marks})", chunk)
                cur = conn.execute(f"DELETE FROM scan_runs WHERE id IN ({marks})", chunk)
                deleted += cur.rowcount
        return deleted


class FileRecordRepository:
    """Batched writes and history projections over file_records."""

    def __init__(self, db_path: str | Path, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.db_path = db_path
        self.batch_size = max(1, batch_size)

    def insert_batch(self, scan_id: int, records: list[FileRecord]) -> int:
        """
        Insert records in fixed-size chunks, one transaction per chunk.

        Raises PersistenceError on the first failing chunk; chunks already
        committed stay committed.
        """
        written = 0
        for chunk in chunked(records, self.batch_size):
            try:
                with transaction(self.db_path) as conn:
                    conn.executemany(
                        """
                        INSERT INTO file_records (
                            scan_id, path, hash, previous_hash, size, last_modified, status, priority, diff
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                scan_id,
                                r.path,
                                r.hash,
                                r.previous_hash,
                                r.size,
                                r.last_modified,
                                r.status.value,
                                r.priority.value,
                                r.diff,
                            )
                            for r in chunk
                        ],
                    )
            except sqlite3.Error as e:
                raise PersistenceError(f"Batch write failed for scan {scan_id}: {e}") from e
            written += len(chunk)
            logger.debug("Persisted %d/%d file records for scan %s", written, len(records), scan_id)
        return written

    def by_scan(self, scan_id: int, limit: Optional[int] = None) -> list[FileRecord]:
        sql = "SELECT * FROM file_records WHERE scan_id = ? ORDER BY path"
        params: tuple = (scan_id,)
        if limit:
            sql += " LIMIT ?"
            params = (scan_id, limit)
        with transaction(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_file_record(r) for r in rows]

    def changed(self, scan_id: int) -> list[FileRecord]:
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM file_records WHERE scan_id = ? AND status != 'unchanged'
                ORDER BY
                    CASE status WHEN 'changed' THEN 1 WHEN 'new' THEN 2 WHEN 'deleted' THEN 3 ELSE 4 END,
                    path
                """,
                (scan_id,),
            ).fetchall()
        return [_row_to_file_record(r) for r in rows]

    def statistics(self, scan_id: int) -> dict:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_files,
                    SUM(CASE WHEN status = 'changed' THEN 1 ELSE 0 END) AS changed_files,
                    SUM(CASE WHEN status = 'new' THEN 1 ELSE 0 END) AS new_files,
                    SUM(CASE WHEN status = 'deleted' THEN 1 ELSE 0 END) AS deleted_files,
                    SUM(size) AS total_size
                FROM file_records WHERE scan_id = ?
                """,
                (scan_id,),
            ).fetchone()
        return {key: int(row[key] or 0) for key in row.keys()}

    def latest_hashes(self) -> dict[str, str]:
        """
        Latest known hash per path across every completed scan.

        Read from file_state, which completed scans maintain and retention
        never prunes. Paths whose last change was a deletion are left out, so
        a file that reappears later compares as new.
        """
        with transaction(self.db_path) as conn:
            rows = conn.execute("SELECT path, hash FROM file_state WHERE is_deleted = 0").fetchall()
        return {row["path"]: row["hash"] for row in rows}

    def latest_by_path(self, path: str) -> Optional[FileRecord]:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT fr.* FROM file_records fr
                JOIN scan_runs s ON s.id = fr.scan_id
                WHERE fr.path = ? AND s.status = 'completed'
                ORDER BY fr.scan_id DESC, fr.id DESC LIMIT 1
                """,
                (path,),
            ).fetchone()
        return _row_to_file_record(row) if row else None

    def scan_ids_with_priority(self, level: PriorityLevel) -> set[int]:
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT DISTINCT scan_id FROM file_records WHERE priority = ?",
                (level.value,),
            ).fetchall()
        return {r["scan_id"] for r in rows}

    def strip_diffs_older_than(self, cutoff: datetime) -> int:
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                """
                UPDATE file_records SET diff = NULL
                WHERE diff IS NOT NULL
                AND scan_id IN (SELECT id FROM scan_runs WHERE started_at < ? AND status != 'running')
                """,
                (to_iso(cutoff),),
            )
            return cur.rowcount

    def delete_for_scans(self, scan_ids: list[int], batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        deleted = 0
        for chunk in chunked(scan_ids, batch_size):
            with transaction(self.db_path) as conn:
                cur = conn.execute(
                    f"DELETE FROM file_records WHERE scan_id IN ({_placeholders(len(chunk))})",
                    chunk,
                )
                deleted += cur.rowcount
        return deleted

    def count(self, scan_id: Optional[int] = None, status: Optional[FileStatus] = None) -> int:
        clauses, params = ["1=1"], []
        if scan_id is not None:
            clauses.append("scan_id = ?")
            params.append(scan_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        with transaction(self.db_path) as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM file_records WHERE {' AND '.join(clauses)}",
                params,
            ).fetchone()
        return int(row["n"])
