"""
DriftGuard - Internal log sink.

DatabaseLogHandler bridges stdlib logging into the `logs` table so full
error detail (exception text, traceback) is retained internally while
operator-facing messages stay sanitised. LogRepository reads and tiers it.
"""

import json
import logging
import threading
import traceback
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from driftguard.core.models import from_iso, to_iso, utc_now
from driftguard.core.storage import transaction

logger = logging.getLogger(__name__)

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LEVELS = ("debug", "info", "success", "warning", "error")
CONTEXTS = ("scanner", "scheduler", "retention", "priority", "cache", "database", "cli", "general")

# Module name (last dotted component) -> log context.
_MODULE_CONTEXTS = {
    "scanner": "scanner",
    "orchestrator": "scanner",
    "comparator": "scanner",
    "hashing": "scanner",
    "diffing": "scanner",
    "checksum_cache": "cache",
    "retention": "retention",
    "priority": "priority",
    "velocity": "priority",
    "rules": "priority",
    "storage": "database",
    "content_store": "database",
    "log_store": "database",
    "main": "cli",
}


def level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warning"
    if levelno >= SUCCESS:
        return "success"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


def context_for(record: logging.LogRecord) -> str:
    context = getattr(record, "context", None)
    if context in CONTEXTS:
        return context
    return _MODULE_CONTEXTS.get(record.name.rsplit(".", 1)[-1], "general")


class LogRepository:
    def __init__(self, db_path: str | Path, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_path = db_path
        self.clock = clock or utc_now

    def create(
        self,
        level: str,
        context: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> int:
        level = level if level in LEVELS else "info"
        context = context if context in CONTEXTS else "general"
        payload = json.dumps(data, default=str) if data else None
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "INSERT INTO logs (log_level, context, message, data, created_at) VALUES (?, ?, ?, ?, ?)",
                (level, context, message, payload, to_iso(created_at or self.clock())),
            )
            return cur.lastrowid

    @staticmethod
    def _filters(level: Optional[str], context: Optional[str], search: Optional[str]) -> tuple[str, list]:
        clauses, params = ["1=1"], []
        if level:
            clauses.append("log_level = ?")
            params.append(level)
        if context:
            clauses.append("context = ?")
            params.append(context)
        if search:
            clauses.append("message LIKE ?")
            params.append(f"%{search}%")
        return " AND ".join(clauses), params

    def get_all(
        self,
        level: Optional[str] = None,
        context: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        where, params = self._filters(level, context, search)
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM logs WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["data"] = json.loads(row["data"]) if row["data"] else None
            entry["created_at"] = from_iso(row["created_at"])
            entries.append(entry)
        return entries

    def count(self, level: Optional[str] = None, context: Optional[str] = None, search: Optional[str] = None) -> int:
        where, params = self._filters(level, context, search)
        with transaction(self.db_path) as conn:
            return int(conn.execute(f"SELECT COUNT(*) FROM logs WHERE {where}", params).fetchone()[0])

    def contexts(self) -> list[str]:
        with transaction(self.db_path) as conn:
            rows = conn.execute("SELECT DISTINCT context FROM logs ORDER BY context").fetchall()
        return [r[0] for r in rows]

    def delete_old(self, days: int = 30) -> int:
        cutoff = self.clock() - timedelta(days=days)
        with transaction(self.db_path) as conn:
            return conn.execute("DELETE FROM logs WHERE created_at < ?", (to_iso(cutoff),)).rowcount

    def delete_old_with_tiers(self, tier2_days: int = 30, tier3_days: int = 90) -> dict[str, int]:
        """
        Tier 2: between tier3 and tier2 age, drop everything but warnings and errors.
        Tier 3: beyond tier3 age, drop everything.
        """
        now = self.clock()
        tier2_cutoff = to_iso(now - timedelta(days=tier2_days))
        tier3_cutoff = to_iso(now - timedelta(days=tier3_days))
        with transaction(self.db_path) as conn:
            tier2 = conn.execute(
                """
                DELETE FROM logs
                WHERE created_at < ? AND created_at >= ?
                AND log_level NOT IN ('warning', 'error')
                """,
                (tier2_cutoff, tier3_cutoff),
            ).rowcount
            tier3 = conn.execute("DELETE FROM logs WHERE created_at < ?", (tier3_cutoff,)).rowcount
        return {"tier2_deleted": tier2, "tier3_deleted": tier3, "total_deleted": tier2 + tier3}

    def delete_by_context(self, context: str) -> int:
        with transaction(self.db_path) as conn:
            return conn.execute("DELETE FROM logs WHERE context = ?", (context,)).rowcount


class DatabaseLogHandler(logging.Handler):
    """Persists log records into the logs table."""

    def __init__(self, db_path: str | Path, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.repository = LogRepository(db_path)
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            data: dict[str, Any] = {}
            extra = getattr(record, "data", None)
            if isinstance(extra, dict):
                data.update(extra)
            if record.exc_info and record.exc_info[0] is not None:
                data["exception"] = repr(record.exc_info[1])
                data["traceback"] = "".join(traceback.format_exception(*record.exc_info))
            self.repository.create(
                level_name(record.levelno),
                context_for(record),
                record.getMessage(),
                data or None,
                created_at=datetime.fromtimestamp(record.created).astimezone(),
            )
        except Exception:  # noqa: BLE001
            self.handleError(record)
        finally:
            self._local.active = False


def install_database_handler(db_path: str | Path, level: int = logging.INFO) -> DatabaseLogHandler:
    """Attach a DatabaseLogHandler to the driftguard logger tree."""
    handler = DatabaseLogHandler(db_path, level)
    logging.getLogger("driftguard").addHandler(handler)
    return handler
