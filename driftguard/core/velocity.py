"""
DriftGuard - Change-velocity tracking.

Every change to a path matched by a velocity-tracking rule is logged. A rule
is exceeded when the number of logged changes for (rule, path) inside the
trailing window reaches its threshold. Counts survive restarts because they
live in the velocity_log table rather than in memory.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from driftguard.core.models import ChangeType, PriorityRule, VelocityLogEntry, from_iso, to_iso, utc_now
from driftguard.core.storage import transaction

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class VelocityTracker:
    def __init__(self, db_path: str | Path, clock: Optional[Clock] = None) -> None:
        self.db_path = db_path
        self.clock = clock or utc_now

    def log(self, rule_id: int, path: str, scan_id: int, change_type: ChangeType = ChangeType.MODIFIED) -> VelocityLogEntry:
        detected_at = self.clock()
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "INSERT INTO velocity_log (rule_id, path, scan_id, change_type, detected_at) VALUES (?, ?, ?, ?, ?)",
                (rule_id, path, scan_id, ChangeType(change_type).value, to_iso(detected_at)),
            )
            entry_id = cur.lastrowid
        return VelocityLogEntry(
            id=entry_id,
            rule_id=rule_id,
            path=path,
            scan_id=scan_id,
            change_type=ChangeType(change_type),
            detected_at=detected_at,
        )

    def change_count(self, rule_id: int, path: str, window_hours: int) -> int:
        since = self.clock() - timedelta(hours=window_hours)
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM velocity_log WHERE rule_id = ? AND path = ? AND detected_at >= ?",
                (rule_id, path, to_iso(since)),
            ).fetchone()
        return int(row[0])

    def exceeds_threshold(self, rule_id: int, path: str, threshold: int, window_hours: int) -> bool:
        """True once changes for (rule, path) in the trailing window reach threshold."""
        count = self.change_count(rule_id, path, window_hours)
        if count >= threshold:
            logger.warning(
                "Velocity exceeded for %s: %d changes in %dh (limit %d, rule #%s)",
                path,
                count,
                window_hours,
                threshold,
                rule_id,
                extra={"context": "priority"},
            )
            return True
        return False

    def rule_exceeded(self, rule: PriorityRule, path: str) -> bool:
        if not rule.tracks_velocity or rule.id is None:
            return False
        return self.exceeds_threshold(rule.id, path, rule.velocity_threshold, rule.velocity_window_hours)

    def recent_changes(self, rule_id: int, path: str, hours: int = 24) -> list[VelocityLogEntry]:
        since = self.clock() - timedelta(hours=hours)
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM velocity_log
                WHERE rule_id = ? AND path = ? AND detected_at >= ?
                ORDER BY detected_at DESC, id DESC
                """,
                (rule_id, path, to_iso(since)),
            ).fetchall()
        return [
            VelocityLogEntry(
                id=r["id"],
                rule_id=r["rule_id"],
                path=r["path"],
                scan_id=r["scan_id"],
                change_type=ChangeType(r["change_type"]),
                detected_at=from_iso(r["detected_at"]),
            )
            for r in rows
        ]

    def stats(self, rule_id: Optional[int] = None, days: int = 7) -> dict:
        since = self.clock() - timedelta(days=days)
        sql = """
            SELECT COUNT(*) AS total_changes,
                   COUNT(DISTINCT path) AS unique_files,
                   COUNT(DISTINCT scan_id) AS scans_with_changes,
                   SUM(CASE WHEN change_type = 'added' THEN 1 ELSE 0 END) AS added,
                   SUM(CASE WHEN change_type = 'modified' THEN 1 ELSE 0 END) AS modified,
                   SUM(CASE WHEN change_type = 'deleted' THEN 1 ELSE 0 END) AS deleted
            FROM velocity_log WHERE detected_at >= ?
        """
        params: list = [to_iso(since)]
        if rule_id is not None:
            sql += " AND rule_id = ?"
            params.append(rule_id)
        with transaction(self.db_path) as conn:
            row = conn.execute(sql, params).fetchone()
        return {key: int(row[key] or 0) for key in row.keys()}

    def top_changed_files(self, days: int = 7, limit: int = 10) -> list[dict]:
        since = self.clock() - timedelta(days=days)
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT path, COUNT(*) AS change_count, MAX(detected_at) AS last_change
                FROM velocity_log WHERE detected_at >= ?
                GROUP BY path ORDER BY change_count DESC, path ASC LIMIT ?
                """,
                (to_iso(since), limit),
            ).fetchall()
        return [dict(r) for r in rows]

    def velocity_alerts(self, rules: list[PriorityRule]) -> list[dict]:
        """Every (rule, path) pair currently at or over its threshold."""
        alerts = []
        for rule in rules:
            if not rule.tracks_velocity or rule.id is None:
                continue
            since = self.clock() - timedelta(hours=rule.velocity_window_hours)
            with transaction(self.db_path) as conn:
                rows = conn.execute(
                    """
                    SELECT path, COUNT(*) AS change_count FROM velocity_log
                    WHERE rule_id = ? AND detected_at >= ?
                    GROUP BY path HAVING COUNT(*) >= ?
                    ORDER BY change_count DESC, path ASC
                    """,
                    (rule.id, to_iso(since), rule.velocity_threshold),
                ).fetchall()
            for r in rows:
                alerts.append(
                    {
                        "rule_id": rule.id,
                        "path": r["path"],
                        "change_count": r["change_count"],
                        "threshold": rule.velocity_threshold,
                        "window_hours": rule.velocity_window_hours,
                        "priority_level": rule.priority_level.value,
                    }
                )
        return alerts

    def cleanup(self, days: int = 30) -> int:
        cutoff = self.clock() - timedelta(days=days)
        with transaction(self.db_path) as conn:
            deleted = conn.execute("DELETE FROM velocity_log WHERE detected_at < ?", (to_iso(cutoff),)).rowcount
        if deleted:
            logger.info("Removed %d velocity log entries older than %d days", deleted, days, extra={"context": "priority"})
        return deleted

    def delete_by_rule(self, rule_id: int) -> int:
        with transaction(self.db_path) as conn:
            return conn.execute("DELETE FROM velocity_log WHERE rule_id = ?", (rule_id,)).rowcount

    def delete_by_scan(self, scan_id: int) -> int:
        with transaction(self.db_path) as conn:
            return conn.execute("DELETE FROM velocity_log WHERE scan_id = ?", (scan_id,)).rowcount
