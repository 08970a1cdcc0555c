"""
DriftGuard - Tiered retention.

Recurring task that keeps persisted history inside a storage budget:

1. expire checksum cache entries, purge on overflow
2. compute protected scans (baseline, scans holding critical records)
3. tier scans: strip diffs past tier 2, delete unprotected scans past tier 3
4. delete file records of unprotected scans past tier 2
5. tier logs; trim velocity log and content snapshots

Every step is a set of age-scoped deletes, so re-running after an
interruption is safe and a running scan is never touched. The per-path
file_state projection is not history and is never pruned here.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from driftguard.core.checksum_cache import SQLiteChecksumCache
from driftguard.core.content_store import ContentStore
from driftguard.core.log_store import LogRepository
from driftguard.core.models import PriorityLevel, RetentionPolicy, to_iso, utc_now
from driftguard.core.storage import FileRecordRepository, ScanRunRepository
from driftguard.core.velocity import VelocityTracker

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 6.0


class SchedulingHost(Protocol):
    """Host job primitive: run callback at or after first_run_at, then repeatedly."""

    def schedule_recurring(self, callback: Callable[[], Any], first_run_at: datetime, interval_seconds: float) -> Any:
        ...


@dataclass
class RetentionReport:
    started_at: datetime
    cache_expired: int = 0
    cache_overflow_purged: int = 0
    protected_scan_ids: list[int] = field(default_factory=list)
    diffs_stripped: int = 0
    scans_deleted: int = 0
    file_records_deleted: int = 0
    logs_deleted: dict[str, int] = field(default_factory=dict)
    velocity_entries_deleted: int = 0
    contents_trimmed: int = 0
    duration_seconds: float = 0.0
    failed_steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_steps

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "cache_expired": self.cache_expired,
            "cache_overflow_purged": self.cache_overflow_purged,
            "protected_scan_ids": self.protected_scan_ids,
            "diffs_stripped": self.diffs_stripped,
            "scans_deleted": self.scans_deleted,
            "file_records_deleted": self.file_records_deleted,
            "logs_deleted": self.logs_deleted,
            "velocity_entries_deleted": self.velocity_entries_deleted,
            "contents_trimmed": self.contents_trimmed,
            "duration_seconds": self.duration_seconds,
            "failed_steps": self.failed_steps,
        }


class RetentionScheduler:
    def __init__(
        self,
        db_path: str | Path,
        policy: Optional[RetentionPolicy] = None,
        cache: Optional[SQLiteChecksumCache] = None,
        content_store: Optional[ContentStore] = None,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
        velocity_log_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db_path = db_path
        self.policy = policy or RetentionPolicy()
        self.clock = clock or utc_now
        self.cache = cache or SQLiteChecksumCache(db_path, clock=self.clock)
        self.content_store = content_store or ContentStore(db_path, clock=self.clock)
        self.interval_hours = interval_hours
        self.velocity_log_days = velocity_log_days
        self.scan_runs = ScanRunRepository(db_path)
        self.file_records = FileRecordRepository(db_path)
        self.logs = LogRepository(db_path, clock=self.clock)
        self.velocity = VelocityTracker(db_path, clock=self.clock)

    @classmethod
    def from_config(cls, config: dict[str, Any], policy: RetentionPolicy, clock=None) -> "RetentionScheduler":
        clock = clock or utc_now
        db_path = config["database_path"]
        return cls(
            db_path,
            policy=policy,
            cache=SQLiteChecksumCache(
                db_path,
                ttl_hours=config["cache_ttl_hours"],
                max_entries=config["cache_max_entries"],
                clock=clock,
            ),
            content_store=ContentStore(db_path, retention_limit=config["content_retention_limit"], clock=clock),
            interval_hours=config["retention_interval_hours"],
            velocity_log_days=config["velocity_log_days"],
            clock=clock,
        )

    @property
    def interval_seconds(self) -> float:
        return self.interval_hours * 3600

    def protected_scan_ids(self) -> set[int]:
        protected = set(self.file_records.scan_ids_with_priority(PriorityLevel.CRITICAL))
        if self.policy.keep_baseline:
            baseline = self.scan_runs.baseline()
            if baseline is not None:
                protected.add(baseline.id)
        return protected

    def _step(self, report: RetentionReport, name: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except sqlite3.Error:
            logger.exception("Retention step '%s' failed", name, extra={"context": "retention"})
            report.failed_steps.append(name)

    def run_once(self, now: Optional[datetime] = None) -> RetentionReport:
        now = now or self.clock()
        report = RetentionReport(started_at=now)
        started = time.monotonic()
        tier2_cutoff = now - timedelta(days=self.policy.tier2_days)
        tier3_cutoff = now - timedelta(days=self.policy.tier3_days)
        protected: set[int] = set()

        def cache_step() -> None:
            report.cache_expired = self.cache.cleanup_expired()
            report.cache_overflow_purged = self.cache.enforce_ceiling()

        def protection_step() -> None:
            protected.update(self.protected_scan_ids())
            report.protected_scan_ids = sorted(protected)

        def scan_tier_step() -> None:
            report.diffs_stripped = self.file_records.strip_diffs_older_than(tier2_cutoff)
            expired = self.scan_runs.ids_older_than(tier3_cutoff, exclude=protected)
            report.scans_deleted = self.scan_runs.delete(expired) if expired else 0

        def file_record_step() -> None:
            aged = self.scan_runs.ids_older_than(tier2_cutoff, exclude=protected)
            report.file_records_deleted = self.file_records.delete_for_scans(aged) if aged else 0

        def log_step() -> None:
            report.logs_deleted = self.logs.delete_old_with_tiers(self.policy.log_tier2_days, self.policy.log_tier3_days)

        def housekeeping_step() -> None:
            report.velocity_entries_deleted = self.velocity.cleanup(self.velocity_log_days)
            report.contents_trimmed = self.content_store.trim()

        self._step(report, "cache", cache_step)
        self._step(report, "protection", protection_step)
        if "protection" not in report.failed_steps:
            # Deleting without a protection set could remove the baseline.
            self._step(report, "scan_tiers", scan_tier_step)
            self._step(report, "file_records", file_record_step)
        self._step(report, "logs", log_step)
        self._step(report, "housekeeping", housekeeping_step)

        report.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Retention run: %d scans deleted, %d file records deleted, %d diffs stripped, %d cache entries expired",
            report.scans_deleted,
            report.file_records_deleted,
            report.diffs_stripped,
            report.cache_expired + report.cache_overflow_purged,
            extra={"context": "retention", "data": report.to_dict()},
        )
        return report

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run now, then every interval until stop_event is set."""
        logger.info("Retention scheduler started (every %.1fh)", self.interval_hours, extra={"context": "scheduler"})
        while not stop_event.is_set():
            self.run_once()
            if stop_event.wait(self.interval_seconds):
                break
        logger.info("Retention scheduler stopped", extra={"context": "scheduler"})

    def register(self, host: SchedulingHost) -> Any:
        """Hand the recurring job to an external scheduler."""
        first_run_at = self.clock() + timedelta(seconds=self.interval_seconds)
        logger.info("Retention scheduled, first run at %s", to_iso(first_run_at), extra={"context": "scheduler"})
        return host.schedule_recurring(self.run_once, first_run_at, self.interval_seconds)
