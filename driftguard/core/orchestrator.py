"""
DriftGuard - Scan orchestration.

Pipeline:  reference set → scanner (+ checksum cache) → comparator (+ diffs)
           → content snapshots → priority / velocity → persistence → alerts

One call to run() is one ScanRun: created `running`, ends `completed` or
`failed` (or stays `cancelled` if an operator cancelled it meanwhile).
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

import psutil

from driftguard.core.alerts import AlertManager
from driftguard.core.checksum_cache import SQLiteChecksumCache
from driftguard.core.comparator import ChangeComparator
from driftguard.core.content_store import ContentStore
from driftguard.core.diffing import DiffBuilder
from driftguard.core.errors import ScanNotFoundError, sanitize_error_message
from driftguard.core.log_store import SUCCESS
from driftguard.core.models import (
    ChangeType,
    FileRecord,
    FileStatus,
    PriorityStats,
    ScanRun,
    ScanStats,
    ScanStatus,
    ScanType,
    utc_now,
)
from driftguard.core.priority import PriorityMatcher, PriorityResult
from driftguard.core.rules import RuleRepository
from driftguard.core.scanner import DirectoryScanner, ProgressCallback, ScanPolicy, WalkStats
from driftguard.core.storage import FileRecordRepository, ScanRunRepository
from driftguard.core.velocity import VelocityTracker

logger = logging.getLogger(__name__)

_PROCESSED_STATUSES = (FileStatus.NEW, FileStatus.CHANGED)


class MemorySampler:
    """Tracks the highest RSS seen for this process during a scan."""

    def __init__(self) -> None:
        self._process = psutil.Process()
        self.peak = 0
        self.sample()

    def sample(self) -> int:
        try:
            rss = self._process.memory_info().rss
        except psutil.Error as e:
            logger.debug("Memory sample failed: %s", e)
            return self.peak
        self.peak = max(self.peak, rss)
        return self.peak


@dataclass
class ScanOutcome:
    """Everything one run produced, for the caller and the terminal summary."""

    scan_run: ScanRun
    stats: ScanStats = field(default_factory=ScanStats)
    records: list[FileRecord] = field(default_factory=list)
    priority_results: dict[str, PriorityResult] = field(default_factory=dict)
    priority_stats: PriorityStats = field(default_factory=PriorityStats)
    walk_stats: WalkStats = field(default_factory=WalkStats)
    stored_records: int = 0
    alerts_emitted: int = 0
    is_baseline: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.scan_run.status is ScanStatus.COMPLETED

    @property
    def changes(self) -> list[FileRecord]:
        return [r for r in self.records if r.status is not FileStatus.UNCHANGED]


class ScanOrchestrator:
    """
    Sequences one integrity scan end to end.

    No lock is taken against concurrent runs: two simultaneous scans may
    interleave their FileRecord batches. Baseline assignment is atomic in
    storage, so at most one run ever becomes the baseline.
    """

    def __init__(
        self,
        db_path: str | Path,
        root: Path,
        scanner: Optional[DirectoryScanner] = None,
        priority_matcher: Optional[PriorityMatcher] = None,
        diff_builder: Optional[DiffBuilder] = None,
        alert_manager: Optional[AlertManager] = None,
        batch_size: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db_path = db_path
        self.root = Path(root)
        self.clock = clock or utc_now
        self.scanner = scanner or DirectoryScanner(cache=SQLiteChecksumCache(db_path, clock=self.clock))
        self.priority = priority_matcher or PriorityMatcher(
            RuleRepository(db_path),
            VelocityTracker(db_path, clock=self.clock),
            clock=self.clock,
        )
        self.diff_builder = diff_builder or DiffBuilder(
            self.root,
            ContentStore(db_path, clock=self.clock),
            clock=self.clock,
        )
        self.comparator = ChangeComparator(diff_provider=self.diff_builder.build)
        self.alert_manager = alert_manager
        self.scan_runs = ScanRunRepository(db_path)
        self.file_records = FileRecordRepository(db_path, batch_size=batch_size)

    @classmethod
    def from_config(cls, config: dict[str, Any], clock: Optional[Callable[[], datetime]] = None) -> "ScanOrchestrator":
        db_path = config["database_path"]
        clock = clock or utc_now
        scanner = DirectoryScanner(
            policy=ScanPolicy(
                extensions=config["extensions"],
                exclude_patterns=config["exclude_patterns"],
                max_file_size=config["max_file_size"],
            ),
            cache=SQLiteChecksumCache(
                db_path,
                ttl_hours=config["cache_ttl_hours"],
                max_entries=config["cache_max_entries"],
                clock=clock,
            ),
            progress_interval=config["progress_interval"],
        )
        diff_builder = DiffBuilder(
            config["scan_root"],
            ContentStore(db_path, retention_limit=config["content_retention_limit"], clock=clock),
            text_extensions=config["text_extensions"],
            max_diff_bytes=config["max_diff_bytes"],
            max_content_bytes=config["max_content_bytes"],
            clock=clock,
        )
        alert_manager = AlertManager(config["alert_log_path"], console_alerts=config["console_alerts"])
        return cls(
            db_path,
            config["scan_root"],
            scanner=scanner,
            diff_builder=diff_builder,
            alert_manager=alert_manager,
            batch_size=config["batch_size"],
            clock=clock,
        )

    def _classify(self, records: list[FileRecord], scan_id: int) -> dict[str, PriorityResult]:
        results: dict[str, PriorityResult] = {}
        for record in records:
            if record.status in _PROCESSED_STATUSES:
                result = self.priority.process(record.path, scan_id, ChangeType.from_status(record.status))
                record.priority = result.priority
                results[record.path] = result
            elif record.status is FileStatus.DELETED:
                # Labelled for retention protection only; no velocity or notification.
                record.priority = self.priority.priority_for(record.path)
        return results

    def _snapshot_contents(self, fingerprints, records: list[FileRecord], first_scan: bool) -> None:
        touched = {r.path for r in records if r.status in _PROCESSED_STATUSES}
        for fp in fingerprints:
            if first_scan or fp.path in touched:
                self.diff_builder.snapshot(fp)

    def _discard_velocity(self, scan_id: int) -> None:
        # A run that did not complete will be re-detected; its changes must not count twice.
        if self.priority.velocity is None:
            return
        try:
            removed = self.priority.velocity.delete_by_scan(scan_id)
        except sqlite3.Error as e:
            logger.warning("Could not discard velocity entries of scan #%d: %s", scan_id, e)
            return
        if removed:
            logger.info("Discarded %d velocity entries of unfinished scan #%d", removed, scan_id)

    def _alert(self, records: list[FileRecord], results: dict[str, PriorityResult], scan_id: int) -> int:
        if self.alert_manager is None:
            return 0
        items = [(r, results[r.path]) for r in records if r.path in results and results[r.path].should_notify]
        return self.alert_manager.emit_batch(items, scan_id)

    def run(
        self,
        scan_type: ScanType = ScanType.MANUAL,
        schedule_id: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ScanOutcome:
        """
        Execute one scan. Never raises for scan failures: the run is marked
        `failed` with a sanitised note and the outcome carries that note.
        """
        scan_run = self.scan_runs.create(scan_type, schedule_id, started_at=self.clock())
        outcome = ScanOutcome(scan_run=scan_run)
        memory = MemorySampler()
        started = time.monotonic()
        logger.info("Scan #%d started (%s) on %s", scan_run.id, scan_type.value, self.root)

        def on_progress(message: str, current_item: str) -> None:
            memory.sample()
            if progress_callback:
                progress_callback(message, current_item)

        try:
            first_scan = self.scan_runs.baseline() is None
            reference = self.file_records.latest_hashes()
            self.priority.load_rules()

            fingerprints = list(self.scanner.scan(self.root, on_progress))
            outcome.walk_stats = self.scanner.last_stats
            on_progress("Comparing with reference state", f"{len(reference)} known files")
            records = self.comparator.compare(fingerprints, reference)
            self._snapshot_contents(fingerprints, records, first_scan)

            outcome.priority_results = self._classify(records, scan_run.id)
            outcome.priority_stats = self.priority.calculate_stats(outcome.priority_results.values())

            # The first run keeps every row; later runs only keep drift.
            to_store = records if first_scan else [r for r in records if r.status is not FileStatus.UNCHANGED]
            on_progress("Saving scan results", f"{len(to_store)} records")
            outcome.stored_records = self.file_records.insert_batch(scan_run.id, to_store)

            outcome.records = records
            outcome.stats = ScanStats.from_records(records)
            outcome.stats.extra = outcome.priority_stats.to_dict()
            duration = round(time.monotonic() - started, 3)
            peak = memory.sample()
            completed = self.scan_runs.complete(
                scan_run.id,
                outcome.stats,
                duration,
                peak,
                notes=(
                    f"Scan completed: {outcome.stats.changed_files} changed, "
                    f"{outcome.stats.new_files} new, {outcome.stats.deleted_files} deleted"
                ),
                records=records,
            )
            if completed:
                outcome.is_baseline = self.scan_runs.mark_baseline_if_absent(scan_run.id)
                # Alerts leave the engine only once the run is durably completed.
                outcome.alerts_emitted = self._alert(records, outcome.priority_results, scan_run.id)
                logger.log(
                    SUCCESS,
                    "Scan #%d completed in %.2fs: %d files, %d changed, %d new, %d deleted%s",
                    scan_run.id,
                    duration,
                    outcome.stats.total_files,
                    outcome.stats.changed_files,
                    outcome.stats.new_files,
                    outcome.stats.deleted_files,
                    " (baseline)" if outcome.is_baseline else "",
                    extra={"context": "scanner", "data": outcome.stats.extra},
                )
            else:
                logger.warning("Scan #%d was no longer running at completion; status left unchanged", scan_run.id)
                self._discard_velocity(scan_run.id)
        except Exception as e:  # noqa: BLE001
            logger.exception("Scan #%d failed", scan_run.id, extra={"context": "scanner"})
            outcome.error = sanitize_error_message(str(e))
            self.scan_runs.fail(scan_run.id, outcome.error)
            self._discard_velocity(scan_run.id)

        outcome.scan_run = self.scan_runs.get(scan_run.id) or scan_run
        return outcome

    def cancel(self, scan_id: int) -> bool:
        """Move a running scan to `cancelled`. Terminal runs are left as they are."""
        if self.scan_runs.get(scan_id) is None:
            raise ScanNotFoundError(f"Scan {scan_id} does not exist")
        cancelled = self.scan_runs.cancel(scan_id)
        if cancelled:
            logger.info("Scan #%d cancelled", scan_id, extra={"context": "scanner"})
        return cancelled

    def history(self, limit: int = 10) -> list[ScanRun]:
        return self.scan_runs.recent(limit)

    def statistics(self) -> dict:
        return self.scan_runs.statistics()
