import json

from conftest import write_file

from driftguard.core.alerts import AlertManager
from driftguard.core.errors import GENERIC_DATABASE, PersistenceError
from driftguard.core.models import FileStatus, PriorityLevel, RetentionPolicy, ScanStatus, ScanType
from driftguard.core.orchestrator import ScanOrchestrator
from driftguard.core.retention import RetentionScheduler
from driftguard.core.rules import RuleRepository, rule_from_dict
from driftguard.core.velocity import VelocityTracker


def _orchestrator(db_path, root, clock, **kwargs):
    return ScanOrchestrator(db_path, root, clock=clock, **kwargs)


def test_end_to_end_change_detection(db_path, managed_root, clock):
    write_file(managed_root, "a.txt", "alpha\n")
    write_file(managed_root, "b.txt", "bravo\n")
    write_file(managed_root, "d.txt", "delta\n")
    orchestrator = _orchestrator(db_path, managed_root, clock)

    first = orchestrator.run()
    assert first.succeeded
    assert first.is_baseline
    assert first.stats.new_files == 3
    assert first.stored_records == 3

    write_file(managed_root, "b.txt", "bravo, edited\n")
    write_file(managed_root, "c.txt", "charlie\n")
    (managed_root / "d.txt").unlink()
    clock.advance(hours=1)

    second = orchestrator.run()
    statuses = {r.path: r.status for r in second.records}

    assert statuses == {
        "a.txt": FileStatus.UNCHANGED,
        "b.txt": FileStatus.CHANGED,
        "c.txt": FileStatus.NEW,
        "d.txt": FileStatus.DELETED,
    }
    changed = next(r for r in second.records if r.path == "b.txt")
    assert changed.diff is not None
    assert "+bravo, edited" in changed.diff
    assert (second.stats.changed_files, second.stats.new_files, second.stats.deleted_files) == (1, 1, 1)
    assert second.scan_run.changed_files == 1
    assert second.is_baseline is False
    assert {r.path for r in orchestrator.file_records.by_scan(second.scan_run.id)} == {"b.txt", "c.txt", "d.txt"}


def test_second_scan_of_untouched_tree_finds_nothing(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")
    write_file(managed_root, "sub/b.php", "b")
    orchestrator = _orchestrator(db_path, managed_root, clock)

    orchestrator.run()
    second = orchestrator.run()

    assert not second.stats.has_changes
    assert second.stats.unchanged_files == 2
    assert second.stored_records == 0
    assert second.walk_stats.cache_hits == 2


def test_baseline_is_first_completed_scan_and_unique(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")
    orchestrator = _orchestrator(db_path, managed_root, clock)

    outcomes = [orchestrator.run() for _ in range(4)]

    runs = orchestrator.history(10)
    baselines = [r for r in runs if r.is_baseline]
    assert len(baselines) == 1
    assert baselines[0].id == outcomes[0].scan_run.id


def test_non_baseline_scans_store_no_unchanged_rows(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")
    write_file(managed_root, "b.php", "b")
    orchestrator = _orchestrator(db_path, managed_root, clock)
    orchestrator.run()
    write_file(managed_root, "b.php", "bb")

    second = orchestrator.run()

    assert orchestrator.file_records.count(second.scan_run.id, FileStatus.UNCHANGED) == 0
    assert orchestrator.file_records.count(second.scan_run.id) == 1


def test_reference_survives_scans_that_dropped_unchanged_rows(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")
    write_file(managed_root, "b.php", "b")
    orchestrator = _orchestrator(db_path, managed_root, clock)
    orchestrator.run()
    write_file(managed_root, "b.php", "b2")
    orchestrator.run()

    third = orchestrator.run()

    assert not third.stats.has_changes


def test_priority_assigned_and_alert_emitted(db_path, managed_root, clock, tmp_path):
    RuleRepository(db_path).create(
        rule_from_dict({"path": "wp-config.php", "priority_level": "critical", "notify_immediately": True})
    )
    write_file(managed_root, "index.php", "i")
    alert_log = tmp_path / "logs" / "alerts.log"
    orchestrator = _orchestrator(
        db_path, managed_root, clock, alert_manager=AlertManager(alert_log, console_alerts=False)
    )
    orchestrator.run()

    write_file(managed_root, "wp-config.php", "<?php define('DB', 'x');")
    outcome = orchestrator.run()

    stored = orchestrator.file_records.by_scan(outcome.scan_run.id)
    assert stored[0].priority is PriorityLevel.CRITICAL
    assert outcome.priority_stats.critical_count == 1
    assert outcome.alerts_emitted == 1
    alert = json.loads(alert_log.read_text(encoding="utf-8").strip())
    assert alert["path"] == "wp-config.php"
    assert alert["priority"] == "critical"


def test_persistence_failure_marks_run_failed_with_sanitized_note(db_path, managed_root, clock, monkeypatch):
    write_file(managed_root, "a.php", "a")
    orchestrator = _orchestrator(db_path, managed_root, clock)

    def broken_insert(scan_id, records):
        raise PersistenceError(f"Batch write failed for scan {scan_id}: database is locked")

    monkeypatch.setattr(orchestrator.file_records, "insert_batch", broken_insert)
    outcome = orchestrator.run()

    assert outcome.succeeded is False
    assert outcome.scan_run.status is ScanStatus.FAILED
    assert outcome.scan_run.notes == GENERIC_DATABASE
    assert outcome.error == GENERIC_DATABASE
    assert orchestrator.scan_runs.baseline() is None


def test_cancelled_run_is_not_reopened(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")
    orchestrator = _orchestrator(db_path, managed_root, clock)

    def cancel_midway(message, current_item):
        if current_item == "Scan complete":
            orchestrator.cancel(orchestrator.history(1)[0].id)

    outcome = orchestrator.run(progress_callback=cancel_midway)

    assert outcome.scan_run.status is ScanStatus.CANCELLED
    assert outcome.is_baseline is False
    assert orchestrator.scan_runs.baseline() is None

    retry = orchestrator.run()
    assert retry.is_baseline
    assert retry.stats.new_files == 1


def test_run_records_type_duration_and_memory(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")

    outcome = _orchestrator(db_path, managed_root, clock).run(scan_type=ScanType.SCHEDULED, schedule_id=7)

    assert outcome.scan_run.scan_type is ScanType.SCHEDULED
    assert outcome.scan_run.schedule_id == 7
    assert outcome.scan_run.peak_memory > 0
    assert outcome.scan_run.duration_seconds >= 0


def test_untouched_tree_stays_clean_after_tier_two_retention(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")
    orchestrator = _orchestrator(db_path, managed_root, clock)
    orchestrator.run()
    write_file(managed_root, "a.php", "a2")
    write_file(managed_root, "c.php", "c")
    changed = orchestrator.run()
    clock.advance(days=40)

    report = RetentionScheduler(db_path, RetentionPolicy(tier2_days=30, tier3_days=90), clock=clock).run_once()
    assert report.file_records_deleted >= 2
    assert orchestrator.file_records.count(changed.scan_run.id) == 0

    rescan = orchestrator.run()

    assert rescan.succeeded
    assert not rescan.stats.has_changes
    assert {r.status for r in rescan.records} == {FileStatus.UNCHANGED}


def test_deleted_file_leaves_reference_and_returns_as_new(db_path, managed_root, clock):
    write_file(managed_root, "a.php", "a")
    write_file(managed_root, "b.php", "b")
    orchestrator = _orchestrator(db_path, managed_root, clock)
    orchestrator.run()
    (managed_root / "b.php").unlink()
    orchestrator.run()

    assert orchestrator.file_records.latest_hashes().keys() == {"a.php"}

    write_file(managed_root, "b.php", "b")
    back = orchestrator.run()
    assert {r.path: r.status for r in back.changes} == {"b.php": FileStatus.NEW}


def test_failed_persistence_sends_no_alert_and_drops_velocity(db_path, managed_root, clock, tmp_path, monkeypatch):
    rule = RuleRepository(db_path).create(
        rule_from_dict(
            {
                "path": "wp-config.php",
                "priority_level": "critical",
                "notify_immediately": True,
                "velocity_threshold": 5,
                "velocity_window_hours": 1,
            }
        )
    )
    write_file(managed_root, "index.php", "i")
    alert_log = tmp_path / "logs" / "alerts.log"
    orchestrator = _orchestrator(
        db_path, managed_root, clock, alert_manager=AlertManager(alert_log, console_alerts=False)
    )
    orchestrator.run()
    write_file(managed_root, "wp-config.php", "<?php define('DB', 'x');")

    def broken_insert(scan_id, records):
        raise PersistenceError(f"Batch write failed for scan {scan_id}: disk I/O error")

    monkeypatch.setattr(orchestrator.file_records, "insert_batch", broken_insert)
    outcome = orchestrator.run()

    assert outcome.scan_run.status is ScanStatus.FAILED
    assert outcome.alerts_emitted == 0
    assert not alert_log.exists()
    assert VelocityTracker(db_path, clock=clock).change_count(rule.id, "wp-config.php", 1) == 0
    assert "wp-config.php" not in orchestrator.file_records.latest_hashes()
