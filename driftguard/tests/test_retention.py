import threading
from datetime import timedelta

from driftguard.core.checksum_cache import SQLiteChecksumCache
from driftguard.core.log_store import LogRepository
from driftguard.core.models import FileRecord, FileStatus, PriorityLevel, RetentionPolicy, ScanStats
from driftguard.core.retention import RetentionScheduler
from driftguard.core.storage import FileRecordRepository, ScanRunRepository


def _run(db_path, clock, days_ago, records=(), baseline=False, complete=True):
    runs = ScanRunRepository(db_path)
    run = runs.create(started_at=clock.now - timedelta(days=days_ago))
    FileRecordRepository(db_path).insert_batch(run.id, list(records))
    if complete:
        runs.complete(run.id, ScanStats(), 0.5, 1)
    if baseline:
        assert runs.mark_baseline_if_absent(run.id)
    return run


def _record(path, priority=PriorityLevel.NONE, diff=None):
    return FileRecord(path=path, hash="h", status=FileStatus.CHANGED, priority=priority, diff=diff)


def _history(db_path, clock):
    return {
        "baseline": _run(db_path, clock, 200, [_record("a.php")], baseline=True),
        "critical": _run(db_path, clock, 150, [_record("wp-config.php", PriorityLevel.CRITICAL, "d")]),
        "old": _run(db_path, clock, 120, [_record("old.php")]),
        "mid": _run(db_path, clock, 45, [_record("mid.php", PriorityLevel.HIGH, "diff")]),
        "recent": _run(db_path, clock, 5, [_record("new.php", diff="fresh diff")]),
        "stuck": _run(db_path, clock, 100, [_record("x.php")], complete=False),
    }


def test_protected_scans_survive_any_age(db_path, clock):
    history = _history(db_path, clock)
    scheduler = RetentionScheduler(db_path, RetentionPolicy(tier2_days=30, tier3_days=90), clock=clock)

    report = scheduler.run_once()

    runs = ScanRunRepository(db_path)
    assert runs.get(history["baseline"].id) is not None
    assert runs.get(history["critical"].id) is not None
    assert runs.get(history["old"].id) is None
    assert report.protected_scan_ids == sorted([history["baseline"].id, history["critical"].id])
    assert report.scans_deleted == 1
    assert report.ok


def test_tier_two_strips_diffs_and_drops_unprotected_records(db_path, clock):
    history = _history(db_path, clock)
    records = FileRecordRepository(db_path)

    RetentionScheduler(db_path, RetentionPolicy(), clock=clock).run_once()

    assert ScanRunRepository(db_path).get(history["mid"].id) is not None
    assert records.count(history["mid"].id) == 0
    critical_records = records.by_scan(history["critical"].id)
    assert len(critical_records) == 1
    assert critical_records[0].diff is None
    assert records.by_scan(history["recent"].id)[0].diff == "fresh diff"
    assert records.count(history["baseline"].id) == 1


def test_running_scans_are_never_touched(db_path, clock):
    history = _history(db_path, clock)

    RetentionScheduler(db_path, RetentionPolicy(), clock=clock).run_once()

    assert ScanRunRepository(db_path).get(history["stuck"].id) is not None
    assert FileRecordRepository(db_path).count(history["stuck"].id) == 1


def test_second_run_is_a_noop(db_path, clock):
    _history(db_path, clock)
    scheduler = RetentionScheduler(db_path, RetentionPolicy(), clock=clock)
    scheduler.run_once()

    again = scheduler.run_once()

    assert (again.scans_deleted, again.file_records_deleted, again.diffs_stripped) == (0, 0, 0)


def test_baseline_unprotected_when_policy_says_so(db_path, clock):
    history = _history(db_path, clock)

    RetentionScheduler(db_path, RetentionPolicy(keep_baseline=False), clock=clock).run_once()

    assert ScanRunRepository(db_path).get(history["baseline"].id) is None


def test_cache_expiry_runs_first(db_path, clock):
    cache = SQLiteChecksumCache(db_path, clock=clock)
    cache.put("/site/a.php", 1, 1.0, "h", ttl_hours=1)
    clock.advance(hours=2)

    report = RetentionScheduler(db_path, cache=cache, clock=clock).run_once()

    assert report.cache_expired == 1
    assert cache.count() == 0


def test_logs_are_tiered(db_path, clock):
    logs = LogRepository(db_path, clock=clock)
    logs.create("info", "scanner", "old info", created_at=clock.now - timedelta(days=45))
    logs.create("warning", "scanner", "old warning", created_at=clock.now - timedelta(days=45))
    logs.create("error", "scanner", "ancient error", created_at=clock.now - timedelta(days=100))
    logs.create("info", "scanner", "fresh info", created_at=clock.now - timedelta(days=1))

    report = RetentionScheduler(db_path, RetentionPolicy(), clock=clock).run_once()

    assert report.logs_deleted["tier2_deleted"] == 1
    assert report.logs_deleted["tier3_deleted"] == 1
    assert sorted(e["message"] for e in logs.get_all(context="scanner")) == ["fresh info", "old warning"]


def test_run_forever_stops_on_event(db_path, clock, monkeypatch):
    scheduler = RetentionScheduler(db_path, clock=clock)
    stop = threading.Event()
    calls = []

    def fake_run_once(now=None):
        calls.append(now)
        stop.set()

    monkeypatch.setattr(scheduler, "run_once", fake_run_once)
    scheduler.run_forever(stop)

    assert calls == [None]


def test_register_hands_job_to_host(db_path, clock):
    class Host:
        def schedule_recurring(self, callback, first_run_at, interval_seconds):
            self.args = (callback, first_run_at, interval_seconds)
            return "job-1"

    host = Host()
    scheduler = RetentionScheduler(db_path, interval_hours=6, clock=clock)

    assert scheduler.register(host) == "job-1"
    assert host.args[1] == clock.now + timedelta(hours=6)
    assert host.args[2] == 6 * 3600
