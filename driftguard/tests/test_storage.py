import pytest

from driftguard.core.errors import PersistenceError
from driftguard.core.models import FileRecord, FileStatus, PriorityLevel, ScanStats, ScanStatus
from driftguard.core.storage import FileRecordRepository, ScanRunRepository, init_db


def _completed_run(runs, started_at=None):
    run = runs.create(started_at=started_at)
    assert runs.complete(run.id, ScanStats(), 0.1, 1024)
    return run


def test_scan_run_lifecycle_is_one_way(db_path):
    runs = ScanRunRepository(db_path)
    run = runs.create()
    assert run.status is ScanStatus.RUNNING

    assert runs.cancel(run.id) is True
    assert runs.complete(run.id, ScanStats(total_files=3), 1.0, 1) is False
    assert runs.fail(run.id, "late failure") is False
    assert runs.get(run.id).status is ScanStatus.CANCELLED


def test_only_one_baseline_and_it_is_the_first(db_path):
    runs = ScanRunRepository(db_path)
    first = _completed_run(runs)
    assert runs.mark_baseline_if_absent(first.id) is True
    for _ in range(3):
        later = _completed_run(runs)
        assert runs.mark_baseline_if_absent(later.id) is False

    assert runs.baseline().id == first.id
    assert sum(1 for r in runs.recent(10) if r.is_baseline) == 1


def test_baseline_requires_completed_run(db_path):
    runs = ScanRunRepository(db_path)
    run = runs.create()

    assert runs.mark_baseline_if_absent(run.id) is False
    assert runs.baseline() is None


def test_insert_batch_chunks_and_counts(db_path):
    runs = ScanRunRepository(db_path)
    run = runs.create()
    repo = FileRecordRepository(db_path, batch_size=3)
    records = [FileRecord(path=f"f{i}.php", hash=f"h{i}", status=FileStatus.NEW) for i in range(7)]

    assert repo.insert_batch(run.id, records) == 7
    assert repo.count(scan_id=run.id) == 7
    assert repo.statistics(run.id)["new_files"] == 7


def test_insert_batch_failure_raises_persistence_error(tmp_path):
    repo = FileRecordRepository(tmp_path / "no-schema.db")

    with pytest.raises(PersistenceError):
        repo.insert_batch(1, [FileRecord(path="a", hash="h", status=FileStatus.NEW)])


def test_latest_hashes_spans_history_and_skips_deleted(db_path):
    runs = ScanRunRepository(db_path)
    repo = FileRecordRepository(db_path)
    first = runs.create()
    first_records = [
        FileRecord(path="a.php", hash="a1", status=FileStatus.NEW),
        FileRecord(path="b.php", hash="b1", status=FileStatus.NEW),
        FileRecord(path="c.php", hash="c1", status=FileStatus.NEW),
    ]
    repo.insert_batch(first.id, first_records)
    runs.complete(first.id, ScanStats(), 0, 0, records=first_records)
    second = runs.create()
    second_records = [
        FileRecord(path="a.php", hash="a1", previous_hash="a1", status=FileStatus.UNCHANGED),
        FileRecord(path="b.php", hash="b2", previous_hash="b1", status=FileStatus.CHANGED),
        FileRecord(path="c.php", hash="", previous_hash="c1", status=FileStatus.DELETED),
    ]
    repo.insert_batch(second.id, second_records[1:])
    runs.complete(second.id, ScanStats(), 0, 0, records=second_records)
    running = runs.create()
    repo.insert_batch(running.id, [FileRecord(path="a.php", hash="a-partial", status=FileStatus.CHANGED)])

    assert repo.latest_hashes() == {"a.php": "a1", "b.php": "b2"}


def test_file_state_ignores_unfinished_and_older_scans(db_path):
    runs = ScanRunRepository(db_path)
    repo = FileRecordRepository(db_path)
    older, newer = runs.create(), runs.create()
    runs.complete(newer.id, ScanStats(), 0, 0, records=[FileRecord(path="a.php", hash="new", status=FileStatus.CHANGED)])
    runs.complete(older.id, ScanStats(), 0, 0, records=[FileRecord(path="a.php", hash="old", status=FileStatus.CHANGED)])
    cancelled = runs.create()
    runs.cancel(cancelled.id)
    runs.complete(cancelled.id, ScanStats(), 0, 0, records=[FileRecord(path="b.php", hash="b", status=FileStatus.NEW)])

    assert repo.latest_hashes() == {"a.php": "new"}


def test_file_state_outlives_file_record_deletion(db_path):
    runs = ScanRunRepository(db_path)
    repo = FileRecordRepository(db_path)
    run = runs.create()
    records = [FileRecord(path="a.php", hash="a1", status=FileStatus.NEW)]
    repo.insert_batch(run.id, records)
    runs.complete(run.id, ScanStats(), 0, 0, records=records)

    repo.delete_for_scans([run.id])
    runs.delete([run.id])

    assert repo.count() == 0
    assert repo.latest_hashes() == {"a.php": "a1"}


def test_init_db_rebuilds_file_state_from_history(db_path):
    runs = ScanRunRepository(db_path)
    repo = FileRecordRepository(db_path)
    first = runs.create()
    repo.insert_batch(first.id, [FileRecord(path="a.php", hash="a1", status=FileStatus.NEW)])
    runs.complete(first.id, ScanStats(), 0, 0)
    second = runs.create()
    repo.insert_batch(
        second.id,
        [
            FileRecord(path="a.php", hash="a2", previous_hash="a1", status=FileStatus.CHANGED),
            FileRecord(path="gone.php", hash="", previous_hash="g", status=FileStatus.DELETED),
        ],
    )
    runs.complete(second.id, ScanStats(), 0, 0)
    assert repo.latest_hashes() == {}

    init_db(db_path)

    assert repo.latest_hashes() == {"a.php": "a2"}


def test_priority_and_diff_helpers(db_path, clock):
    runs = ScanRunRepository(db_path)
    repo = FileRecordRepository(db_path)
    old = runs.create(started_at=clock.now)
    repo.insert_batch(
        old.id,
        [FileRecord(path="x", hash="h", status=FileStatus.CHANGED, priority=PriorityLevel.CRITICAL, diff="d")],
    )
    runs.complete(old.id, ScanStats(), 0, 0)

    assert repo.scan_ids_with_priority(PriorityLevel.CRITICAL) == {old.id}
    clock.advance(days=40)
    assert repo.strip_diffs_older_than(clock.now) == 1
    assert repo.by_scan(old.id)[0].diff is None


def test_scan_statistics(db_path):
    runs = ScanRunRepository(db_path)
    _completed_run(runs)
    failed = runs.create()
    runs.fail(failed.id, "A database error occurred. Please try again later.")

    stats = runs.statistics()
    assert stats["total_scans"] == 2
    assert stats["completed_scans"] == 1
    assert stats["failed_scans"] == 1
    assert runs.latest_completed().status is ScanStatus.COMPLETED
