import hashlib
import json

from conftest import write_file

from driftguard.core.content_store import ContentStore
from driftguard.core.diffing import TOO_LARGE_MESSAGE, TRUNCATION_MARKER, DiffBuilder
from driftguard.core.models import FileFingerprint, to_iso


def _fingerprint(root, rel):
    data = (root / rel).read_bytes()
    return FileFingerprint(path=rel, size=len(data), hash=hashlib.sha256(data).hexdigest(), last_modified=0.0)


def test_content_store_round_trip_and_verification(db_path):
    store = ContentStore(db_path)
    content = b"line one\nline two\n"
    checksum = hashlib.sha256(content).hexdigest()

    assert store.store(checksum, content) is True
    assert store.get(checksum) == content
    assert store.get("0" * 64) is None


def test_content_store_rejects_mismatched_checksum(db_path):
    store = ContentStore(db_path)
    store.store("f" * 64, b"not what the key says")

    assert store.exists("f" * 64) is True
    assert store.get("f" * 64) is None


def test_content_store_trim_keeps_newest(db_path):
    store = ContentStore(db_path, retention_limit=2)
    for i in range(4):
        data = f"v{i}".encode()
        store.store(hashlib.sha256(data).hexdigest(), data)

    assert store.trim() == 2
    assert store.statistics()["total_entries"] == 2
    assert store.exists(hashlib.sha256(b"v3").hexdigest())
    assert not store.exists(hashlib.sha256(b"v0").hexdigest())


def test_unified_diff_against_previous_snapshot(db_path, managed_root):
    builder = DiffBuilder(managed_root, ContentStore(db_path))
    write_file(managed_root, "page.php", "<?php\necho 'a';\n")
    before = _fingerprint(managed_root, "page.php")
    assert builder.snapshot(before) is True

    write_file(managed_root, "page.php", "<?php\necho 'b';\n")
    diff = builder.build(_fingerprint(managed_root, "page.php"), before.hash)

    assert "--- page.php (previous)" in diff
    assert "+++ page.php (current)" in diff
    assert "-echo 'a';" in diff
    assert "+echo 'b';" in diff


def test_summary_when_previous_content_missing(db_path, managed_root, clock):
    builder = DiffBuilder(managed_root, ContentStore(db_path), clock=clock)
    write_file(managed_root, "page.php", "a\nb\n")

    payload = json.loads(builder.build(_fingerprint(managed_root, "page.php"), "e" * 64))

    assert payload["type"] == "summary"
    assert payload["checksum_changed"]["from"] == "e" * 64
    assert payload["timestamp"] == to_iso(clock.now)


def test_binary_files_get_no_diff(db_path, managed_root):
    builder = DiffBuilder(managed_root, ContentStore(db_path))
    (managed_root / "logo.png").write_bytes(b"\x89PNG\r\n")

    assert builder.build(_fingerprint(managed_root, "logo.png"), "e" * 64) is None
    assert builder.snapshot(_fingerprint(managed_root, "logo.png")) is False


def test_large_file_marked_too_large(db_path, managed_root):
    builder = DiffBuilder(managed_root, ContentStore(db_path), max_content_bytes=10)
    write_file(managed_root, "big.txt", "x" * 11)

    assert builder.build(_fingerprint(managed_root, "big.txt"), "e" * 64) == TOO_LARGE_MESSAGE


def test_diff_is_bounded(db_path, managed_root):
    builder = DiffBuilder(managed_root, ContentStore(db_path), max_diff_bytes=200)
    write_file(managed_root, "list.txt", "".join(f"old {i}\n" for i in range(100)))
    before = _fingerprint(managed_root, "list.txt")
    builder.snapshot(before)
    write_file(managed_root, "list.txt", "".join(f"new {i}\n" for i in range(100)))

    diff = builder.build(_fingerprint(managed_root, "list.txt"), before.hash)

    assert len(diff.encode("utf-8")) <= 200
    assert diff.endswith(TRUNCATION_MARKER)


def test_unreadable_snapshot_store_falls_back_to_summary(tmp_path, managed_root):
    store = ContentStore(tmp_path / "no-schema.db")
    builder = DiffBuilder(managed_root, store)
    write_file(managed_root, "page.php", "<?php\n")
    fingerprint = _fingerprint(managed_root, "page.php")

    assert store.get(fingerprint.hash) is None
    assert store.exists(fingerprint.hash) is False
    assert builder.snapshot(fingerprint) is False
    payload = json.loads(builder.build(fingerprint, "e" * 64))
    assert payload["type"] == "summary"
