import hashlib
import os

from conftest import write_file

from driftguard.core.checksum_cache import InMemoryChecksumCache
from driftguard.core.hashing import HashEngine
from driftguard.core.scanner import DirectoryScanner, ScanPolicy


def _paths(fingerprints):
    return sorted(fp.path for fp in fingerprints)


def test_scan_yields_relative_paths_and_sha256(managed_root):
    write_file(managed_root, "index.php", "<?php echo 1;")
    write_file(managed_root, "wp-includes/load.php", "<?php load();")

    fingerprints = list(DirectoryScanner().scan(managed_root))

    assert _paths(fingerprints) == ["index.php", "wp-includes/load.php"]
    by_path = {fp.path: fp for fp in fingerprints}
    assert by_path["index.php"].hash == hashlib.sha256(b"<?php echo 1;").hexdigest()
    assert by_path["index.php"].extension == ".php"
    assert by_path["index.php"].size == len("<?php echo 1;")


def test_extension_allow_list(managed_root):
    write_file(managed_root, "a.php", "a")
    write_file(managed_root, "b.JS", "b")
    write_file(managed_root, "c.png", "c")

    scanner = DirectoryScanner(ScanPolicy(extensions=["php", ".js"]))

    assert _paths(scanner.scan(managed_root)) == ["a.php", "b.JS"]
    assert scanner.last_stats.skipped_filtered == 1


def test_dotfiles_match_their_whole_name(managed_root):
    write_file(managed_root, ".htaccess", "Deny from all")
    write_file(managed_root, "index.php", "i")
    write_file(managed_root, ".env", "SECRET=1")
    write_file(managed_root, ".config.bak", "x")

    fingerprints = list(DirectoryScanner(ScanPolicy(extensions=[".php", ".htaccess"])).scan(managed_root))

    assert _paths(fingerprints) == [".htaccess", "index.php"]
    assert {fp.path: fp.extension for fp in fingerprints}[".htaccess"] == ".htaccess"


def test_exclusion_patterns_prune_directories_and_names(managed_root):
    write_file(managed_root, "keep.php", "k")
    write_file(managed_root, "wp-content/cache/page.php", "c")
    write_file(managed_root, "node_modules/lib/x.js", "x")
    write_file(managed_root, "debug.log", "l")

    policy = ScanPolicy(exclude_patterns=["*/cache/*", "*/node_modules/*", "*.log"])

    assert _paths(DirectoryScanner(policy).scan(managed_root)) == ["keep.php"]


def test_max_file_size_is_inclusive(managed_root):
    write_file(managed_root, "exact.txt", "x" * 10)
    write_file(managed_root, "big.txt", "x" * 11)

    scanner = DirectoryScanner(ScanPolicy(max_file_size=10))

    assert _paths(scanner.scan(managed_root)) == ["exact.txt"]
    assert scanner.last_stats.skipped_too_large == 1


def test_symlinks_are_not_followed(managed_root, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    write_file(outside, "secret.php", "s")
    write_file(managed_root, "real.php", "r")
    os.symlink(outside, managed_root / "linked-dir")
    os.symlink(outside / "secret.php", managed_root / "linked.php")

    assert _paths(DirectoryScanner().scan(managed_root)) == ["real.php"]


def test_progress_callback_has_bounded_cadence(managed_root):
    for i in range(25):
        write_file(managed_root, f"f{i:02d}.txt", str(i))
    calls = []

    list(DirectoryScanner(progress_interval=10).scan(managed_root, lambda msg, item: calls.append((msg, item))))

    assert len(calls) == 3
    assert calls[-1] == ("Scanning files: 25 processed", "Scan complete")


def test_cache_hit_skips_hashing_and_change_forces_recompute(managed_root):
    path = write_file(managed_root, "a.php", "one")
    cache = InMemoryChecksumCache()
    scanner = DirectoryScanner(cache=cache)

    list(scanner.scan(managed_root))
    assert scanner.last_stats.cache_misses == 1

    list(scanner.scan(managed_root))
    assert scanner.last_stats.cache_hits == 1

    path.write_text("three", encoding="utf-8")
    fingerprints = list(scanner.scan(managed_root))
    assert scanner.last_stats.cache_misses == 1
    assert fingerprints[0].hash == hashlib.sha256(b"three").hexdigest()


def test_scan_is_restartable(managed_root):
    write_file(managed_root, "a.php", "a")
    write_file(managed_root, "sub/b.php", "b")
    scanner = DirectoryScanner()

    assert _paths(scanner.scan(managed_root)) == _paths(scanner.scan(managed_root))


class _FlakyHashEngine(HashEngine):
    def compute_file_hash(self, file_path):
        if file_path.name == "locked.php":
            return None
        return super().compute_file_hash(file_path)


def test_unreadable_file_is_skipped_not_fatal(managed_root):
    write_file(managed_root, "locked.php", "l")
    write_file(managed_root, "open.php", "o")

    scanner = DirectoryScanner(hash_engine=_FlakyHashEngine())

    assert _paths(scanner.scan(managed_root)) == ["open.php"]
    assert scanner.last_stats.skipped_unreadable == 1


class _BrokenCache:
    def get(self, path, size, mtime):
        raise RuntimeError("cache offline")

    def put(self, path, size, mtime, file_hash, ttl_hours=None):
        raise RuntimeError("cache offline")


def test_unavailable_cache_degrades_to_hashing(managed_root):
    write_file(managed_root, "a.php", "a")

    fingerprints = list(DirectoryScanner(cache=_BrokenCache()).scan(managed_root))

    assert fingerprints[0].hash == hashlib.sha256(b"a").hexdigest()
