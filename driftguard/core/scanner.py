"""
DriftGuard - Directory scanner.

Walks the managed root and yields a FileFingerprint for every regular file
allowed by the scan policy, consulting the checksum cache before hashing.
"""

import fnmatch
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from driftguard.core.checksum_cache import ChecksumCache
from driftguard.core.hashing import HashEngine
from driftguard.core.models import FileFingerprint

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_PROGRESS_INTERVAL = 100


def normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


def file_extension(name: str) -> str:
    """Lower-cased extension with its dot; a dotfile such as .htaccess is all extension."""
    lowered = name.lower()
    suffix = Path(lowered).suffix
    if not suffix and lowered.startswith(".") and lowered.count(".") == 1:
        return lowered
    return suffix


@dataclass
class ScanPolicy:
    """Which files under the root take part in a scan."""

    extensions: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    max_file_size: int = DEFAULT_MAX_FILE_SIZE

    def __post_init__(self) -> None:
        self.extensions = sorted({normalize_extension(e) for e in self.extensions if e.strip()})
        self.exclude_patterns = [p.strip() for p in self.exclude_patterns if p.strip()]

    def allows_extension(self, name: str) -> bool:
        if not self.extensions:
            return True
        return file_extension(name) in self.extensions

    def is_excluded(self, rel_path: str, name: str) -> bool:
        """
        Glob-style exclusion. Patterns containing '/' match the root-relative
        path with a leading '/', other patterns match the base name only.
        """
        anchored = "/" + rel_path
        for pattern in self.exclude_patterns:
            if "/" in pattern:
                if fnmatch.fnmatchcase(anchored, pattern):
                    return True
            elif fnmatch.fnmatchcase(name, pattern):
                return True
        return False

    def is_excluded_dir(self, rel_dir: str, name: str) -> bool:
        return self.is_excluded(rel_dir + "/", name)


@dataclass
class WalkStats:
    files_seen: int = 0
    files_emitted: int = 0
    skipped_filtered: int = 0
    skipped_too_large: int = 0
    skipped_unreadable: int = 0
    cache_hits: int = 0
    cache_misses: int = 0


class DirectoryScanner:
    """
    Single-threaded, synchronous walker. scan() returns a fresh generator on
    every call, so a walk can be restarted by calling it again.
    """

    def __init__(
        self,
        policy: Optional[ScanPolicy] = None,
        hash_engine: Optional[HashEngine] = None,
        cache: Optional[ChecksumCache] = None,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
    ) -> None:
        self.policy = policy or ScanPolicy()
        self.hash_engine = hash_engine or HashEngine()
        self.cache = cache
        self.progress_interval = max(1, progress_interval)
        self.last_stats = WalkStats()

    def _iter_candidates(self, root: Path) -> Iterator[tuple[Path, str, os.stat_result]]:
        stack = [root]
        while stack:
            directory = stack.pop()
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as e:
                logger.warning("Skipping unreadable directory %s: %s", directory, e)
                continue
            subdirs = []
            for entry in entries:
                entry_path = Path(entry.path)
                rel = entry_path.relative_to(root).as_posix()
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if not self.policy.is_excluded_dir(rel, entry.name):
                            subdirs.append(entry_path)
                        continue
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    st = entry.stat(follow_symlinks=False)
                except OSError as e:
                    self.last_stats.skipped_unreadable += 1
                    logger.warning("Skipping %s: %s", entry_path, e)
                    continue
                yield entry_path, rel, st
            stack.extend(reversed(subdirs))

    def _cached_hash(self, key: str, size: int, mtime: float) -> Optional[str]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(key, size, mtime)
        except Exception as e:  # noqa: BLE001
            logger.warning("Checksum cache unavailable, hashing %s: %s", key, e)
            return None

    def _remember_hash(self, key: str, size: int, mtime: float, file_hash: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.put(key, size, mtime, file_hash)
        except Exception as e:  # noqa: BLE001
            logger.warning("Checksum cache unavailable, not caching %s: %s", key, e)

    def scan(
        self,
        root: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Iterator[FileFingerprint]:
        """
        Lazily yield fingerprints for every eligible file under root.

        A file is eligible when its extension is allowed, no exclusion
        pattern matches it, and its size is at or below the ceiling.
        Unreadable files are logged and skipped.
        """
        root = Path(root).resolve()
        self.last_stats = WalkStats()
        if not root.is_dir():
            logger.warning("Not a directory: %s", root)
            return

        stats = self.last_stats
        for path, rel, st in self._iter_candidates(root):
            stats.files_seen += 1
            if not self.policy.allows_extension(path.name) or self.policy.is_excluded(rel, path.name):
                stats.skipped_filtered += 1
                continue
            if st.st_size > self.policy.max_file_size:
                stats.skipped_too_large += 1
                continue

            key = str(path)
            file_hash = self._cached_hash(key, st.st_size, st.st_mtime)
            if file_hash is not None:
                stats.cache_hits += 1
            else:
                stats.cache_misses += 1
                file_hash = self.hash_engine.compute_file_hash(path)
                if file_hash is None:
                    stats.skipped_unreadable += 1
                    continue
                self._remember_hash(key, st.st_size, st.st_mtime, file_hash)

            stats.files_emitted += 1
            if progress_callback and stats.files_emitted % self.progress_interval == 0:
                progress_callback(f"Scanning files: {stats.files_emitted} processed", rel)

            yield FileFingerprint(
                path=rel,
                size=st.st_size,
                hash=file_hash,
                last_modified=st.st_mtime,
                mime_type=mimetypes.guess_type(path.name)[0],
                extension=file_extension(path.name),
            )

        if progress_callback:
            progress_callback(f"Scanning files: {stats.files_emitted} processed", "Scan complete")
        logger.debug(
            "Walk of %s done: %d emitted, %d cache hits, %d skipped unreadable",
            root,
            stats.files_emitted,
            stats.cache_hits,
            stats.skipped_unreadable,
        )
