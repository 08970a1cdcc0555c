"""
DriftGuard - Diff payloads for changed files.

A changed text file gets a bounded unified diff against its last stored
snapshot; when no snapshot exists a JSON structural summary is attached
instead. Binary files get no payload.
"""

import difflib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from driftguard.core.content_store import ContentStore
from driftguard.core.models import FileFingerprint, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TEXT_EXTENSIONS = (
    ".php", ".js", ".css", ".html", ".htm", ".txt", ".json", ".xml",
    ".ini", ".htaccess", ".sql", ".md", ".py", ".yaml", ".yml", ".conf", ".sh",
)
DEFAULT_MAX_DIFF_BYTES = 64 * 1024
DEFAULT_MAX_CONTENT_BYTES = 1024 * 1024
TOO_LARGE_MESSAGE = "File too large for diff generation"
TRUNCATION_MARKER = "\n... diff truncated ..."


class DiffBuilder:
    def __init__(
        self,
        root: Path,
        content_store: Optional[ContentStore] = None,
        text_extensions: tuple[str, ...] = DEFAULT_TEXT_EXTENSIONS,
        max_diff_bytes: int = DEFAULT_MAX_DIFF_BYTES,
        max_content_bytes: int = DEFAULT_MAX_CONTENT_BYTES,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.root = Path(root)
        self.content_store = content_store
        self.text_extensions = tuple(e.lower() for e in text_extensions)
        self.max_diff_bytes = max_diff_bytes
        self.max_content_bytes = max_content_bytes
        self.clock = clock or utc_now

    def is_text(self, path: str) -> bool:
        name = Path(path).name.lower()
        return Path(name).suffix in self.text_extensions or name in self.text_extensions

    def _read_current(self, fingerprint: FileFingerprint) -> Optional[bytes]:
        try:
            return (self.root / fingerprint.path).read_bytes()
        except OSError as e:
            logger.warning("Cannot read %s for diff: %s", fingerprint.path, e)
            return None

    def snapshot(self, fingerprint: FileFingerprint) -> bool:
        """Remember a text file's current content for the next diff."""
        if self.content_store is None or not self.is_text(fingerprint.path):
            return False
        if fingerprint.size > self.max_content_bytes:
            return False
        if self.content_store.exists(fingerprint.hash):
            return True
        content = self._read_current(fingerprint)
        if content is None:
            return False
        return self.content_store.store(fingerprint.hash, content)

    def build(self, fingerprint: FileFingerprint, previous_hash: str) -> Optional[str]:
        if not self.is_text(fingerprint.path):
            return None
        if fingerprint.size > self.max_content_bytes:
            return TOO_LARGE_MESSAGE
        current = self._read_current(fingerprint)
        if current is None:
            return None
        previous = self.content_store.get(previous_hash) if self.content_store else None
        if previous is None:
            return self.summary(fingerprint, previous_hash, current)
        return self.unified(previous, current, fingerprint.path) or self.summary(fingerprint, previous_hash, current)

    def unified(self, previous: bytes, current: bytes, path: str) -> str:
        old_lines = previous.decode("utf-8", errors="replace").splitlines(keepends=True)
        new_lines = current.decode("utf-8", errors="replace").splitlines(keepends=True)
        diff = "".join(
            difflib.unified_diff(
                old_lines,
                new_lines,
                fromfile=f"{path} (previous)",
                tofile=f"{path} (current)",
            )
        )
        return self._bound(diff)

    def summary(self, fingerprint: FileFingerprint, previous_hash: str, current: bytes) -> str:
        return json.dumps(
            {
                "type": "summary",
                "timestamp": to_iso(self.clock()),
                "checksum_changed": {"from": previous_hash, "to": fingerprint.hash},
                "file_size": fingerprint.size,
                "lines_count": current.count(b"\n") + 1,
                "message": "Previous version not available. Full diff will be available on next change.",
            }
        )

    def _bound(self, diff: str) -> str:
        encoded = diff.encode("utf-8")
        if len(encoded) <= self.max_diff_bytes:
            return diff
        keep = max(0, self.max_diff_bytes - len(TRUNCATION_MARKER))
        return encoded[:keep].decode("utf-8", errors="ignore") + TRUNCATION_MARKER
