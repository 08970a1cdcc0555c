"""
DriftGuard - Change comparison.

Diffs the current snapshot against the reference set (latest known hash per
path across all history) and produces one FileRecord per path.
"""

import logging
from typing import Callable, Iterable, Optional

from driftguard.core.models import FileFingerprint, FileRecord, FileStatus

logger = logging.getLogger(__name__)

DiffProvider = Callable[[FileFingerprint, str], Optional[str]]


class ChangeComparator:
    """
    Classifies every path as new, changed, unchanged or deleted.

    The optional diff_provider is called for changed files only, with the
    current fingerprint and the reference hash, and returns the diff payload.
    """

    def __init__(self, diff_provider: Optional[DiffProvider] = None) -> None:
        self.diff_provider = diff_provider

    def _diff_for(self, fingerprint: FileFingerprint, previous_hash: str) -> Optional[str]:
        if self.diff_provider is None:
            return None
        try:
            return self.diff_provider(fingerprint, previous_hash)
        except OSError as e:
            logger.warning("Diff generation failed for %s: %s", fingerprint.path, e)
            return None

    def compare(
        self,
        current: Iterable[FileFingerprint],
        reference: dict[str, str],
    ) -> list[FileRecord]:
        """
        - In current, not in reference -> NEW
        - In both, hash differs -> CHANGED (with diff payload)
        - In both, hash equal -> UNCHANGED
        - In reference, not in current -> DELETED

        A path repeated in current keeps its last occurrence.
        """
        snapshot: dict[str, FileFingerprint] = {}
        for fingerprint in current:
            snapshot[fingerprint.path] = fingerprint

        records: list[FileRecord] = []
        for path, fp in snapshot.items():
            previous_hash = reference.get(path)
            if previous_hash is None:
                status = FileStatus.NEW
                diff = None
            elif previous_hash != fp.hash:
                status = FileStatus.CHANGED
                diff = self._diff_for(fp, previous_hash)
            else:
                status = FileStatus.UNCHANGED
                diff = None
            records.append(
                FileRecord(
                    path=path,
                    hash=fp.hash,
                    previous_hash=previous_hash,
                    size=fp.size,
                    last_modified=fp.last_modified,
                    status=status,
                    diff=diff,
                )
            )

        for path, previous_hash in reference.items():
            if path in snapshot:
                continue
            records.append(
                FileRecord(
                    path=path,
                    hash="",
                    previous_hash=previous_hash,
                    status=FileStatus.DELETED,
                )
            )
        return records
