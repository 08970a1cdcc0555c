"""
DriftGuard - Shared data models (fingerprints, records, runs, rules).
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(value: datetime) -> str:
    """Normalise a datetime to the UTC ISO string stored in the database."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FileStatus(str, Enum):
    """Per-file comparison outcome."""

    NEW = "new"
    CHANGED = "changed"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


class PriorityLevel(str, Enum):
    """Operator-assigned importance. Lower rank wins."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    NONE = "none"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    PriorityLevel.CRITICAL: 0,
    PriorityLevel.HIGH: 1,
    PriorityLevel.NORMAL: 2,
    PriorityLevel.NONE: 3,
}


class MatchType(str, Enum):
    """How a rule's path pattern is compared against a file path."""

    EXACT = "exact"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    CONTAINS = "contains"
    GLOB = "glob"
    REGEX = "regex"


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.RUNNING


class ScanType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class ChangeType(str, Enum):
    """Change kinds written to the velocity log."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"

    @classmethod
    def from_status(cls, status: FileStatus) -> "ChangeType":
        if status is FileStatus.NEW:
            return cls.ADDED
        if status is FileStatus.DELETED:
            return cls.DELETED
        return cls.MODIFIED


@dataclass(frozen=True)
class FileFingerprint:
    """One file's identity for a single scan."""

    path: str
    size: int
    hash: str
    last_modified: float
    mime_type: Optional[str] = None
    extension: str = ""


@dataclass
class FileRecord:
    """Comparison result for one path, persisted under a ScanRun."""

    path: str
    hash: str
    status: FileStatus
    size: int = 0
    last_modified: Optional[float] = None
    previous_hash: Optional[str] = None
    priority: PriorityLevel = PriorityLevel.NONE
    diff: Optional[str] = None
    scan_id: Optional[int] = None
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["priority"] = self.priority.value
        return data


@dataclass
class ScanRun:
    id: int
    started_at: datetime
    status: ScanStatus
    scan_type: ScanType
    finished_at: Optional[datetime] = None
    total_files: int = 0
    changed_files: int = 0
    new_files: int = 0
    deleted_files: int = 0
    duration_seconds: float = 0.0
    peak_memory: int = 0
    is_baseline: bool = False
    schedule_id: Optional[int] = None
    notes: str = ""


@dataclass
class ChecksumCacheEntry:
    path: str
    size: int
    mtime: float
    hash: str
    created_at: datetime
    expires_at: datetime


@dataclass
class PriorityRule:
    """Operator-defined rule; validated before it can be stored or matched."""

    path: str
    priority_level: PriorityLevel
    match_type: MatchType = MatchType.EXACT
    notify_immediately: bool = False
    ignore_in_bulk_changes: bool = False
    velocity_threshold: Optional[int] = None
    velocity_window_hours: Optional[int] = None
    maintenance_window_start: Optional[datetime] = None
    maintenance_window_end: Optional[datetime] = None
    execution_order: int = 100
    is_active: bool = True
    reason: Optional[str] = None
    id: Optional[int] = None

    @property
    def tracks_velocity(self) -> bool:
        return bool(self.velocity_threshold) and bool(self.velocity_window_hours)

    @property
    def has_maintenance_window(self) -> bool:
        return self.maintenance_window_start is not None and self.maintenance_window_end is not None


@dataclass
class VelocityLogEntry:
    rule_id: int
    path: str
    scan_id: int
    change_type: ChangeType
    detected_at: datetime
    id: Optional[int] = None


@dataclass
class RetentionPolicy:
    """Age thresholds for tiering scan history and logs."""

    tier2_days: int = 30
    tier3_days: int = 90
    keep_baseline: bool = True
    log_tier2_days: int = 30
    log_tier3_days: int = 90


@dataclass
class PriorityStats:
    critical_count: int = 0
    high_count: int = 0
    normal_count: int = 0
    no_priority_count: int = 0
    maintenance_count: int = 0
    immediate_notify_count: int = 0
    velocity_exceeded_count: int = 0
    bulk_ignorable_count: int = 0
    total_files: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ScanStats:
    """Aggregate counts for a compared file set."""

    total_files: int = 0
    new_files: int = 0
    changed_files: int = 0
    deleted_files: int = 0
    unchanged_files: int = 0
    total_size: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: list[FileRecord]) -> "ScanStats":
        stats = cls(total_files=len(records))
        for record in records:
            stats.total_size += record.size
            if record.status is FileStatus.NEW:
                stats.new_files += 1
            elif record.status is FileStatus.CHANGED:
                stats.changed_files += 1
            elif record.status is FileStatus.DELETED:
                stats.deleted_files += 1
            else:
                stats.unchanged_files += 1
        return stats

    @property
    def has_changes(self) -> bool:
        return bool(self.new_files or self.changed_files or self.deleted_files)
