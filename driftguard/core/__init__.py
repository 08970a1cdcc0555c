"""
DriftGuard - Integrity scanning core.

Provides scanning with a checksum cache, change comparison against the
rolling reference state, priority/velocity classification, persistence,
and tiered retention.
"""

from driftguard.core.checksum_cache import InMemoryChecksumCache, SQLiteChecksumCache
from driftguard.core.comparator import ChangeComparator
from driftguard.core.hashing import HashEngine
from driftguard.core.orchestrator import ScanOrchestrator, ScanOutcome
from driftguard.core.priority import PriorityMatcher, PriorityResult
from driftguard.core.retention import RetentionReport, RetentionScheduler
from driftguard.core.rules import RuleRepository, validate_rule
from driftguard.core.scanner import DirectoryScanner, ScanPolicy
from driftguard.core.velocity import VelocityTracker

__all__ = [
    "ChangeComparator",
    "DirectoryScanner",
    "HashEngine",
    "InMemoryChecksumCache",
    "PriorityMatcher",
    "PriorityResult",
    "RetentionReport",
    "RetentionScheduler",
    "RuleRepository",
    "SQLiteChecksumCache",
    "ScanOrchestrator",
    "ScanOutcome",
    "ScanPolicy",
    "VelocityTracker",
    "validate_rule",
]
