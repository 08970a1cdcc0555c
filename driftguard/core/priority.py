"""
DriftGuard - Priority classification for changed files.

Collects every active rule matching a path, resolves the winning priority
(critical > high > normal), checks maintenance windows, logs velocity for
rules that track it, and decides whether the change warrants an immediate
notification.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from driftguard.core.models import ChangeType, PriorityLevel, PriorityRule, PriorityStats, utc_now
from driftguard.core.rules import RuleRepository, matches
from driftguard.core.velocity import VelocityTracker

logger = logging.getLogger(__name__)


@dataclass
class PriorityResult:
    """Classification of one changed path; the hand-off to notification."""

    path: str
    priority: PriorityLevel = PriorityLevel.NONE
    rules: list[PriorityRule] = field(default_factory=list)
    in_maintenance: bool = False
    should_notify: bool = False
    velocity_exceeded: bool = False

    @property
    def bulk_ignorable(self) -> bool:
        return any(rule.ignore_in_bulk_changes for rule in self.rules)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "priority": self.priority.value,
            "rule_ids": [rule.id for rule in self.rules],
            "in_maintenance": self.in_maintenance,
            "should_notify": self.should_notify,
            "velocity_exceeded": self.velocity_exceeded,
            "bulk_ignorable": self.bulk_ignorable,
        }


def highest_priority(rules: Iterable[PriorityRule]) -> PriorityLevel:
    best = PriorityLevel.NONE
    for rule in rules:
        if rule.priority_level.rank < best.rank:
            best = rule.priority_level
    return best


class PriorityMatcher:
    """
    Matches paths against the active rule set.

    Active rules are read once and reused until load_rules() is called again;
    the orchestrator reloads them at the start of every scan. A static list
    may be passed instead of a repository (tests, one-off classification).
    """

    def __init__(
        self,
        rule_repository: Optional[RuleRepository] = None,
        velocity: Optional[VelocityTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rules: Optional[list[PriorityRule]] = None,
    ) -> None:
        self.rule_repository = rule_repository
        self.velocity = velocity
        self.clock = clock or utc_now
        self._rules: Optional[list[PriorityRule]] = None
        if rules is not None:
            self._rules = self._ordered(r for r in rules if r.is_active)

    @staticmethod
    def _ordered(rules: Iterable[PriorityRule]) -> list[PriorityRule]:
        return sorted(rules, key=lambda r: (r.execution_order, r.id if r.id is not None else 0))

    def load_rules(self) -> list[PriorityRule]:
        if self.rule_repository is not None:
            self._rules = self._ordered(self.rule_repository.active_rules())
            logger.debug("Loaded %d active priority rules", len(self._rules))
        elif self._rules is None:
            self._rules = []
        return self._rules

    @property
    def rules(self) -> list[PriorityRule]:
        if self._rules is None:
            return self.load_rules()
        return self._rules

    def match_all(self, path: str) -> list[PriorityRule]:
        """All matching active rules, by execution order ascending."""
        return [rule for rule in self.rules if matches(rule, path)]

    def priority_for(self, path: str) -> PriorityLevel:
        return highest_priority(self.match_all(path))

    def _window_open(self, rule: PriorityRule, now: datetime) -> bool:
        if not rule.has_maintenance_window:
            return False
        return rule.maintenance_window_start <= now <= rule.maintenance_window_end

    def in_maintenance_window(self, path: str, matched: Optional[list[PriorityRule]] = None) -> bool:
        now = self.clock()
        rules = self.match_all(path) if matched is None else matched
        return any(self._window_open(rule, now) for rule in rules)

    def process(
        self,
        path: str,
        scan_id: int,
        change_type: ChangeType = ChangeType.MODIFIED,
    ) -> PriorityResult:
        """
        Classify one changed path.

        Velocity is logged for every matching rule that tracks it, whether or
        not a maintenance window is open; only the notification is suppressed.
        """
        matched = self.match_all(path)
        in_maintenance = self.in_maintenance_window(path, matched)
        should_notify = False
        velocity_exceeded = False

        for rule in matched:
            if rule.notify_immediately and not in_maintenance:
                should_notify = True
            if rule.tracks_velocity and self.velocity is not None and rule.id is not None:
                self.velocity.log(rule.id, path, scan_id, change_type)
                if self.velocity.rule_exceeded(rule, path):
                    velocity_exceeded = True
                    if not in_maintenance:
                        should_notify = True

        return PriorityResult(
            path=path,
            priority=highest_priority(matched),
            rules=matched,
            in_maintenance=in_maintenance,
            should_notify=should_notify,
            velocity_exceeded=velocity_exceeded,
        )

    def batch_process(
        self,
        paths: Iterable[str],
        scan_id: int,
        change_type: ChangeType = ChangeType.MODIFIED,
    ) -> dict[str, PriorityResult]:
        return {path: self.process(path, scan_id, change_type) for path in paths}

    @staticmethod
    def calculate_stats(results: Iterable[PriorityResult]) -> PriorityStats:
        stats = PriorityStats()
        for result in results:
            stats.total_files += 1
            if result.priority is PriorityLevel.CRITICAL:
                stats.critical_count += 1
            elif result.priority is PriorityLevel.HIGH:
                stats.high_count += 1
            elif result.priority is PriorityLevel.NORMAL:
                stats.normal_count += 1
            else:
                stats.no_priority_count += 1
            if result.in_maintenance:
                stats.maintenance_count += 1
            if result.should_notify:
                stats.immediate_notify_count += 1
            if result.velocity_exceeded:
                stats.velocity_exceeded_count += 1
            if result.bulk_ignorable:
                stats.bulk_ignorable_count += 1
        return stats
