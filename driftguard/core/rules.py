"""
DriftGuard - Priority rules: validation, matching, and storage.

Match types form a closed set with one evaluator each. Anything that cannot
be evaluated (unknown match type, bad regex, half-configured velocity) is
rejected when the rule is created, never at match time.
"""

import fnmatch
import functools
import logging
import re
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from driftguard.core.errors import RuleValidationError
from driftguard.core.models import (
    MatchType,
    PriorityLevel,
    PriorityRule,
    from_iso,
    to_iso,
    utc_now,
)
from driftguard.core.storage import transaction

logger = logging.getLogger(__name__)

ASSIGNABLE_LEVELS = (PriorityLevel.CRITICAL, PriorityLevel.HIGH, PriorityLevel.NORMAL)


@functools.lru_cache(maxsize=512)
def _compiled(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def _match_exact(pattern: str, path: str) -> bool:
    return path == pattern


def _match_prefix(pattern: str, path: str) -> bool:
    return path.startswith(pattern.rstrip("*"))


def _match_suffix(pattern: str, path: str) -> bool:
    return path.endswith(pattern.lstrip("*"))


def _match_contains(pattern: str, path: str) -> bool:
    return pattern.strip("*") in path


def _match_glob(pattern: str, path: str) -> bool:
    return fnmatch.fnmatchcase(path, pattern)


def _match_regex(pattern: str, path: str) -> bool:
    return _compiled(pattern).fullmatch(path) is not None


_EVALUATORS: dict[MatchType, Callable[[str, str], bool]] = {
    MatchType.EXACT: _match_exact,
    MatchType.PREFIX: _match_prefix,
    MatchType.SUFFIX: _match_suffix,
    MatchType.CONTAINS: _match_contains,
    MatchType.GLOB: _match_glob,
    MatchType.REGEX: _match_regex,
}


def matches(rule: PriorityRule, path: str) -> bool:
    """True if path (relative to the managed root) satisfies the rule's pattern."""
    return _EVALUATORS[rule.match_type](rule.path, path)


def _parse_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return from_iso(to_iso(value))
    try:
        return from_iso(str(value))
    except ValueError as e:
        raise RuleValidationError(f"Invalid {field_name}: {value!r}") from e


def _optional_positive_int(value: Any, field_name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise RuleValidationError(f"{field_name} must be an integer, got {value!r}") from e
    if number <= 0:
        raise RuleValidationError(f"{field_name} must be positive, got {number}")
    return number


def validate_rule(rule: PriorityRule) -> PriorityRule:
    """
    Return a normalised copy of rule, or raise RuleValidationError.

    Accepts string values for the enum fields so rules coming from YAML or
    the CLI go through the same checks.
    """
    pattern = (rule.path or "").strip()
    if not pattern:
        raise RuleValidationError("Rule path pattern must not be empty")

    try:
        match_type = MatchType(rule.match_type)
    except ValueError as e:
        allowed = ", ".join(m.value for m in MatchType)
        raise RuleValidationError(f"Unknown match type {rule.match_type!r} (allowed: {allowed})") from e

    try:
        level = PriorityLevel(rule.priority_level)
    except ValueError as e:
        raise RuleValidationError(f"Unknown priority level {rule.priority_level!r}") from e
    if level not in ASSIGNABLE_LEVELS:
        raise RuleValidationError("Priority level must be one of critical, high, normal")

    if match_type is MatchType.REGEX:
        try:
            _compiled(pattern)
        except re.error as e:
            raise RuleValidationError(f"Invalid regex {pattern!r}: {e}") from e

    threshold = _optional_positive_int(rule.velocity_threshold, "velocity_threshold")
    window = _optional_positive_int(rule.velocity_window_hours, "velocity_window_hours")
    if (threshold is None) != (window is None):
        raise RuleValidationError("velocity_threshold and velocity_window_hours must be set together")

    start = _parse_datetime(rule.maintenance_window_start, "maintenance_window_start")
    end = _parse_datetime(rule.maintenance_window_end, "maintenance_window_end")
    if (start is None) != (end is None):
        raise RuleValidationError("Maintenance window needs both a start and an end")
    if start is not None and end is not None and start >= end:
        raise RuleValidationError("Maintenance window start must be before its end")

    try:
        order = int(rule.execution_order)
    except (TypeError, ValueError) as e:
        raise RuleValidationError(f"execution_order must be an integer, got {rule.execution_order!r}") from e

    return replace(
        rule,
        path=pattern,
        match_type=match_type,
        priority_level=level,
        notify_immediately=bool(rule.notify_immediately),
        ignore_in_bulk_changes=bool(rule.ignore_in_bulk_changes),
        velocity_threshold=threshold,
        velocity_window_hours=window,
        maintenance_window_start=start,
        maintenance_window_end=end,
        execution_order=order,
        is_active=bool(rule.is_active),
    )


def rule_from_dict(data: dict[str, Any]) -> PriorityRule:
    """Build and validate a rule from a plain mapping (YAML, CLI)."""
    if "path" not in data or "priority_level" not in data:
        raise RuleValidationError("A rule needs at least 'path' and 'priority_level'")
    rule = PriorityRule(
        path=str(data["path"]),
        priority_level=data["priority_level"],
        match_type=data.get("match_type", MatchType.EXACT.value),
        notify_immediately=data.get("notify_immediately", False),
        ignore_in_bulk_changes=data.get("ignore_in_bulk_changes", False),
        velocity_threshold=data.get("velocity_threshold"),
        velocity_window_hours=data.get("velocity_window_hours"),
        maintenance_window_start=data.get("maintenance_window_start"),
        maintenance_window_end=data.get("maintenance_window_end"),
        execution_order=data.get("execution_order", 100),
        is_active=data.get("is_active", True),
        reason=data.get("reason"),
    )
    return validate_rule(rule)


def _row_to_rule(row) -> PriorityRule:
    return PriorityRule(
        id=row["id"],
        path=row["path"],
        match_type=MatchType(row["match_type"]),
        priority_level=PriorityLevel(row["priority_level"]),
        notify_immediately=bool(row["notify_immediately"]),
        ignore_in_bulk_changes=bool(row["ignore_in_bulk_changes"]),
        velocity_threshold=row["velocity_threshold"],
        velocity_window_hours=row["velocity_window_hours"],
        maintenance_window_start=from_iso(row["maintenance_window_start"]),
        maintenance_window_end=from_iso(row["maintenance_window_end"]),
        execution_order=row["execution_order"],
        is_active=bool(row["is_active"]),
        reason=row["reason"],
    )


def _rule_columns(rule: PriorityRule) -> dict[str, Any]:
    return {
        "path": rule.path,
        "match_type": rule.match_type.value,
        "priority_level": rule.priority_level.value,
        "notify_immediately": int(rule.notify_immediately),
        "ignore_in_bulk_changes": int(rule.ignore_in_bulk_changes),
        "velocity_threshold": rule.velocity_threshold,
        "velocity_window_hours": rule.velocity_window_hours,
        "maintenance_window_start": to_iso(rule.maintenance_window_start) if rule.maintenance_window_start else None,
        "maintenance_window_end": to_iso(rule.maintenance_window_end) if rule.maintenance_window_end else None,
        "execution_order": rule.execution_order,
        "is_active": int(rule.is_active),
        "reason": rule.reason,
    }


class RuleRepository:
    """Persistence for priority rules. Every write goes through validate_rule()."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = db_path

    def create(self, rule: PriorityRule) -> PriorityRule:
        rule = validate_rule(rule)
        columns = _rule_columns(rule)
        now = to_iso(utc_now())
        columns.update(created_at=now, updated_at=now)
        names = ", ".join(columns)
        marks = ", ".join("?" for _ in columns)
        with transaction(self.db_path) as conn:
            cur = conn.execute(f"INSERT INTO priority_rules ({names}) VALUES ({marks})", tuple(columns.values()))
            rule_id = cur.lastrowid
        logger.info("Created %s rule #%s for %s", rule.priority_level.value, rule_id, rule.path)
        return replace(rule, id=rule_id)

    def update(self, rule_id: int, **changes: Any) -> PriorityRule:
        current = self.find(rule_id)
        if current is None:
            raise RuleValidationError(f"Rule {rule_id} does not exist")
        changes.pop("id", None)
        updated = validate_rule(replace(current, **changes))
        columns = _rule_columns(updated)
        columns["updated_at"] = to_iso(utc_now())
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with transaction(self.db_path) as conn:
            conn.execute(
                f"UPDATE priority_rules SET {assignments} WHERE id = ?",
                (*columns.values(), rule_id),
            )
        return updated

    def delete(self, rule_id: int) -> bool:
        with transaction(self.db_path) as conn:
            return conn.execute("DELETE FROM priority_rules WHERE id = ?", (rule_id,)).rowcount == 1

    def find(self, rule_id: int) -> Optional[PriorityRule]:
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM priority_rules WHERE id = ?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None

    def find_all(
        self,
        is_active: Optional[bool] = None,
        priority_level: Optional[PriorityLevel] = None,
        match_type: Optional[MatchType] = None,
    ) -> list[PriorityRule]:
        clauses, params = ["1=1"], []
        if is_active is not None:
            clauses.append("is_active = ?")
            params.append(int(is_active))
        if priority_level is not None:
            clauses.append("priority_level = ?")
            params.append(PriorityLevel(priority_level).value)
        if match_type is not None:
            clauses.append("match_type = ?")
            params.append(MatchType(match_type).value)
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM priority_rules WHERE {' AND '.join(clauses)} ORDER BY execution_order ASC, id ASC",
                params,
            ).fetchall()
        return [_row_to_rule(r) for r in rows]

    def active_rules(self) -> list[PriorityRule]:
        return self.find_all(is_active=True)

    def set_active(self, rule_id: int, is_active: bool) -> bool:
        return self.bulk_set_active([rule_id], is_active) == 1

    def bulk_set_active(self, rule_ids: Iterable[int], is_active: bool) -> int:
        ids = [int(i) for i in rule_ids]
        if not ids:
            return 0
        marks = ", ".join("?" for _ in ids)
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                f"UPDATE priority_rules SET is_active = ?, updated_at = ? WHERE id IN ({marks})",
                (int(is_active), to_iso(utc_now()), *ids),
            )
            return cur.rowcount

    def bulk_delete(self, rule_ids: Iterable[int]) -> int:
        ids = [int(i) for i in rule_ids]
        if not ids:
            return 0
        marks = ", ".join("?" for _ in ids)
        with transaction(self.db_path) as conn:
            return conn.execute(f"DELETE FROM priority_rules WHERE id IN ({marks})", ids).rowcount

    def count(self, is_active: Optional[bool] = None) -> int:
        sql = "SELECT COUNT(*) FROM priority_rules"
        params: tuple = ()
        if is_active is not None:
            sql += " WHERE is_active = ?"
            params = (int(is_active),)
        with transaction(self.db_path) as conn:
            return int(conn.execute(sql, params).fetchone()[0])
