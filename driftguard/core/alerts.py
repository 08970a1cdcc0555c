"""
DriftGuard - Alert hand-off and colored console output.

Every change flagged should_notify is appended as one JSON line to the
alert log, where an external dispatcher picks it up. Uses colorama for
cross-platform colored console alerts.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import colorama
from colorama import Fore

from driftguard.core.models import FileRecord, PriorityLevel, to_iso, utc_now
from driftguard.core.priority import PriorityResult

logger = logging.getLogger(__name__)

# Lazy init of colorama (once per process)
_colorama_init_done = False


def _ensure_colorama() -> None:
    global _colorama_init_done
    if not _colorama_init_done:
        colorama.init(autoreset=True)
        _colorama_init_done = True


def colored_alert(message: str, level: str) -> None:
    """
    Print an alert message in color to stderr.

    level: "critical" (red), "high" (yellow), anything else (green).
    """
    _ensure_colorama()
    level = level.lower()
    if level == PriorityLevel.CRITICAL.value:
        prefix = Fore.RED
    elif level == PriorityLevel.HIGH.value:
        prefix = Fore.YELLOW
    else:
        prefix = Fore.GREEN
    print(f"{prefix}{message}", file=sys.stderr)


class AlertManager:
    """
    Writes structured JSON alerts to a log file and optionally
    prints colored alerts to console.
    """

    def __init__(self, log_path: Path, console_alerts: bool = True) -> None:
        self.log_path = Path(log_path)
        self.console_alerts = console_alerts
        self.emitted = 0
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _format_alert(self, record: FileRecord, result: PriorityResult, scan_id: Optional[int]) -> dict:
        return {
            "timestamp": to_iso(utc_now()),
            "scan_id": scan_id,
            "path": record.path,
            "status": record.status.value,
            "hash": record.hash,
            "previous_hash": record.previous_hash,
            "priority": result.priority.value,
            "rule_ids": [rule.id for rule in result.rules],
            "reasons": [rule.reason for rule in result.rules if rule.reason],
            "velocity_exceeded": result.velocity_exceeded,
        }

    def emit(self, record: FileRecord, result: PriorityResult, scan_id: Optional[int] = None) -> bool:
        """Hand off one notifiable change. Returns False when nothing was emitted."""
        if not result.should_notify:
            return False
        line = json.dumps(self._format_alert(record, result, scan_id)) + "\n"
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error("Failed to write alert to %s: %s", self.log_path, e)
            return False
        self.emitted += 1
        if self.console_alerts:
            level = PriorityLevel.CRITICAL.value if result.velocity_exceeded else result.priority.value
            suffix = " (velocity exceeded)" if result.velocity_exceeded else ""
            colored_alert(f"[{result.priority.value.upper()}] {record.status.value}: {record.path}{suffix}", level)
        return True

    def emit_batch(self, items: list[tuple[FileRecord, PriorityResult]], scan_id: Optional[int] = None) -> int:
        """Emit multiple alerts in order; returns how many were written."""
        return sum(1 for record, result in items if self.emit(record, result, scan_id))
