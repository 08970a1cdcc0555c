"""
DriftGuard - Exception hierarchy and user-facing error sanitisation.

Raw exception text stays in the internal log sink; anything stored on a
ScanRun or shown to an operator goes through sanitize_error_message().
"""


class DriftGuardError(Exception):
    """Base class for engine errors."""


class ConfigError(DriftGuardError, ValueError):
    """Invalid configuration value (rejected before it reaches the engine)."""


class RuleValidationError(ConfigError):
    """A priority rule failed validation at creation or update time."""


class PersistenceError(DriftGuardError):
    """A write to the relational store failed; fatal to the current scan."""


class ScanNotFoundError(DriftGuardError, LookupError):
    pass


GENERIC_PERMISSION = "Permission denied. Please check file permissions."
GENERIC_NOT_FOUND = "The requested resource could not be found."
GENERIC_DATABASE = "A database error occurred. Please try again later."
GENERIC_ERROR = "An error occurred. Please try again or contact support if the problem persists."


def sanitize_error_message(message: str) -> str:
    """Map a raw error message to one of a fixed set of generic messages."""
    lowered = (message or "").lower()
    if "permission" in lowered:
        return GENERIC_PERMISSION
    if "not found" in lowered or "does not exist" in lowered or "no such file" in lowered:
        return GENERIC_NOT_FOUND
    if "database" in lowered or "sqlite" in lowered or "disk i/o" in lowered:
        return GENERIC_DATABASE
    return GENERIC_ERROR
