import logging

from driftguard.core.errors import GENERIC_DATABASE, GENERIC_ERROR, GENERIC_NOT_FOUND, GENERIC_PERMISSION, sanitize_error_message
from driftguard.core.log_store import SUCCESS, DatabaseLogHandler, LogRepository


def _logger_with_handler(db_path, name):
    log = logging.getLogger(name)
    log.setLevel(logging.DEBUG)
    handler = DatabaseLogHandler(db_path, level=logging.DEBUG)
    log.addHandler(handler)
    return log, handler


def test_handler_persists_level_context_and_data(db_path):
    log, handler = _logger_with_handler(db_path, "driftguard.core.scanner")
    try:
        log.log(SUCCESS, "Scan #%d completed", 4, extra={"data": {"files": 10}})
        log.warning("Cache miss storm", extra={"context": "cache"})
    finally:
        log.removeHandler(handler)

    entries = {e["message"]: e for e in LogRepository(db_path).get_all()}
    assert entries["Scan #4 completed"]["log_level"] == "success"
    assert entries["Scan #4 completed"]["context"] == "scanner"
    assert entries["Scan #4 completed"]["data"] == {"files": 10}
    assert entries["Cache miss storm"]["log_level"] == "warning"
    assert entries["Cache miss storm"]["context"] == "cache"


def test_exception_detail_kept_internally(db_path):
    log, handler = _logger_with_handler(db_path, "driftguard.core.orchestrator")
    try:
        try:
            raise OSError("disk I/O error on /var/lib/driftguard.db")
        except OSError:
            log.exception("Scan #1 failed")
    finally:
        log.removeHandler(handler)

    entry = LogRepository(db_path).get_all(level="error")[0]
    assert "disk I/O error" in entry["data"]["exception"]
    assert "Traceback" in entry["data"]["traceback"]


def test_count_filters(db_path):
    repo = LogRepository(db_path)
    repo.create("info", "cli", "one")
    repo.create("error", "cli", "two")
    repo.create("info", "retention", "three")
    repo.create("bogus", "nowhere", "four")

    assert repo.count() == 4
    assert repo.count(context="cli") == 2
    assert repo.count(level="info") == 3
    assert repo.count(context="general") == 1
    assert repo.count(search="thr") == 1


def test_sanitize_error_message():
    assert sanitize_error_message("[Errno 13] Permission denied: '/etc/shadow'") == GENERIC_PERMISSION
    assert sanitize_error_message("No such file or directory: '/x'") == GENERIC_NOT_FOUND
    assert sanitize_error_message("sqlite3.OperationalError: database is locked") == GENERIC_DATABASE
    assert sanitize_error_message("boom at 0x7f") == GENERIC_ERROR
    assert sanitize_error_message("") == GENERIC_ERROR
