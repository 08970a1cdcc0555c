import yaml
from conftest import write_file

from driftguard.core.models import ScanStatus
from driftguard.core.rules import RuleRepository
from driftguard.core.storage import ScanRunRepository
from driftguard.main import main


def _config(tmp_path, managed_root):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "scanning": {"root": str(managed_root), "extensions": []},
                "storage": {"database": str(tmp_path / "cli.db")},
                "alerts": {"log_path": str(tmp_path / "alerts.log"), "console_alerts": False},
                "rules": [{"path": "wp-config.php", "priority_level": "critical", "notify_immediately": True}],
            }
        ),
        encoding="utf-8",
    )
    return str(path)


def test_scan_then_history(tmp_path, managed_root, monkeypatch):
    monkeypatch.delenv("DRIFTGUARD_DB_PATH", raising=False)
    write_file(managed_root, "index.php", "i")
    config = _config(tmp_path, managed_root)

    assert main(["--no-db-log", "scan", "--config", config, "-q"]) == 0
    assert main(["--no-db-log", "history", "--config", config]) == 0

    runs = ScanRunRepository(tmp_path / "cli.db").recent(5)
    assert [r.status for r in runs] == [ScanStatus.COMPLETED]
    assert runs[0].is_baseline


def test_rules_import_add_and_reject(tmp_path, managed_root, monkeypatch):
    monkeypatch.delenv("DRIFTGUARD_DB_PATH", raising=False)
    config = _config(tmp_path, managed_root)

    assert main(["--no-db-log", "rules", "--config", config, "import"]) == 0
    assert main(["--no-db-log", "rules", "--config", config, "add", "uploads/*", "--priority", "high", "--match-type", "glob"]) == 0
    assert main(["--no-db-log", "rules", "--config", config, "add", "x", "--priority", "high", "--match-type", "fuzzy"]) == 1

    assert RuleRepository(tmp_path / "cli.db").count() == 2


def test_cancel_unknown_scan_fails(tmp_path, managed_root, monkeypatch):
    monkeypatch.delenv("DRIFTGUARD_DB_PATH", raising=False)

    assert main(["--no-db-log", "cancel", "--config", _config(tmp_path, managed_root), "42"]) == 1


def test_invalid_config_exits_nonzero(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"retention": {"tier2_days": 90, "tier3_days": 30}}), encoding="utf-8")

    assert main(["history", "--config", str(path)]) == 1
