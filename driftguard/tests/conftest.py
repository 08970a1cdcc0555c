"""
Pytest configuration and shared fixtures for DriftGuard tests.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from driftguard.core.storage import init_db


class FakeClock:
    """Controllable UTC clock injected wherever the engine reads "now"."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "data" / "driftguard.db"
    init_db(path)
    return path


@pytest.fixture
def managed_root(tmp_path):
    root = tmp_path / "site"
    root.mkdir()
    return root


def write_file(root: Path, rel: str, content: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
