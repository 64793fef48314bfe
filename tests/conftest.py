"""Shared test fixtures."""

from pathlib import Path

import pytest

from cadence.scheduler.store import TemplateStore, VerificationStore


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("cadence.config.settings.turso_database_url", "")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def template_store(db_path: Path) -> TemplateStore:
    """A TemplateStore backed by a temp database."""
    return TemplateStore(db_path=db_path)


@pytest.fixture
def verification_store(db_path: Path) -> VerificationStore:
    """A VerificationStore sharing the same temp database."""
    return VerificationStore(db_path=db_path)
