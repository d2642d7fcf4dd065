"""Shared test fixtures."""

from pathlib import Path

import pytest

from reminisce.memory.context import ContextChainTracker
from reminisce.memory.service import ReminisceService
from reminisce.memory.store import MemoryStore


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("reminisce.config.settings.turso_database_url", "")


@pytest.fixture
def store(tmp_path: Path, _no_turso: None) -> MemoryStore:
    """A MemoryStore backed by a temp database."""
    return MemoryStore(db_path=tmp_path / "test.db")


@pytest.fixture
async def service(store: MemoryStore):
    """A ReminisceService over the temp store; background work is drained on teardown."""
    svc = ReminisceService(store=store, tracker=ContextChainTracker())
    yield svc
    await svc.drain()
