"""Tests for DecayScheduler — expiry, staleness and statistics sweeps."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from reminisce.memory.decay import JOB_EXPIRED, JOB_STALE, JOB_STATS, DecayScheduler
from reminisce.memory.models import MemoryPattern, MemoryUnit, parse_iso, to_iso, utcnow
from reminisce.memory.store import MemoryStore

pytestmark = pytest.mark.usefixtures("_no_turso")


def _unit(**kwargs) -> MemoryUnit:
    defaults = {"pattern": MemoryPattern(type="find_item"), "result": "desk", "confidence": 0.9}
    defaults.update(kwargs)
    return MemoryUnit(**defaults)


def _days_ago(days: int) -> str:
    return to_iso(utcnow() - timedelta(days=days))


@pytest.fixture
def decay(store: MemoryStore) -> DecayScheduler:
    return DecayScheduler(store)


# -- Expired sweep -------------------------------------------------------------


async def test_expired_untrusted_units_are_deleted(
    store: MemoryStore, decay: DecayScheduler
) -> None:
    gone = await store.create(_unit(confidence=0.1, expires_at=_days_ago(1)))
    live = await store.create(_unit(confidence=0.1, expires_at=to_iso(utcnow() + timedelta(1))))

    result = await decay.sweep_expired()

    assert result == {"deleted": 1, "downgraded": 0}
    assert await store.get_by_id(gone) is None
    assert await store.get_by_id(live) is not None
    assert decay.stats.last_cleanup is not None


async def test_expired_trusted_units_are_downgraded(
    store: MemoryStore, decay: DecayScheduler
) -> None:
    memory_id = await store.create(_unit(tier="long", confidence=0.9, expires_at=_days_ago(1)))

    result = await decay.sweep_expired()

    assert result == {"deleted": 0, "downgraded": 1}
    unit = await store.get_by_id(memory_id)
    assert unit.tier == "short"
    assert unit.confidence == 0.3
    assert parse_iso(unit.expires_at) > utcnow() + timedelta(days=6)


async def test_downgrade_never_promotes(store: MemoryStore, decay: DecayScheduler) -> None:
    memory_id = await store.create(_unit(tier="short", confidence=0.5, expires_at=_days_ago(1)))
    await decay.sweep_expired()
    assert (await store.get_by_id(memory_id)).tier == "short"


async def test_archived_units_survive_expired_sweep(
    store: MemoryStore, decay: DecayScheduler
) -> None:
    untrusted = await store.create(_unit(tier="archived", confidence=0.0, expires_at=_days_ago(1)))
    trusted = await store.create(_unit(tier="archived", confidence=0.9, expires_at=_days_ago(1)))

    assert await decay.sweep_expired() == {"deleted": 0, "downgraded": 0}
    assert (await store.get_by_id(untrusted)).tier == "archived"
    assert (await store.get_by_id(trusted)).tier == "archived"


async def test_sweep_expired_failure_is_logged(caplog) -> None:
    store = AsyncMock(spec=MemoryStore)
    store.delete_expired_untrusted.side_effect = RuntimeError("db down")

    result = await DecayScheduler(store).sweep_expired()

    assert result == {"deleted": 0, "downgraded": 0}
    assert "Expired-memory sweep failed" in caplog.text


# -- Stale sweep ---------------------------------------------------------------


async def test_long_tier_is_exempt_from_stale_sweep(
    store: MemoryStore, decay: DecayScheduler
) -> None:
    long_unit = await store.create(_unit(tier="long", confidence=0.4, last_accessed=_days_ago(120)))
    medium_unit = await store.create(
        _unit(tier="medium", confidence=0.4, last_accessed=_days_ago(120))
    )

    assert await decay.sweep_stale() == 1
    assert await store.get_by_id(long_unit) is not None
    assert await store.get_by_id(medium_unit) is None


async def test_stale_sweep_keeps_trusted_and_recent_units(
    store: MemoryStore, decay: DecayScheduler
) -> None:
    trusted = await store.create(_unit(confidence=0.9, last_accessed=_days_ago(120)))
    recent = await store.create(_unit(confidence=0.1, last_accessed=_days_ago(10)))
    archived = await store.create(
        _unit(tier="archived", confidence=0.1, last_accessed=_days_ago(120))
    )

    assert await decay.sweep_stale() == 0
    for memory_id in (trusted, recent, archived):
        assert await store.get_by_id(memory_id) is not None


async def test_stale_sweep_custom_thresholds(store: MemoryStore, decay: DecayScheduler) -> None:
    memory_id = await store.create(_unit(confidence=0.6, last_accessed=_days_ago(10)))

    assert await decay.sweep_stale(after_days=5, confidence_threshold=0.7) == 1
    assert await store.get_by_id(memory_id) is None


async def test_sweep_stale_failure_is_logged(caplog) -> None:
    store = AsyncMock(spec=MemoryStore)
    store.delete_stale.side_effect = RuntimeError("db down")

    assert await DecayScheduler(store).sweep_stale() == 0
    assert "Stale-memory sweep failed" in caplog.text


# -- Statistics ----------------------------------------------------------------


async def test_refresh_stats(store: MemoryStore, decay: DecayScheduler) -> None:
    await store.create(_unit(tier="short", confidence=0.9))
    await store.create(_unit(tier="long", confidence=0.2, validated=True))

    stats = await decay.refresh_stats()

    assert stats.total == 2
    assert stats.by_tier["short"] == 1
    assert stats.by_tier["long"] == 1
    assert stats.by_confidence == {"high": 1, "medium": 0, "low": 1}
    assert stats.validated == 1
    assert stats.last_refresh is not None
    assert decay.stats is stats


async def test_refresh_failure_keeps_previous_snapshot(caplog) -> None:
    store = AsyncMock(spec=MemoryStore)
    store.aggregate_stats.side_effect = RuntimeError("db down")
    decay = DecayScheduler(store)
    before = decay.stats

    assert await decay.refresh_stats() is before
    assert "statistics refresh failed" in caplog.text


# -- Lifecycle -----------------------------------------------------------------


async def test_start_registers_jobs_and_refreshes(store: MemoryStore) -> None:
    decay = DecayScheduler(store)
    await decay.start()
    try:
        assert decay.running is True
        jobs = {job.id: job for job in decay._scheduler.get_jobs()}
        assert set(jobs) == {JOB_EXPIRED, JOB_STALE, JOB_STATS}
        assert all(job.max_instances == 1 and job.coalesce for job in jobs.values())
        assert decay.stats.last_refresh is not None
    finally:
        await decay.stop()
    assert decay.running is False


async def test_stop_without_start_is_noop(decay: DecayScheduler) -> None:
    await decay.stop()
    assert decay.running is False


# -- Direct runs ---------------------------------------------------------------


@pytest.mark.parametrize(
    ("store_method", "run"),
    [
        ("delete_expired_untrusted", lambda d: d.run_expired_sweep()),
        ("delete_stale", lambda d: d.run_stale_sweep()),
        ("aggregate_stats", lambda d: d.compute_stats()),
    ],
)
async def test_direct_runs_raise_store_failures(store_method: str, run) -> None:
    store = AsyncMock(spec=MemoryStore)
    getattr(store, store_method).side_effect = RuntimeError("db down")
    decay = DecayScheduler(store)

    with pytest.raises(RuntimeError, match="db down"):
        await run(decay)
    assert decay.stats.last_cleanup is None
