"""Tests for memory data model helpers and serialization."""

from datetime import UTC, datetime, timedelta

import pytest

from reminisce.memory.models import (
    EntityChangeEvent,
    EntityRef,
    InvolvedEntity,
    MemoryContext,
    MemoryPattern,
    MemoryUnit,
    Relationship,
    clamp_unit,
    normalize_iso,
    to_iso,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _make_unit(**kwargs) -> MemoryUnit:
    defaults = {
        "id": "m1",
        "pattern": MemoryPattern(
            type="find_item",
            intent="locate",
            keywords=["pen"],
            involved_entities=[InvolvedEntity(type="item", identifier="pen", role="subject")],
        ),
        "result": {"location": "desk drawer"},
        "summary": "desk drawer",
        "entities": [EntityRef("64b7f0c2a1b2c3d4e5f60718", "item", "primary")],
        "relationships": [Relationship("a", "located_in", "b", "to")],
        "context": MemoryContext(source_tool="find_item", session_id="s1", user_id="u1"),
        "confidence": 0.9,
        "importance": 0.6,
        "tier": "medium",
        "fingerprint": "abc",
        "tags": ["find_item"],
        "created_at": to_iso(NOW),
        "updated_at": to_iso(NOW),
    }
    defaults.update(kwargs)
    return MemoryUnit(**defaults)


@pytest.mark.parametrize(("raw", "clamped"), [(-0.5, 0.0), (0.0, 0.0), (0.42, 0.42), (1.7, 1.0)])
def test_clamp_unit(raw: float, clamped: float) -> None:
    assert clamp_unit(raw) == clamped


def test_to_iso_treats_naive_as_utc() -> None:
    assert to_iso(datetime(2025, 6, 1, 12, 0)) == "2025-06-01T12:00:00.000000+00:00"


def test_normalize_iso_converts_offsets_to_utc() -> None:
    assert normalize_iso("2025-06-01T14:00:00+02:00") == "2025-06-01T12:00:00.000000+00:00"
    assert normalize_iso(None) is None
    assert normalize_iso("") is None


def test_row_round_trip_preserves_nested_fields() -> None:
    unit = _make_unit()
    restored = MemoryUnit.from_row(unit.to_row())
    assert restored == unit


def test_row_round_trip_null_result() -> None:
    restored = MemoryUnit.from_row(_make_unit(result=None).to_row())
    assert restored.result is None


def test_is_expired() -> None:
    unit = _make_unit(expires_at=to_iso(NOW))
    assert unit.is_expired(NOW - timedelta(seconds=1)) is False
    assert unit.is_expired(NOW) is True
    assert _make_unit(expires_at=None).is_expired(NOW) is False


def test_is_servable_checks_confidence_and_expiry() -> None:
    live = _make_unit(expires_at=to_iso(NOW + timedelta(days=1)))
    assert live.is_servable(0.7, NOW) is True
    assert live.is_servable(0.95, NOW) is False
    assert _make_unit(expires_at=to_iso(NOW - timedelta(days=1))).is_servable(0.1, NOW) is False


def test_references() -> None:
    unit = _make_unit()
    assert unit.references("item", "64b7f0c2a1b2c3d4e5f60718") is True
    assert unit.references("location", "64b7f0c2a1b2c3d4e5f60718") is False


def test_memory_context_defaults_timestamp() -> None:
    assert MemoryContext().timestamp


def test_entity_change_event_normalizes() -> None:
    event = EntityChangeEvent("item", 42, "transferred", timestamp="2025-06-01T12:00:00")
    assert event.entity_id == "42"
    assert event.timestamp == "2025-06-01T12:00:00.000000+00:00"
    assert event.key == ("item", "transferred")


def test_entity_change_event_defaults_timestamp_to_now() -> None:
    event = EntityChangeEvent("task", "t1", "statusChanged")
    assert event.timestamp.endswith("+00:00")
    assert event.details == {}
