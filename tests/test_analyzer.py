"""Tests for fingerprinting and complexity analysis."""

import pytest

from reminisce.memory.analyzer import (
    analyze,
    canonicalize,
    fingerprint,
    is_mutating_tool,
    parameter_similarity,
    string_similarity,
    template_fingerprint,
)

# -- canonicalize --------------------------------------------------------------


def test_canonicalize_sorts_keys_recursively() -> None:
    result = canonicalize({"b": 1, "a": {"d": 2, "c": 3}})
    assert list(result) == ["a", "b"]
    assert list(result["a"]) == ["c", "d"]


def test_canonicalize_drops_transient_keys_and_none() -> None:
    result = canonicalize({"itemName": "pen", "sessionId": "s1", "timestamp": 5, "extra": None})
    assert result == {"itemName": "pen"}


def test_canonicalize_strips_strings() -> None:
    assert canonicalize({"query": "  library  "}) == {"query": "library"}


# -- fingerprint ---------------------------------------------------------------


def test_fingerprint_ignores_key_order() -> None:
    a = fingerprint("estimate_time", {"origin": "Library", "destination": "Dorm", "mode": "walk"})
    b = fingerprint("estimate_time", {"mode": "walk", "destination": "Dorm", "origin": "Library"})
    assert a == b


def test_fingerprint_ignores_nested_key_order() -> None:
    a = fingerprint("query_item", {"filter": {"color": "red", "size": 2}})
    b = fingerprint("query_item", {"filter": {"size": 2, "color": "red"}})
    assert a == b


def test_fingerprint_ignores_session_ids() -> None:
    a = fingerprint("find_item", {"itemName": "pen", "sessionId": "one"})
    b = fingerprint("find_item", {"itemName": "pen", "session_id": "two", "contextId": "x"})
    assert a == b


def test_fingerprint_differs_by_tool() -> None:
    assert fingerprint("find_item", {"itemName": "pen"}) != fingerprint(
        "query_item", {"itemName": "pen"}
    )


def test_fingerprint_differs_by_value() -> None:
    assert fingerprint("find_item", {"itemName": "pen"}) != fingerprint(
        "find_item", {"itemName": "book"}
    )


def test_fingerprint_is_hex_sha256() -> None:
    fp = fingerprint("find_item", None)
    assert len(fp) == 64
    int(fp, 16)


# -- analyze -------------------------------------------------------------------


def test_analyze_estimate_time_is_cacheable() -> None:
    # 2 params + 2 free-text fields + tool weight 2
    result = analyze("estimate_time", {"origin": "Library", "destination": "Dorm"})
    assert result.complexity_score == 6
    assert result.should_cache is True


def test_analyze_simple_lookup_below_threshold() -> None:
    result = analyze("query_task", {"status": "pending"})
    assert result.complexity_score == 1
    assert result.should_cache is False


def test_analyze_ignores_empty_and_boolean_params() -> None:
    result = analyze("query_item", {"name": "", "tags": [], "includeArchived": True})
    assert result.complexity_score == 1


def test_analyze_mutating_tool_never_cached() -> None:
    result = analyze(
        "transfer_item",
        {"itemId": "a" * 24, "targetLocationId": "b" * 24, "note": "moved", "query": "x"},
    )
    assert result.complexity_score >= 3
    assert result.should_cache is False


def test_analyze_custom_threshold() -> None:
    params = {"itemName": "pen"}
    assert analyze("find_item", params, threshold=10).should_cache is False
    assert analyze("find_item", params, threshold=1).should_cache is True


def test_analyze_uses_configured_threshold(monkeypatch) -> None:
    monkeypatch.setattr("reminisce.config.settings.cache_complexity_threshold", 100)
    assert analyze("estimate_time", {"origin": "A", "destination": "B"}).should_cache is False


@pytest.mark.parametrize(
    ("tool", "expected"),
    [
        ("create_item", True),
        ("update_task_status", True),
        ("delete_contact", True),
        ("transfer_item", True),
        ("find_item", False),
        ("query_location", False),
    ],
)
def test_is_mutating_tool(tool: str, expected: bool) -> None:
    assert is_mutating_tool(tool) is expected


# -- template_fingerprint ------------------------------------------------------


def test_template_fingerprint_is_separate_from_exact_key() -> None:
    params = {"itemCategory": "STATIONERY", "itemName": "<STATIONERY>"}
    assert template_fingerprint("find_item", params) != fingerprint("find_item", params)
    assert template_fingerprint("find_item", params) == template_fingerprint(
        "find_item", dict(reversed(params.items()))
    )


# -- Parameter similarity ------------------------------------------------------


@pytest.mark.parametrize(
    ("a", "b", "expected"),
    [
        ("Blue Pen", "blue pen ", 1.0),
        ("the blue pen", "blue pen", 2 / 3),
        ("blue pen", "red pen", 0.5),
        ("64b7f0c2a1b2c3d4e5f60718", "64b7f0c2a1b2c3d4e5f60719", 0.0),
        ("a b", "a c", 2 / 3),
        ("", "pen", 0.0),
    ],
)
def test_string_similarity(a: str, b: str, expected: float) -> None:
    assert string_similarity(a, b) == pytest.approx(expected)


@pytest.mark.parametrize(
    ("a", "b", "expected"),
    [
        ({"id": 1, "name": "blue pen"}, {"id": 1, "name": "red pen"}, 0.75),
        ({"id": 1}, {"id": 1, "mode": "walk"}, 0.5),
        ({"id": 1}, {"mode": "walk"}, 0.0),
        ({}, {}, 1.0),
        (["pen", "book"], ["pen"], 0.5),
        ([], ["pen"], 0.0),
        (True, 1, 0.0),
        (1, 1.0, 1.0),
        (3, 4, 0.0),
        (None, None, 1.0),
    ],
)
def test_parameter_similarity(a, b, expected: float) -> None:
    assert parameter_similarity(a, b) == pytest.approx(expected)
