"""Fingerprint and complexity analysis for tool invocations.

Everything here is pure: no I/O, no state, deterministic for equal input.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any

from reminisce.config import settings

# Keys that identify a request rather than describe it.
TRANSIENT_KEYS = frozenset({
    "session_id",
    "sessionId",
    "context_id",
    "contextId",
    "conversation_id",
    "conversationId",
    "request_id",
    "requestId",
    "timestamp",
    "_queryTime",
})

FREE_TEXT_KEYS = frozenset({
    "query",
    "text",
    "search",
    "keyword",
    "keywords",
    "name",
    "itemName",
    "item_name",
    "origin",
    "destination",
    "content",
    "description",
})

# Extra weight for tools whose results are expensive to recompute.
TOOL_WEIGHTS: dict[str, int] = {
    "estimate_time": 2,
    "plan_schedule": 2,
    "find_item": 1,
    "query_item": 1,
    "query_location": 1,
    "query_contact": 1,
    "query_biodata": 1,
    "search_notes": 1,
    "query_task": 0,
}

_MUTATING_PREFIXES = ("create_", "update_", "delete_", "transfer_", "add_", "confirm_")


@dataclass(frozen=True)
class QueryAnalysis:
    complexity_score: int
    should_cache: bool


def canonicalize(value: Any) -> Any:
    """Return a canonical form of *value*.

    Dict keys are sorted, transient keys and ``None`` values are dropped and
    strings are stripped, recursively.
    """
    if isinstance(value, dict):
        return {
            str(k): canonicalize(value[k])
            for k in sorted(value, key=str)
            if k not in TRANSIENT_KEYS and value[k] is not None
        }
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, str):
        return value.strip()
    return value


def _digest(tool_name: str, key: str, params: dict[str, Any] | None) -> str:
    payload = json.dumps(
        {"tool": tool_name.strip(), key: canonicalize(params or {})},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def fingerprint(tool_name: str, params: dict[str, Any] | None) -> str:
    """Deterministic exact-match key for a tool call."""
    return _digest(tool_name, "params", params)


def template_fingerprint(tool_name: str, abstract_params: dict[str, Any] | None) -> str:
    """Key shared by calls whose parameters abstract to the same template.

    *abstract_params* is the output of ``policy.abstract_params``.
    """
    return _digest(tool_name, "template", abstract_params)


def is_mutating_tool(tool_name: str) -> bool:
    return tool_name.startswith(_MUTATING_PREFIXES)


def analyze(
    tool_name: str,
    params: dict[str, Any] | None,
    threshold: int | None = None,
) -> QueryAnalysis:
    """Score how worthwhile caching a tool call is.

    One point per meaningful (non-empty, non-boolean) parameter, one more per
    free-text field, plus the tool's weight. Mutating tools are never cached.
    """
    canonical = canonicalize(params or {})
    meaningful = {
        k: v
        for k, v in canonical.items()
        if v not in ("", [], {}) and not isinstance(v, bool)
    }
    score = len(meaningful)
    score += sum(1 for k, v in meaningful.items() if k in FREE_TEXT_KEYS and isinstance(v, str))
    score += TOOL_WEIGHTS.get(tool_name, 0)

    if threshold is None:
        threshold = settings.cache_complexity_threshold
    should_cache = not is_mutating_tool(tool_name) and score >= threshold
    return QueryAnalysis(complexity_score=score, should_cache=should_cache)


# -- Parameter similarity ------------------------------------------------------


def string_similarity(a: str, b: str) -> float:
    """Shared-word ratio; character-level ratio only when there are no words."""
    a, b = a.lower().strip(), b.lower().strip()
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    words_a = [w for w in a.split() if len(w) > 1]
    words_b = [w for w in b.split() if len(w) > 1]
    if not words_a or not words_b:
        return SequenceMatcher(None, a, b).ratio()
    common = [w for w in words_a if w in words_b]
    return len(common) / max(len(words_a), len(words_b))


def parameter_similarity(a: Any, b: Any) -> float:
    """Similarity of two parameter values in [0, 1].

    Dicts score key coverage times the mean similarity of shared keys;
    lists score the share of items with a close (> 0.8) counterpart.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return 1.0 if a is b else 0.0
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return 1.0 if a == b else 0.0
    if isinstance(a, str) and isinstance(b, str):
        return string_similarity(a, b)
    if isinstance(a, dict) and isinstance(b, dict):
        if not a and not b:
            return 1.0
        common = [k for k in a if k in b]
        if not common:
            return 0.0
        total = sum(parameter_similarity(a[k], b[k]) for k in common)
        return (len(common) / max(len(a), len(b))) * (total / len(common))
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if not a and not b:
            return 1.0
        if not a or not b:
            return 0.0
        close = [x for x in a if any(parameter_similarity(x, y) > 0.8 for y in b)]
        return len(close) / max(len(a), len(b))
    return 1.0 if a == b else 0.0
