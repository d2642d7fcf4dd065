"""ContextChainTracker — in-process registry of multi-step query sessions.

Contexts live only in memory.  They are dropped after a period of inactivity
or, when the population cap is reached, least recently active first.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from reminisce.config import settings
from reminisce.memory.analyzer import analyze, fingerprint
from reminisce.memory.models import to_iso, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

RELATION_ENTITY_TRANSFER = "entity_transfer"
RELATION_LOCATION_TRANSFER = "location_transfer"


@dataclass
class QueryStep:
    id: str
    timestamp: datetime
    tool_name: str
    params: dict[str, Any]
    result: Any
    fingerprint: str
    complexity: int
    previous_step_id: str | None = None
    relation_to_previous: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "tool_name": self.tool_name,
            "params": self.params,
            "result": self.result,
            "fingerprint": self.fingerprint,
            "complexity": self.complexity,
            "previous_step_id": self.previous_step_id,
            "relation_to_previous": self.relation_to_previous,
        }


@dataclass
class QueryContext:
    context_id: str
    created_at: datetime
    last_activity: datetime
    steps: list[QueryStep] = field(default_factory=list)
    aggregate_complexity: int = 0
    is_completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_id": self.context_id,
            "created_at": to_iso(self.created_at),
            "last_activity": to_iso(self.last_activity),
            "steps": [s.to_dict() for s in self.steps],
            "aggregate_complexity": self.aggregate_complexity,
            "is_completed": self.is_completed,
        }


# -- Relation detectors --------------------------------------------------------
# A detector looks at two consecutive steps and returns a relation name or None.


def detect_entity_transfer(previous: QueryStep, current: QueryStep) -> str | None:
    """The current call targets the entity the previous call returned."""
    result = previous.result
    if not isinstance(result, dict) or not result.get("entityId"):
        return None
    if current.params.get("entityId") == result["entityId"]:
        return RELATION_ENTITY_TRANSFER
    return None


def detect_location_transfer(previous: QueryStep, current: QueryStep) -> str | None:
    """A location lookup's name feeds the origin of a travel-time estimate."""
    if previous.tool_name != "query_location" or current.tool_name != "estimate_time":
        return None
    result = previous.result
    location = result.get("location") if isinstance(result, dict) else None
    if not isinstance(location, dict) or not location.get("name"):
        return None
    if current.params.get("origin") == location["name"]:
        return RELATION_LOCATION_TRANSFER
    return None


class ContextChainTracker:
    """Tracks query contexts and the relations between their steps.

    Args:
        max_age: Inactivity after which a context is dropped.
        max_count: Maximum number of live contexts.
        compound_threshold: Aggregate complexity at which a multi-step
            context counts as compound.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        max_age: timedelta | None = None,
        max_count: int | None = None,
        compound_threshold: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._max_age = max_age or timedelta(minutes=settings.context_max_age_minutes)
        self._max_count = max_count or settings.context_max_count
        self._compound_threshold = (
            compound_threshold
            if compound_threshold is not None
            else settings.compound_complexity_threshold
        )
        self._clock = clock
        self._contexts: dict[str, QueryContext] = {}
        self._lock = threading.Lock()
        self._detectors: list[Callable[[QueryStep, QueryStep], str | None]] = [
            detect_entity_transfer,
            detect_location_transfer,
        ]

    def __len__(self) -> int:
        return len(self._contexts)

    def register_detector(self, detector: Callable[[QueryStep, QueryStep], str | None]) -> None:
        """Append a relation detector. Built-in detectors always run first."""
        self._detectors.append(detector)

    # -- Lifecycle -------------------------------------------------------------

    def create_context(self) -> str:
        """Sweep inactive contexts, then allocate a new one and return its ID."""
        self.cleanup()
        now = self._clock()
        context = QueryContext(context_id=uuid.uuid4().hex, created_at=now, last_activity=now)
        with self._lock:
            while len(self._contexts) >= self._max_count:
                oldest = min(self._contexts.values(), key=lambda c: c.last_activity)
                del self._contexts[oldest.context_id]
                logger.debug("Evicted query context %s (cap reached)", oldest.context_id)
            self._contexts[context.context_id] = context
        return context.context_id

    def get_context(self, context_id: str) -> QueryContext | None:
        return self._contexts.get(context_id)

    def complete(self, context_id: str) -> bool:
        with self._lock:
            context = self._contexts.get(context_id)
            if context is None:
                return False
            context.is_completed = True
        return True

    def cleanup(self) -> int:
        """Drop contexts inactive for longer than the maximum age."""
        cutoff = self._clock() - self._max_age
        with self._lock:
            stale = [cid for cid, c in self._contexts.items() if c.last_activity < cutoff]
            for cid in stale:
                del self._contexts[cid]
        if stale:
            logger.debug("Dropped %d inactive query context(s)", len(stale))
        return len(stale)

    def list_contexts(self) -> list[QueryContext]:
        with self._lock:
            return list(self._contexts.values())

    # -- Steps -----------------------------------------------------------------

    def add_step(
        self,
        context_id: str,
        tool_name: str,
        params: dict[str, Any] | None,
        result: Any,
    ) -> QueryStep | None:
        """Append a step to a context. Returns None if the context is unknown."""
        params = params or {}
        analysis = analyze(tool_name, params)
        step = QueryStep(
            id=uuid.uuid4().hex,
            timestamp=self._clock(),
            tool_name=tool_name,
            params=params,
            result=result,
            fingerprint=fingerprint(tool_name, params),
            complexity=analysis.complexity_score,
        )

        with self._lock:
            context = self._contexts.get(context_id)
            if context is None:
                return None
            if context.steps:
                previous = context.steps[-1]
                step.previous_step_id = previous.id
                step.relation_to_previous = self._detect_relation(previous, step)
            context.steps.append(step)
            context.aggregate_complexity += step.complexity
            context.last_activity = step.timestamp
        return step

    def _detect_relation(self, previous: QueryStep, current: QueryStep) -> str | None:
        for detector in self._detectors:
            relation = detector(previous, current)
            if relation:
                return relation
        return None

    def is_compound(self, context_id: str) -> bool:
        """More than one step and enough aggregate complexity to be interdependent."""
        context = self._contexts.get(context_id)
        if context is None or len(context.steps) <= 1:
            return False
        return context.aggregate_complexity >= self._compound_threshold
