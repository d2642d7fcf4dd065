"""RecallEngine — find servable memory units for a query.

Lookup order is exact fingerprint first, then the parameter template (ranked
by parameter similarity), then the structural pattern.  Expiry and the
confidence floor are re-checked at read time, so units that a sweep has not
reached yet are never served.  Usage statistics are written by
background tasks that never hold up the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from reminisce.config import settings
from reminisce.memory.analyzer import parameter_similarity
from reminisce.memory.models import TIER_ARCHIVED, to_iso, utcnow
from reminisce.memory.store import MemoryFilter

if TYPE_CHECKING:
    from reminisce.memory.models import EntityRef, MemoryContext, MemoryPattern, MemoryUnit
    from reminisce.memory.store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class RecallQuery:
    """What to look for.

    At least one of ``fingerprint``, ``template_fingerprint``, ``pattern``,
    ``text_query`` or ``entities`` should be set; an empty query matches every
    servable unit.  ``parameters`` are the caller's canonical tool parameters,
    compared against each template match.
    """

    pattern: MemoryPattern | None = None
    fingerprint: str | None = None
    template_fingerprint: str | None = None
    parameters: dict[str, Any] | None = None
    text_query: str | None = None
    entities: list[EntityRef] = field(default_factory=list)
    context: MemoryContext | None = None
    min_confidence: float | None = None
    tiers: list[str] | None = None
    limit: int | None = None
    include_archived: bool = False


class RecallEngine:
    """Ranks and returns matching units from a MemoryStore."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._pending: set[asyncio.Task] = set()
        self.hits = 0
        self.misses = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @staticmethod
    def _min_confidence(query: RecallQuery) -> float:
        if query.min_confidence is not None:
            return query.min_confidence
        return settings.recall_confidence_threshold

    def _base_filter(self, query: RecallQuery) -> MemoryFilter:
        memory_filter = MemoryFilter(
            min_confidence=self._min_confidence(query),
            tiers=query.tiers,
            not_expired_at=to_iso(utcnow()),
            exclude_tiers=None if query.include_archived else [TIER_ARCHIVED],
        )
        if query.context is not None and query.context.user_id:
            memory_filter.user_id = query.context.user_id
        if query.context is not None and query.context.session_id:
            memory_filter.session_id = query.context.session_id
        return memory_filter

    @staticmethod
    def _rank_by_similarity(
        units: list[MemoryUnit], parameters: dict[str, Any] | None
    ) -> list[MemoryUnit]:
        """Template matches close enough to *parameters*, most similar first."""
        threshold = settings.template_similarity_threshold
        scored = [(parameter_similarity(parameters or {}, u.parameters or {}), u) for u in units]
        scored = [(s, u) for s, u in scored if s >= threshold]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [u for _, u in scored]

    async def recall(self, query: RecallQuery) -> list[MemoryUnit]:
        """Return servable units for *query*, best first. An empty list is a miss."""
        limit = query.limit or settings.recall_limit
        units: list[MemoryUnit] = []

        if query.fingerprint:
            memory_filter = self._base_filter(query)
            memory_filter.fingerprint = query.fingerprint
            units = await self._store.find(memory_filter, limit=limit)

        if not units and query.template_fingerprint:
            memory_filter = self._base_filter(query)
            memory_filter.template_fingerprint = query.template_fingerprint
            candidates = await self._store.find(memory_filter, limit=None)
            units = self._rank_by_similarity(candidates, query.parameters)[:limit]

        keyed = bool(query.fingerprint or query.template_fingerprint)
        if not units and (
            query.pattern is not None or query.text_query or query.entities or not keyed
        ):
            memory_filter = self._base_filter(query)
            if query.pattern is not None:
                memory_filter.pattern_type = query.pattern.type or None
                memory_filter.pattern_intent = query.pattern.intent
                memory_filter.keywords = list(query.pattern.keywords)
                memory_filter.involved_entities = list(query.pattern.involved_entities)
            memory_filter.text = query.text_query or None
            memory_filter.entities = list(query.entities)
            units = await self._store.find(memory_filter, limit=limit)

        # The store filtered on a timestamp taken before the round trip.
        now = utcnow()
        floor = self._min_confidence(query)
        units = [u for u in units if u.is_servable(floor, now)]

        if units:
            self.hits += 1
            self._schedule_access([u.id for u in units])
            for unit in units:
                unit.access_count += 1
                unit.last_accessed = to_iso(now)
        else:
            self.misses += 1
        logger.debug(
            "Recall returned %d unit(s) (fingerprint=%s, template=%s)",
            len(units),
            bool(query.fingerprint),
            bool(query.template_fingerprint),
        )
        return units

    # -- Background usage updates ----------------------------------------------

    def _schedule_access(self, memory_ids: list[str]) -> None:
        task = asyncio.create_task(self._record_access(memory_ids))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_access(self, memory_ids: list[str]) -> None:
        try:
            await self._store.record_access(memory_ids)
        except Exception:
            logger.exception("Failed to record access for %d memories", len(memory_ids))

    async def drain(self) -> None:
        """Wait for outstanding usage updates to land."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
