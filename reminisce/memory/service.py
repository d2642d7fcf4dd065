"""ReminisceService — the public face of the memory subsystem.

One instance per process, constructed by the entry point and injected into
whoever handles tool calls.  Every public operation returns an
``OperationResult`` instead of raising, so callers can always fall back to
computing a fresh answer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from reminisce.config import settings
from reminisce.memory import analyzer, policy
from reminisce.memory.context import ContextChainTracker
from reminisce.memory.decay import DecayScheduler
from reminisce.memory.errors import (
    MemoryNotFoundError,
    MemoryValidationError,
    ReminisceError,
)
from reminisce.memory.invalidation import InvalidationEngine
from reminisce.memory.models import (
    TAG_VOLATILE,
    TIER_ARCHIVED,
    TIER_MEDIUM,
    TIERS,
    EntityChangeEvent,
    EntityRef,
    InvolvedEntity,
    MemoryContext,
    MemoryPattern,
    MemoryUnit,
    Relationship,
    is_allowed_tier_transition,
    to_iso,
    utcnow,
)
from reminisce.memory.recall import RecallEngine, RecallQuery
from reminisce.memory.store import MemoryFilter, MemoryStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from reminisce.memory.context import QueryContext, QueryStep

logger = logging.getLogger(__name__)

MANAGE_ACTIONS = (
    "update_importance",
    "update_confidence",
    "change_tier",
    "add_tag",
    "remove_tag",
    "archive",
    "unarchive",
)

_SUMMARY_LENGTH = 100


@dataclass
class OperationResult:
    """Outcome of a service operation: either ``data`` or an ``error`` message."""

    data: Any = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class CachedCall:
    """What ``cached_call`` did for one tool invocation."""

    result: Any
    from_cache: bool
    memory_id: str | None = None
    step_id: str | None = None


def _truncate(text: str) -> str:
    if len(text) > _SUMMARY_LENGTH:
        return text[:_SUMMARY_LENGTH] + "..."
    return text


def summarize_result(result: Any) -> str:
    """Short synopsis of a tool result for the ``summary`` field."""
    if result is None or result == "":
        return ""
    if isinstance(result, str):
        return _truncate(result)
    if isinstance(result, dict):
        for key in ("name", "title"):
            if result.get(key):
                return str(result[key])
        if result.get("description"):
            return _truncate(str(result["description"]))
    return _truncate(json.dumps(result, default=str, ensure_ascii=False))


def _as_pattern(value: MemoryPattern | dict[str, Any] | None) -> MemoryPattern | None:
    if value is None or isinstance(value, MemoryPattern):
        return value
    return MemoryPattern.from_dict(value)


def _as_entities(values: list[EntityRef | dict[str, Any]] | None) -> list[EntityRef]:
    return [v if isinstance(v, EntityRef) else EntityRef.from_dict(v) for v in values or []]


def _as_context(value: MemoryContext | dict[str, Any] | None) -> MemoryContext | None:
    if value is None or isinstance(value, MemoryContext):
        return value
    return MemoryContext.from_dict(value)


def _unit_score(value: Any, name: str) -> float:
    if isinstance(value, str):
        # Tool arguments arrive as text when the model quotes a number.
        try:
            value = float(value.strip())
        except ValueError:
            value = None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
        msg = f"{name} must be a number between 0 and 1"
        raise MemoryValidationError(msg)
    return float(value)



def _tag(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        msg = "Tag must be a non-empty string"
        raise MemoryValidationError(msg)
    return value.strip()


class ReminisceService:
    """Wires the store, recall, invalidation, context and decay components.

    Args:
        store: Backing MemoryStore (a default one over settings is built
            when omitted).
        tracker: Context chain tracker; one per service.
    """

    def __init__(
        self,
        store: MemoryStore | None = None,
        tracker: ContextChainTracker | None = None,
    ) -> None:
        self.store = store or MemoryStore()
        self.tracker = tracker or ContextChainTracker()
        self.recall_engine = RecallEngine(self.store)
        self.invalidation = InvalidationEngine(self.store)
        self.decay = DecayScheduler(self.store)
        self._background: set[asyncio.Task] = set()

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        await self.decay.start()
        logger.info("Reminisce service started")

    async def stop(self) -> None:
        await self.drain()
        await self.decay.stop()
        logger.info("Reminisce service stopped")

    async def drain(self) -> None:
        """Wait for background bookkeeping (access counts, related links)."""
        await self.recall_engine.drain()
        while self._background:
            await asyncio.gather(*list(self._background))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _failure(operation: str, exc: Exception) -> OperationResult:
        if isinstance(exc, ReminisceError):
            logger.warning("%s failed: %s", operation, exc)
            return OperationResult(error=str(exc))
        logger.exception("%s failed", operation)
        return OperationResult(error=f"{operation} failed. Check logs for details.")

    # -- Recall ----------------------------------------------------------------

    async def recall(
        self,
        pattern: MemoryPattern | dict[str, Any] | None = None,
        fingerprint: str | None = None,
        template_fingerprint: str | None = None,
        parameters: dict[str, Any] | None = None,
        text_query: str | None = None,
        entities: list[EntityRef | dict[str, Any]] | None = None,
        context: MemoryContext | dict[str, Any] | None = None,
        min_confidence: float | None = None,
        tiers: list[str] | None = None,
        limit: int | None = None,
        include_archived: bool = False,
    ) -> OperationResult:
        """Find servable memories. An empty list is a miss, not an error.

        *template_fingerprint* matches calls with the same abstracted
        parameters; they are ranked by similarity to *parameters*.
        """
        try:
            keys = (fingerprint, template_fingerprint, text_query, entities)
            if pattern is None and not any(keys):
                msg = "Provide a pattern, fingerprint, text query or entities to recall"
                raise MemoryValidationError(msg)
            if tiers and any(t not in TIERS for t in tiers):
                msg = f"Invalid tier in {tiers!r}"
                raise MemoryValidationError(msg)
            query = RecallQuery(
                pattern=_as_pattern(pattern),
                fingerprint=fingerprint,
                template_fingerprint=template_fingerprint,
                parameters=parameters,
                text_query=text_query,
                entities=_as_entities(entities),
                context=_as_context(context),
                min_confidence=min_confidence,
                tiers=tiers,
                limit=limit,
                include_archived=include_archived or bool(tiers and TIER_ARCHIVED in tiers),
            )
            units = await self.recall_engine.recall(query)
        except Exception as exc:
            return self._failure("Recall", exc)
        return OperationResult(data={"memories": [u.to_dict() for u in units], "count": len(units)})

    # -- Learn -----------------------------------------------------------------

    async def learn(
        self,
        pattern: MemoryPattern | dict[str, Any],
        result: Any,
        summary: str | None = None,
        entities: list[EntityRef | dict[str, Any]] | None = None,
        relationships: list[Relationship | dict[str, Any]] | None = None,
        context: MemoryContext | dict[str, Any] | None = None,
        importance: float | None = None,
        confidence: float | None = None,
        tier: str | None = None,
        tags: list[str] | None = None,
        expires_at: str | None = None,
        related_memory_ids: list[str] | None = None,
        fingerprint: str | None = None,
        template_fingerprint: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> OperationResult:
        """Store a new memory unit and link it to units sharing an entity."""
        try:
            memory_pattern = _as_pattern(pattern)
            if memory_pattern is None or not memory_pattern.type:
                msg = "A pattern with a type is required"
                raise MemoryValidationError(msg)
            if result is None:
                msg = "A result is required"
                raise MemoryValidationError(msg)
            tier = tier or settings.default_tier
            if tier not in TIERS:
                msg = f"Invalid tier: {tier!r}"
                raise MemoryValidationError(msg)

            unit = MemoryUnit(
                pattern=memory_pattern,
                result=result,
                summary=summary or summarize_result(result),
                entities=_as_entities(entities),
                relationships=[
                    r if isinstance(r, Relationship) else Relationship.from_dict(r)
                    for r in relationships or []
                ],
                context=_as_context(context) or MemoryContext(),
                importance=importance if importance is not None else settings.default_importance,
                confidence=confidence if confidence is not None else settings.default_confidence,
                tier=tier,
                fingerprint=fingerprint,
                template_fingerprint=template_fingerprint,
                parameters=parameters,
                tags=list(dict.fromkeys(tags or [])),
                expires_at=expires_at or policy.expiry_for(tier),
                related_memories=[str(i) for i in related_memory_ids or []],
            )
            await self.store.create(unit)
        except Exception as exc:
            return self._failure("Learn", exc)

        if unit.entities:
            self._spawn(self._link_related(unit))
        return OperationResult(data={"memory_id": unit.id, "memory": unit.to_dict()})

    async def _link_related(self, unit: MemoryUnit) -> None:
        try:
            related = await self.store.find(
                MemoryFilter(any_entities=unit.entities, exclude_ids=[unit.id]), limit=None
            )
            for other in related:
                await self.store.link(unit.id, other.id)
            if related:
                logger.debug("Linked memory %s to %d related memories", unit.id, len(related))
        except Exception:
            logger.exception("Failed to link related memories for %s", unit.id)

    # -- Manage ----------------------------------------------------------------

    async def manage(self, memory_id: str, action: str, value: Any = None) -> OperationResult:
        """Adjust one unit's metadata. Values are validated before anything is written."""
        try:
            patch = await self._manage_patch(memory_id, action, value)
            if not await self.store.update(memory_id, patch):
                msg = f"Memory not found: {memory_id}"
                raise MemoryNotFoundError(msg)
            unit = await self.store.get_by_id(memory_id)
        except Exception as exc:
            return self._failure("Manage", exc)
        logger.info("Memory %s: %s", memory_id, action)
        return OperationResult(
            data={"memory": unit.to_dict() if unit else None, "action": action}
        )

    async def _require(self, memory_id: str) -> MemoryUnit:
        unit = await self.store.get_by_id(memory_id)
        if unit is None:
            msg = f"Memory not found: {memory_id}"
            raise MemoryNotFoundError(msg)
        return unit

    async def _manage_patch(self, memory_id: str, action: str, value: Any) -> dict[str, Any]:
        if action not in MANAGE_ACTIONS:
            msg = f"Unknown memory action: {action}"
            raise MemoryValidationError(msg)

        if action == "update_importance":
            return {"importance": _unit_score(value, "Importance")}
        if action == "update_confidence":
            return {"confidence": _unit_score(value, "Confidence")}
        if action == "change_tier":
            if value not in TIERS:
                msg = f"Invalid tier: {value!r}"
                raise MemoryValidationError(msg)
            unit = await self._require(memory_id)
            if not is_allowed_tier_transition(unit.tier, value):
                msg = (
                    f"Cannot move a memory from {unit.tier} to {value}; promote one tier at a time"
                )
                raise MemoryValidationError(msg)
            return {"tier": value}
        if action == "archive":
            return {"tier": TIER_ARCHIVED}
        if action == "unarchive":
            target = value or TIER_MEDIUM
            if target not in TIERS or target == TIER_ARCHIVED:
                msg = f"Invalid tier to restore to: {target!r}"
                raise MemoryValidationError(msg)
            unit = await self._require(memory_id)
            if unit.tier != TIER_ARCHIVED:
                msg = f"Memory {memory_id} is not archived (tier is {unit.tier})"
                raise MemoryValidationError(msg)
            return {"tier": target}

        # Tag edits need the current tag list.
        tag = _tag(value)
        unit = await self._require(memory_id)
        if action == "add_tag":
            return {"tags": [*unit.tags, tag]}
        return {"tags": [t for t in unit.tags if t != tag]}

    async def validate_memory(self, memory_id: str) -> OperationResult:
        """Mark a unit as verified: full confidence, validated flag set."""
        try:
            if not await self.store.update(memory_id, {"confidence": 1.0, "validated": True}):
                msg = f"Memory not found: {memory_id}"
                raise MemoryNotFoundError(msg)
        except Exception as exc:
            return self._failure("Validate", exc)
        return OperationResult(data={"memory_id": memory_id, "validated": True})

    async def invalidate_memory(self, memory_id: str) -> OperationResult:
        """Expire one unit immediately and drop its confidence to zero."""
        try:
            patch = {"confidence": 0.0, "expires_at": to_iso(utcnow())}
            if not await self.store.update(memory_id, patch):
                msg = f"Memory not found: {memory_id}"
                raise MemoryNotFoundError(msg)
        except Exception as exc:
            return self._failure("Invalidate", exc)
        return OperationResult(data={"memory_id": memory_id, "invalidated": True})

    # -- Maintenance -----------------------------------------------------------

    async def cleanup_expired(self) -> OperationResult:
        try:
            counts = await self.decay.run_expired_sweep()
        except Exception as exc:
            return self._failure("Cleanup", exc)
        return OperationResult(data=counts)

    async def cleanup_stale(
        self,
        age_in_days: int | None = None,
        confidence_threshold: float | None = None,
    ) -> OperationResult:
        try:
            if age_in_days is not None and age_in_days < 0:
                msg = "age_in_days must not be negative"
                raise MemoryValidationError(msg)
            if confidence_threshold is not None:
                confidence_threshold = _unit_score(confidence_threshold, "Confidence threshold")
            deleted = await self.decay.run_stale_sweep(age_in_days, confidence_threshold)
        except Exception as exc:
            return self._failure("Cleanup", exc)
        return OperationResult(data={"deleted": deleted})

    # -- Statistics ------------------------------------------------------------

    async def get_stats(self, detailed: bool = False) -> OperationResult:
        try:
            stats = await self.decay.compute_stats()
            data = stats.to_dict()
            data["performance"] = {
                "hit_rate": self.recall_engine.hit_rate,
                "hits": self.recall_engine.hits,
                "misses": self.recall_engine.misses,
                "avg_confidence": stats.avg_confidence,
                "estimated_savings_ms": stats.total_access_count
                * settings.estimated_ms_saved_per_hit,
            }
            if detailed:
                top = await self.store.find(
                    sort=[("access_count", "desc"), ("confidence", "desc")], limit=5
                )
                recent = await self.store.find(sort=[("created_at", "desc")], limit=5)
                data["top_memories"] = [self._brief(u) for u in top]
                data["recent_memories"] = [self._brief(u) for u in recent]
                data["tool_breakdown"] = await self.store.tool_breakdown()
                data["entity_breakdown"] = await self.store.entity_breakdown()
                data["usage_trend"] = await self.store.usage_trend(utcnow() - timedelta(days=7))
        except Exception as exc:
            return self._failure("Stats", exc)
        return OperationResult(data=data)

    @staticmethod
    def _brief(unit: MemoryUnit) -> dict[str, Any]:
        return {
            "id": unit.id,
            "type": unit.pattern.type,
            "summary": unit.summary,
            "tier": unit.tier,
            "confidence": unit.confidence,
            "access_count": unit.access_count,
            "created_at": unit.created_at,
        }

    # -- Entity change events --------------------------------------------------

    async def emit_entity_change_event(self, event: EntityChangeEvent) -> OperationResult:
        """Feed an entity change to the invalidation engine."""
        try:
            affected = await self.invalidation.process(event)
        except Exception as exc:
            return self._failure("Invalidation", exc)
        return OperationResult(data={"affected": affected})

    # -- Query contexts --------------------------------------------------------

    def create_context(self) -> str:
        return self.tracker.create_context()

    def get_context(self, context_id: str) -> QueryContext | None:
        return self.tracker.get_context(context_id)

    def add_step(
        self, context_id: str, tool_name: str, params: dict[str, Any] | None, result: Any
    ) -> QueryStep | None:
        return self.tracker.add_step(context_id, tool_name, params, result)

    def is_compound(self, context_id: str) -> bool:
        return self.tracker.is_compound(context_id)

    def complete_context(self, context_id: str) -> bool:
        return self.tracker.complete(context_id)

    def list_contexts(self) -> list[QueryContext]:
        return self.tracker.list_contexts()

    # -- Cached tool calls -----------------------------------------------------

    async def cached_call(
        self,
        tool_name: str,
        params: dict[str, Any] | None,
        execute: Callable[[dict[str, Any]], Awaitable[Any]],
        context_id: str | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> CachedCall:
        """Serve a tool call from memory when possible, otherwise run and remember it.

        Cache hits are not served for steps inside a compound context, whose
        answers depend on earlier steps.  Any memory failure degrades to
        running the tool.  Exceptions from *execute* propagate.
        """
        params = params or {}
        key = analyzer.fingerprint(tool_name, params)
        template = analyzer.template_fingerprint(
            tool_name, policy.abstract_params(tool_name, params)
        )
        cacheable = policy.is_cacheable(tool_name, params)
        compound = bool(context_id) and self.tracker.is_compound(context_id)

        outcome: CachedCall | None = None
        if cacheable and not compound:
            found = await self.recall(
                fingerprint=key,
                template_fingerprint=template,
                parameters=analyzer.canonicalize(params),
                context={"user_id": user_id},
            )
            if found.success and found.data["memories"]:
                memory = found.data["memories"][0]
                outcome = CachedCall(
                    result=memory["result"], from_cache=True, memory_id=memory["id"]
                )
                logger.info("Memory hit for %s (%s)", tool_name, memory["id"])

        if outcome is None:
            result = await execute(params)
            outcome = CachedCall(result=result, from_cache=False)
            if cacheable and result is not None:
                outcome.memory_id = await self._remember_call(
                    tool_name, params, result, key, template, user_id, session_id
                )

        if context_id:
            step = self.tracker.add_step(context_id, tool_name, params, outcome.result)
            outcome.step_id = step.id if step else None
        return outcome

    async def _remember_call(
        self,
        tool_name: str,
        params: dict[str, Any],
        result: Any,
        key: str,
        template: str,
        user_id: str | None,
        session_id: str | None,
    ) -> str | None:
        canonical = analyzer.canonicalize(params)
        dependencies = policy.extract_entity_dependencies(tool_name, params)
        tier = policy.storage_tier(tool_name, params)
        tags = policy.generate_tags(tool_name, params)
        if policy.is_volatile(tool_name, params):
            tags.append(TAG_VOLATILE)
        pattern = MemoryPattern(
            type=tool_name,
            keywords=[
                v
                for k, v in canonical.items()
                if k in analyzer.FREE_TEXT_KEYS and isinstance(v, str) and v
            ],
            involved_entities=[
                InvolvedEntity(type=d.entity_type, identifier=d.entity_id, role=d.role)
                for d in dependencies
            ],
        )
        learned = await self.learn(
            pattern=pattern,
            result=result,
            entities=dependencies,
            context=MemoryContext(source_tool=tool_name, session_id=session_id, user_id=user_id),
            confidence=policy.initial_confidence(tool_name, params),
            tier=tier,
            tags=tags,
            expires_at=policy.expiry_for(tier, tool_name, params),
            fingerprint=key,
            template_fingerprint=template,
            parameters=canonical,
        )
        if not learned.success:
            logger.warning("Could not remember %s result: %s", tool_name, learned.error)
            return None
        return learned.data["memory_id"]
