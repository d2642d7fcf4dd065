"""Memory tools — let the agent recall, teach, and maintain the memory cache.

Each tool is a thin wrapper over ``ReminisceService``; the service never
raises, so failures come back as ``ToolResult(error=...)``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field

from reminisce.memory.models import EntityRef, MemoryPattern
from reminisce.tools.base import ToolParams, ToolResult
from reminisce.tools.registry import registry

if TYPE_CHECKING:
    from reminisce.memory.service import OperationResult, ReminisceService

logger = logging.getLogger(__name__)

_CATEGORY = "memory"

# Set by init_memory_tools() during startup.
_service: ReminisceService | None = None


def init_memory_tools(service: ReminisceService) -> None:
    """Wire the memory service into the tool functions.

    Called once during startup, after the service is constructed.
    """
    global _service  # noqa: PLW0603
    _service = service


def _get_service() -> ReminisceService:
    if _service is None:
        msg = "Memory not initialised — call init_memory_tools() first"
        raise RuntimeError(msg)
    return _service


def _to_tool_result(outcome: OperationResult) -> ToolResult:
    if not outcome.success:
        return ToolResult(error=outcome.error)
    return ToolResult(data=outcome.data)


class EntityParam(ToolParams):
    entity_id: str = Field(description="ID of the entity")
    entity_type: str = Field(
        description="Entity type: item, location, contact, task, biodata, note"
    )
    role: str | None = Field(default=None, description="Role of the entity in the memory")


def _entity_refs(entities: list[dict[str, Any]] | None) -> list[EntityRef]:
    return [EntityRef.from_dict(e) for e in entities or []]


# -- reminisce_recall ----------------------------------------------------------


class RecallParams(ToolParams):
    pattern_type: str | None = Field(
        default=None, description="Kind of memory to look for, usually the tool name"
    )
    intent: str | None = Field(default=None, description="Intent to match (partial match)")
    keywords: list[str] = Field(
        default_factory=list, description="Keywords that must all appear (partial match)"
    )
    text_query: str | None = Field(
        default=None, description="Free text matched against summaries, intents and keywords"
    )
    entities: list[EntityParam] = Field(
        default_factory=list, description="Entities every returned memory must reference"
    )
    min_confidence: float | None = Field(
        default=None, ge=0, le=1, description="Minimum confidence (default 0.7)"
    )
    tiers: list[str] | None = Field(default=None, description="Restrict to these tiers")
    limit: int = Field(default=5, ge=1, le=50, description="Maximum number of results")
    include_archived: bool = Field(default=False, description="Also search archived memories")


@registry.tool(
    name="reminisce_recall",
    description=(
        "Search cached memories of earlier tool results. Use before repeating an "
        "expensive lookup. Returns matching memories, best first; an empty list "
        "means nothing trustworthy is remembered."
    ),
    category=_CATEGORY,
    params_model=RecallParams,
)
async def reminisce_recall(
    pattern_type: str | None = None,
    intent: str | None = None,
    keywords: list[str] | None = None,
    text_query: str | None = None,
    entities: list[dict[str, Any]] | None = None,
    min_confidence: float | None = None,
    tiers: list[str] | None = None,
    limit: int = 5,
    include_archived: bool = False,
) -> ToolResult:
    pattern = None
    if pattern_type or intent or keywords:
        pattern = MemoryPattern(type=pattern_type or "", intent=intent, keywords=keywords or [])
    outcome = await _get_service().recall(
        pattern=pattern,
        text_query=text_query,
        entities=_entity_refs(entities),
        min_confidence=min_confidence,
        tiers=tiers,
        limit=limit,
        include_archived=include_archived,
    )
    return _to_tool_result(outcome)


# -- reminisce_learn -----------------------------------------------------------


class LearnParams(ToolParams):
    pattern_type: str = Field(description="Kind of memory, usually the tool name")
    intent: str | None = Field(default=None, description="What the initiating request wanted")
    keywords: list[str] = Field(default_factory=list, description="Keywords for later recall")
    result: Any = Field(description="The result to remember")
    summary: str | None = Field(default=None, description="Short synopsis of the result")
    entities: list[EntityParam] = Field(
        default_factory=list, description="Entities the result depends on"
    )
    importance: float | None = Field(default=None, description="Priority between 0 and 1")
    confidence: float | None = Field(default=None, description="Trust between 0 and 1")
    tier: Literal["short", "medium", "long", "archived"] | None = Field(
        default=None, description="Retention tier (default medium)"
    )
    tags: list[str] = Field(default_factory=list, description="Free-form labels")
    expires_at: str | None = Field(
        default=None, description="ISO 8601 expiry; derived from the tier when omitted"
    )


@registry.tool(
    name="reminisce_learn",
    description=(
        "Remember a result so it can be recalled later without recomputing it. "
        "List the entities it depends on so it is invalidated when they change."
    ),
    category=_CATEGORY,
    params_model=LearnParams,
)
async def reminisce_learn(
    pattern_type: str,
    result: Any,
    intent: str | None = None,
    keywords: list[str] | None = None,
    summary: str | None = None,
    entities: list[dict[str, Any]] | None = None,
    importance: float | None = None,
    confidence: float | None = None,
    tier: str | None = None,
    tags: list[str] | None = None,
    expires_at: str | None = None,
) -> ToolResult:
    outcome = await _get_service().learn(
        pattern=MemoryPattern(type=pattern_type, intent=intent, keywords=keywords or []),
        result=result,
        summary=summary,
        entities=_entity_refs(entities),
        importance=importance,
        confidence=confidence,
        tier=tier,
        tags=tags,
        expires_at=expires_at,
    )
    if not outcome.success:
        return ToolResult(error=outcome.error)
    return ToolResult(data={"learned": True, "memory_id": outcome.data["memory_id"]})


# -- reminisce_manage ----------------------------------------------------------


class ManageParams(ToolParams):
    memory_id: str = Field(description="ID of the memory to change")
    action: Literal[
        "update_importance",
        "update_confidence",
        "change_tier",
        "add_tag",
        "remove_tag",
        "archive",
        "unarchive",
    ] = Field(description="What to change")
    value: float | str | None = Field(
        default=None,
        description=(
            "Score between 0 and 1 for update_importance/update_confidence, tier name "
            "for change_tier/unarchive, tag text for add_tag/remove_tag"
        ),
    )


@registry.tool(
    name="reminisce_manage",
    description="Change a memory's importance, confidence, tier or tags, or archive it.",
    category=_CATEGORY,
    params_model=ManageParams,
)
async def reminisce_manage(
    memory_id: str, action: str, value: float | str | None = None
) -> ToolResult:
    return _to_tool_result(await _get_service().manage(memory_id, action, value))


# -- memory_status -------------------------------------------------------------


class StatusParams(ToolParams):
    detailed: bool = Field(
        default=False,
        description="Include top and recent memories, breakdowns and the 7-day trend",
    )


@registry.tool(
    name="memory_status",
    description="Report memory cache statistics: counts by tier and confidence, hit rate.",
    category=_CATEGORY,
    params_model=StatusParams,
)
async def memory_status(detailed: bool = False) -> ToolResult:
    return _to_tool_result(await _get_service().get_stats(detailed=detailed))


# -- memory_maintenance --------------------------------------------------------


class MaintenanceParams(ToolParams):
    action: Literal["cleanup_expired", "cleanup_stale", "validate", "invalidate"] = Field(
        description="Maintenance operation to run"
    )
    memory_id: str | None = Field(
        default=None, description="Memory to validate or invalidate"
    )
    age_in_days: int | None = Field(
        default=None, description="cleanup_stale: unused for at least this many days"
    )
    confidence_threshold: float | None = Field(
        default=None, description="cleanup_stale: only delete memories below this confidence"
    )


@registry.tool(
    name="memory_maintenance",
    description=(
        "Run memory maintenance by hand: clear expired or stale memories, mark a "
        "memory verified, or invalidate one that is known to be wrong."
    ),
    category=_CATEGORY,
    params_model=MaintenanceParams,
)
async def memory_maintenance(
    action: str,
    memory_id: str | None = None,
    age_in_days: int | None = None,
    confidence_threshold: float | None = None,
) -> ToolResult:
    service = _get_service()
    if action == "cleanup_expired":
        return _to_tool_result(await service.cleanup_expired())
    if action == "cleanup_stale":
        return _to_tool_result(await service.cleanup_stale(age_in_days, confidence_threshold))

    if not memory_id:
        return ToolResult(error=f"memory_id is required for {action}")
    if action == "validate":
        return _to_tool_result(await service.validate_memory(memory_id))
    return _to_tool_result(await service.invalidate_memory(memory_id))
