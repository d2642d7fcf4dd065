"""Memory unit data model and entity change events."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# -- Tiers -------------------------------------------------------------------

TIER_SHORT = "short"
TIER_MEDIUM = "medium"
TIER_LONG = "long"
TIER_ARCHIVED = "archived"

TIERS = (TIER_SHORT, TIER_MEDIUM, TIER_LONG, TIER_ARCHIVED)

_TIER_RANK = {TIER_SHORT: 0, TIER_MEDIUM: 1, TIER_LONG: 2}

# Units carrying this tag hold fast-changing data and are never promoted by usage.
TAG_VOLATILE = "volatile"

# -- Entity change events ----------------------------------------------------

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_DELETED = "deleted"
EVENT_TRANSFERRED = "transferred"
EVENT_STATUS_CHANGED = "statusChanged"
EVENT_NOTE_ADDED = "noteAdded"


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO string (sortable as text)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def normalize_iso(value: str | datetime | None) -> str | None:
    """Return *value* in the canonical stored form, or None."""
    dt = parse_iso(value)
    return to_iso(dt) if dt else None


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


def is_allowed_tier_transition(current: str, new: str) -> bool:
    """Whether a unit may move from *current* to *new*.

    Promotion goes one step at a time (short → medium → long). Any tier may
    be archived or downgraded to short. Archived units may be restored to
    any live tier.
    """
    if new not in TIERS:
        return False
    if new in (current, TIER_ARCHIVED, TIER_SHORT):
        return True
    if current == TIER_ARCHIVED:
        return True
    return _TIER_RANK.get(new, -1) == _TIER_RANK.get(current, -2) + 1


def make_memory_id() -> str:
    """Generate a new memory unit ID."""
    return uuid.uuid4().hex


# -- Value objects -------------------------------------------------------------


@dataclass
class InvolvedEntity:
    """A fuzzy entity reference inside a pattern (used for retrieval only)."""

    type: str
    identifier: str | None = None
    attributes: dict[str, Any] | None = None
    role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "identifier": self.identifier,
            "attributes": self.attributes,
            "role": self.role,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InvolvedEntity:
        return cls(
            type=data.get("type", ""),
            identifier=data.get("identifier"),
            attributes=data.get("attributes"),
            role=data.get("role"),
        )


@dataclass
class MemoryPattern:
    """Structured descriptor used for non-exact retrieval matching."""

    type: str
    intent: str | None = None
    keywords: list[str] = field(default_factory=list)
    involved_entities: list[InvolvedEntity] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "intent": self.intent,
            "keywords": list(self.keywords),
            "involved_entities": [e.to_dict() for e in self.involved_entities],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryPattern:
        return cls(
            type=data.get("type", ""),
            intent=data.get("intent"),
            keywords=list(data.get("keywords") or []),
            involved_entities=[
                InvolvedEntity.from_dict(e) for e in data.get("involved_entities") or []
            ],
        )


@dataclass
class EntityRef:
    """A concrete entity a memory unit is anchored to."""

    entity_id: str
    entity_type: str
    role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "entity_type": self.entity_type, "role": self.role}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityRef:
        return cls(
            entity_id=str(data.get("entity_id", "")),
            entity_type=data.get("entity_type", ""),
            role=data.get("role"),
        )


@dataclass
class Relationship:
    """An asserted fact between two entities."""

    source_entity_id: str
    type: str
    target_entity_id: str
    direction: str = "to"  # "to", "from" or "bi"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_entity_id": self.source_entity_id,
            "type": self.type,
            "target_entity_id": self.target_entity_id,
            "direction": self.direction,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Relationship:
        return cls(
            source_entity_id=str(data.get("source_entity_id", "")),
            type=data.get("type", ""),
            target_entity_id=str(data.get("target_entity_id", "")),
            direction=data.get("direction") or "to",
        )


@dataclass
class MemoryContext:
    """Where a memory came from."""

    source_tool: str = ""
    session_id: str | None = None
    conversation_id: str | None = None
    user_id: str | None = None
    user_input: str | None = None
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = to_iso(utcnow())

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_tool": self.source_tool,
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "user_input": self.user_input,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryContext:
        return cls(
            source_tool=data.get("source_tool") or "",
            session_id=data.get("session_id"),
            conversation_id=data.get("conversation_id"),
            user_id=data.get("user_id"),
            user_input=data.get("user_input"),
            timestamp=data.get("timestamp") or "",
        )


# -- Memory unit ---------------------------------------------------------------


@dataclass
class MemoryUnit:
    """A cached tool outcome plus everything needed to trust, find and expire it.

    Attributes:
        id: Unique identifier (UUID hex), assigned by the store.
        pattern: Retrieval descriptor.
        result: The cached tool output (any JSON-serialisable value).
        summary: Short synopsis of the result.
        entities: Concrete entities the unit depends on.
        relationships: Facts asserted between entities.
        context: Origin of the unit.
        confidence: Trust in correctness, in [0, 1].
        importance: Caller-assigned priority, in [0, 1].
        tier: ``short``, ``medium``, ``long`` or ``archived``. Empty means
            "use the store default".
        fingerprint: Exact-match key for units learned from a tool call.
        template_fingerprint: Key shared by tool calls with the same abstracted
            parameters.
        parameters: Canonical parameters of the tool call the unit came from.
        validated: Whether the result was explicitly verified.
        last_accessed: ISO timestamp of the last recall hit.
        access_count: Number of recall hits.
        related_memories: IDs of associated units.
        expires_at: ISO timestamp after which the unit is not served.
        tags: Free-form labels.
        created_at: ISO timestamp.
        updated_at: ISO timestamp.
    """

    pattern: MemoryPattern
    result: Any = None
    id: str = ""
    summary: str = ""
    entities: list[EntityRef] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
    context: MemoryContext = field(default_factory=MemoryContext)
    confidence: float = 0.5
    importance: float = 0.5
    tier: str = ""
    fingerprint: str | None = None
    template_fingerprint: str | None = None
    parameters: dict[str, Any] | None = None
    validated: bool = False
    last_accessed: str | None = None
    access_count: int = 0
    related_memories: list[str] = field(default_factory=list)
    expires_at: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    # -- Convenience -----------------------------------------------------------

    def is_expired(self, now: datetime | None = None) -> bool:
        expires = parse_iso(self.expires_at)
        if expires is None:
            return False
        return expires <= (now or utcnow())

    def is_servable(self, min_confidence: float, now: datetime | None = None) -> bool:
        """Read-time check: trusted enough and not past its expiry."""
        return self.confidence >= min_confidence and not self.is_expired(now)

    def references(self, entity_type: str, entity_id: str) -> bool:
        return any(
            e.entity_type == entity_type and e.entity_id == entity_id for e in self.entities
        )

    # -- Serialization ---------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern.to_dict(),
            "result": self.result,
            "summary": self.summary,
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_dict() for r in self.relationships],
            "context": self.context.to_dict(),
            "confidence": self.confidence,
            "importance": self.importance,
            "tier": self.tier,
            "fingerprint": self.fingerprint,
            "template_fingerprint": self.template_fingerprint,
            "parameters": self.parameters,
            "validated": self.validated,
            "last_accessed": self.last_accessed,
            "access_count": self.access_count,
            "related_memories": list(self.related_memories),
            "expires_at": self.expires_at,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``memories`` column order."""
        return (
            self.id,
            self.fingerprint,
            self.pattern.type,
            self.pattern.intent,
            json.dumps(self.pattern.to_dict()),
            json.dumps([e.to_dict() for e in self.entities]),
            json.dumps([r.to_dict() for r in self.relationships]),
            json.dumps(self.result, default=str),
            self.summary,
            json.dumps(self.context.to_dict()),
            self.context.source_tool,
            self.context.session_id,
            self.context.user_id,
            self.context.conversation_id,
            self.confidence,
            self.importance,
            self.tier,
            int(self.validated),
            self.last_accessed,
            self.access_count,
            json.dumps(self.related_memories),
            self.expires_at,
            json.dumps(self.tags),
            self.created_at,
            self.updated_at,
            self.template_fingerprint,
            json.dumps(self.parameters, default=str) if self.parameters is not None else None,
        )

    @classmethod
    def from_row(cls, row: tuple) -> MemoryUnit:
        """Deserialize from a ``SELECT *`` row tuple."""
        return cls(
            id=row[0],
            fingerprint=row[1],
            pattern=MemoryPattern.from_dict(json.loads(row[4])),
            entities=[EntityRef.from_dict(e) for e in json.loads(row[5] or "[]")],
            relationships=[Relationship.from_dict(r) for r in json.loads(row[6] or "[]")],
            result=json.loads(row[7]) if row[7] is not None else None,
            summary=row[8] or "",
            context=MemoryContext.from_dict(json.loads(row[9] or "{}")),
            confidence=float(row[14]),
            importance=float(row[15]),
            tier=row[16],
            validated=bool(row[17]),
            last_accessed=row[18],
            access_count=int(row[19] or 0),
            related_memories=json.loads(row[20] or "[]"),
            expires_at=row[21],
            tags=json.loads(row[22] or "[]"),
            created_at=row[23],
            updated_at=row[24],
            template_fingerprint=row[25],
            parameters=json.loads(row[26]) if row[26] is not None else None,
        )


# -- Events --------------------------------------------------------------------


@dataclass
class EntityChangeEvent:
    """Emitted by entity collaborators whenever an entity changes.

    Attributes:
        entity_type: e.g. ``"item"``, ``"location"``, ``"task"``.
        entity_id: ID of the changed entity.
        event_type: One of the ``EVENT_*`` constants.
        timestamp: ISO timestamp of the change (defaults to now).
        details: Event-specific extras, e.g. ``{"statusChanged": True}``.
    """

    entity_type: str
    entity_id: str
    event_type: str
    timestamp: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.entity_id = str(self.entity_id)
        self.timestamp = normalize_iso(self.timestamp) or to_iso(utcnow())

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.event_type)
