"""MemoryStore — libsql persistence for memory units.

Scalar columns carry everything that is filtered or sorted on; nested
structures are stored as JSON text.  Three side tables index anchor entities,
pattern keywords and pattern entities so membership lookups hit an index
instead of scanning JSON.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from reminisce.config import settings
from reminisce.db import get_connection
from reminisce.memory.errors import MemoryValidationError, ReminisceError, TransientStoreError
from reminisce.memory.models import (
    TAG_VOLATILE,
    TIER_ARCHIVED,
    TIER_LONG,
    TIER_MEDIUM,
    TIER_SHORT,
    TIERS,
    EntityRef,
    InvolvedEntity,
    MemoryContext,
    MemoryPattern,
    MemoryUnit,
    Relationship,
    clamp_unit,
    make_memory_id,
    normalize_iso,
    to_iso,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS memories (
        id               TEXT PRIMARY KEY,
        fingerprint      TEXT,
        pattern_type     TEXT NOT NULL,
        pattern_intent   TEXT,
        pattern          TEXT NOT NULL,
        entities         TEXT NOT NULL DEFAULT '[]',
        relationships    TEXT NOT NULL DEFAULT '[]',
        result           TEXT,
        summary          TEXT NOT NULL DEFAULT '',
        context          TEXT NOT NULL DEFAULT '{}',
        source_tool      TEXT NOT NULL DEFAULT '',
        session_id       TEXT,
        user_id          TEXT,
        conversation_id  TEXT,
        confidence       REAL NOT NULL,
        importance       REAL NOT NULL,
        tier             TEXT NOT NULL,
        validated        INTEGER NOT NULL DEFAULT 0,
        last_accessed    TEXT,
        access_count     INTEGER NOT NULL DEFAULT 0,
        related_memories TEXT NOT NULL DEFAULT '[]',
        expires_at       TEXT,
        tags             TEXT NOT NULL DEFAULT '[]',
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL,
        template_fingerprint TEXT,
        parameters       TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memory_entities (
        memory_id   TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id   TEXT NOT NULL,
        role        TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memory_keywords (
        memory_id TEXT NOT NULL,
        keyword   TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memory_involved (
        memory_id   TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        identifier  TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_fingerprint ON memories (fingerprint)",
    "CREATE INDEX IF NOT EXISTS idx_memories_template ON memories (template_fingerprint)",
    "CREATE INDEX IF NOT EXISTS idx_memories_pattern ON memories (pattern_type, pattern_intent)",
    "CREATE INDEX IF NOT EXISTS idx_memories_tier ON memories (tier)",
    "CREATE INDEX IF NOT EXISTS idx_memories_expires ON memories (expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_memories_last_accessed ON memories (last_accessed)",
    "CREATE INDEX IF NOT EXISTS idx_memories_user ON memories (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_session ON memories (session_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_source_tool ON memories (source_tool)",
    "CREATE INDEX IF NOT EXISTS idx_memory_entities_entity"
    " ON memory_entities (entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_entities_memory ON memory_entities (memory_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_keywords_keyword ON memory_keywords (keyword)",
    "CREATE INDEX IF NOT EXISTS idx_memory_keywords_memory ON memory_keywords (memory_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_involved_memory ON memory_involved (memory_id)",
    """
    CREATE TRIGGER IF NOT EXISTS memories_drop_index_rows
    AFTER DELETE ON memories
    BEGIN
        DELETE FROM memory_entities WHERE memory_id = OLD.id;
        DELETE FROM memory_keywords WHERE memory_id = OLD.id;
        DELETE FROM memory_involved WHERE memory_id = OLD.id;
    END
    """,
]

_COLUMNS = (
    "id, fingerprint, pattern_type, pattern_intent, pattern, entities, relationships,"
    " result, summary, context, source_tool, session_id, user_id, conversation_id,"
    " confidence, importance, tier, validated, last_accessed, access_count,"
    " related_memories, expires_at, tags, created_at, updated_at, template_fingerprint,"
    " parameters"
)
_COLUMN_COUNT = 27

# Load-bearing: recall prefers trustworthy, frequently used, recent memories.
DEFAULT_SORT: list[tuple[str, str]] = [
    ("importance", "desc"),
    ("confidence", "desc"),
    ("last_accessed", "desc"),
    ("created_at", "desc"),
]

_SORTABLE = frozenset({
    "importance",
    "confidence",
    "last_accessed",
    "access_count",
    "created_at",
    "updated_at",
    "expires_at",
})

# Patch fields mapped straight onto a column.
_SIMPLE_PATCH = {
    "summary": ("summary", str),
    "confidence": ("confidence", clamp_unit),
    "importance": ("importance", clamp_unit),
    "fingerprint": ("fingerprint", lambda v: v),
    "validated": ("validated", lambda v: int(bool(v))),
    "last_accessed": ("last_accessed", normalize_iso),
    "access_count": ("access_count", int),
    "expires_at": ("expires_at", normalize_iso),
    "related_memories": ("related_memories", lambda v: json.dumps([str(i) for i in v])),
    "tags": ("tags", lambda v: json.dumps(list(dict.fromkeys(v)))),
    "result": ("result", lambda v: json.dumps(v, default=str)),
}

_PATCHABLE = frozenset({*_SIMPLE_PATCH, "tier", "pattern", "entities", "relationships", "context"})


def _like(value: str) -> str:
    """Wrap *value* for a case-insensitive ``LIKE … ESCAPE '\\'`` substring match."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


@dataclass
class MemoryFilter:
    """Predicates for ``MemoryStore.find``; unset fields do not constrain.

    Text predicates on the pattern (type, intent, keywords, involved entity
    identifiers) are case-insensitive substring matches.  ``entities`` must all
    be present on a unit; ``any_entities`` needs at least one.
    """

    ids: list[str] | None = None
    exclude_ids: list[str] | None = None
    fingerprint: str | None = None
    template_fingerprint: str | None = None
    pattern_type: str | None = None
    pattern_intent: str | None = None
    keywords: list[str] = field(default_factory=list)
    involved_entities: list[InvolvedEntity] = field(default_factory=list)
    entities: list[EntityRef] = field(default_factory=list)
    any_entities: list[EntityRef] = field(default_factory=list)
    tiers: list[str] | None = None
    exclude_tiers: list[str] | None = None
    min_confidence: float | None = None
    user_id: str | None = None
    session_id: str | None = None
    source_tool: str | None = None
    tags_any: list[str] | None = None
    text: str | None = None
    not_expired_at: str | None = None

    def to_sql(self) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        if self.ids is not None:
            if not self.ids:
                clauses.append("0")
            else:
                clauses.append(f"m.id IN ({_placeholders(len(self.ids))})")
                params.extend(self.ids)
        if self.exclude_ids:
            clauses.append(f"m.id NOT IN ({_placeholders(len(self.exclude_ids))})")
            params.extend(self.exclude_ids)
        if self.fingerprint:
            clauses.append("m.fingerprint = ?")
            params.append(self.fingerprint)
        if self.template_fingerprint:
            clauses.append("m.template_fingerprint = ?")
            params.append(self.template_fingerprint)
        if self.pattern_type:
            clauses.append("m.pattern_type LIKE ? ESCAPE '\\'")
            params.append(_like(self.pattern_type))
        if self.pattern_intent:
            clauses.append("m.pattern_intent LIKE ? ESCAPE '\\'")
            params.append(_like(self.pattern_intent))
        for keyword in self.keywords:
            clauses.append(
                "EXISTS (SELECT 1 FROM memory_keywords k"
                " WHERE k.memory_id = m.id AND k.keyword LIKE ? ESCAPE '\\')"
            )
            params.append(_like(keyword))
        for involved in self.involved_entities:
            sub = (
                "SELECT 1 FROM memory_involved v"
                " WHERE v.memory_id = m.id AND v.entity_type = ? COLLATE NOCASE"
            )
            params.append(involved.type)
            if involved.identifier:
                sub += " AND v.identifier LIKE ? ESCAPE '\\'"
                params.append(_like(involved.identifier))
            clauses.append(f"EXISTS ({sub})")
        for entity in self.entities:
            clauses.append(
                "EXISTS (SELECT 1 FROM memory_entities e"
                " WHERE e.memory_id = m.id AND e.entity_type = ? AND e.entity_id = ?)"
            )
            params.extend([entity.entity_type, entity.entity_id])
        if self.any_entities:
            pair = "(e.entity_type = ? AND e.entity_id = ?)"
            pairs = " OR ".join(pair for _ in self.any_entities)
            clauses.append(
                f"EXISTS (SELECT 1 FROM memory_entities e WHERE e.memory_id = m.id AND ({pairs}))"
            )
            for entity in self.any_entities:
                params.extend([entity.entity_type, entity.entity_id])
        if self.tiers is not None:
            clauses.append(f"m.tier IN ({_placeholders(len(self.tiers))})" if self.tiers else "0")
            params.extend(self.tiers)
        if self.exclude_tiers:
            clauses.append(f"m.tier NOT IN ({_placeholders(len(self.exclude_tiers))})")
            params.extend(self.exclude_tiers)
        if self.min_confidence is not None:
            clauses.append("m.confidence >= ?")
            params.append(self.min_confidence)
        if self.user_id:
            clauses.append("m.user_id = ?")
            params.append(self.user_id)
        if self.session_id:
            clauses.append("m.session_id = ?")
            params.append(self.session_id)
        if self.source_tool:
            clauses.append("m.source_tool = ?")
            params.append(self.source_tool)
        if self.tags_any:
            tag_sql = " OR ".join("m.tags LIKE ? ESCAPE '\\'" for _ in self.tags_any)
            clauses.append(f"({tag_sql})")
            params.extend(_like(json.dumps(tag)) for tag in self.tags_any)
        if self.text:
            clauses.append(
                "(m.summary LIKE ? ESCAPE '\\' OR m.pattern_intent LIKE ? ESCAPE '\\'"
                " OR EXISTS (SELECT 1 FROM memory_keywords k"
                " WHERE k.memory_id = m.id AND k.keyword LIKE ? ESCAPE '\\'))"
            )
            params.extend([_like(self.text)] * 3)
        if self.not_expired_at:
            clauses.append("(m.expires_at IS NULL OR m.expires_at > ?)")
            params.append(normalize_iso(self.not_expired_at))

        where = " AND ".join(clauses) if clauses else "1"
        return where, params


def _order_by(sort: list[tuple[str, str]] | None) -> str:
    parts = []
    for column, direction in sort or DEFAULT_SORT:
        if column not in _SORTABLE:
            msg = f"Cannot sort memories by {column!r}"
            raise MemoryValidationError(msg)
        parts.append(f"m.{column} {'ASC' if direction.lower() == 'asc' else 'DESC'}")
    return ", ".join(parts)


def _entity_match_sql(
    entity_type: str, entity_id: str | None, tags_any: list[str] | None
) -> tuple[str, list[Any]]:
    """WHERE fragment for invalidation: units depending on an entity (or type)."""
    if entity_id is None:
        sql = (
            "EXISTS (SELECT 1 FROM memory_entities e"
            " WHERE e.memory_id = memories.id AND e.entity_type = ?)"
        )
        params: list[Any] = [entity_type]
    else:
        sql = (
            "EXISTS (SELECT 1 FROM memory_entities e"
            " WHERE e.memory_id = memories.id AND e.entity_type = ? AND e.entity_id = ?)"
        )
        params = [entity_type, entity_id]
    if tags_any:
        sql += " AND (" + " OR ".join("tags LIKE ? ESCAPE '\\'" for _ in tags_any) + ")"
        params.extend(_like(json.dumps(tag)) for tag in tags_any)
    return sql, params


class MemoryStore:
    """Persists memory units in SQLite / Turso.

    Constructed explicitly and shared by the recall, invalidation and decay
    components.  Pass an explicit *db_path* for test isolation
    (e.g. ``tmp_path / "test.db"``).

    Operations on one store run one at a time: each holds the store's lock
    for its whole connection, so no two of them ever contend for the
    database's write lock.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False
        self._lock = asyncio.Lock()

    # -- Internal helpers ------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[Any]:
        """Exclusive connection; driver failures surface as TransientStoreError."""
        async with self._lock:
            try:
                db = await get_connection(local_path_override=self._db_path)
            except Exception as exc:
                msg = "Memory storage is unavailable"
                raise TransientStoreError(msg) from exc
            try:
                if not self._initialised:
                    await db.execute_all(_SCHEMA)
                    await db.commit()
                    self._initialised = True
                yield db
            except ReminisceError:
                raise
            except Exception as exc:
                msg = f"Memory storage error: {exc}"
                raise TransientStoreError(msg) from exc
            finally:
                await db.close()

    @staticmethod
    async def _write_index_rows(
        db,  # noqa: ANN001
        memory_id: str,
        pattern: MemoryPattern | None = None,
        entities: list[EntityRef] | None = None,
    ) -> None:
        if entities is not None:
            await db.execute("DELETE FROM memory_entities WHERE memory_id = ?", (memory_id,))
            for entity in entities:
                await db.execute(
                    "INSERT INTO memory_entities (memory_id, entity_type, entity_id, role)"
                    " VALUES (?, ?, ?, ?)",
                    (memory_id, entity.entity_type, entity.entity_id, entity.role),
                )
        if pattern is not None:
            await db.execute("DELETE FROM memory_keywords WHERE memory_id = ?", (memory_id,))
            await db.execute("DELETE FROM memory_involved WHERE memory_id = ?", (memory_id,))
            for keyword in dict.fromkeys(pattern.keywords):
                await db.execute(
                    "INSERT INTO memory_keywords (memory_id, keyword) VALUES (?, ?)",
                    (memory_id, keyword),
                )
            for involved in pattern.involved_entities:
                await db.execute(
                    "INSERT INTO memory_involved (memory_id, entity_type, identifier)"
                    " VALUES (?, ?, ?)",
                    (memory_id, involved.type, involved.identifier),
                )

    # -- CRUD ------------------------------------------------------------------

    async def create(self, unit: MemoryUnit) -> str:
        """Insert a new unit and return its ID.

        Stamps ``created_at``/``updated_at``, fills the default tier and clamps
        confidence and importance into [0, 1].
        """
        if not unit.pattern.type:
            msg = "A memory pattern needs a type"
            raise MemoryValidationError(msg)
        if unit.tier and unit.tier not in TIERS:
            msg = f"Invalid tier: {unit.tier!r}"
            raise MemoryValidationError(msg)

        now = to_iso(utcnow())
        unit.id = unit.id or make_memory_id()
        unit.tier = unit.tier or settings.default_tier
        unit.confidence = clamp_unit(unit.confidence)
        unit.importance = clamp_unit(unit.importance)
        unit.expires_at = normalize_iso(unit.expires_at)
        unit.last_accessed = normalize_iso(unit.last_accessed)
        unit.created_at = now
        unit.updated_at = now

        async with self._session() as db:
            await db.execute(
                f"INSERT INTO memories ({_COLUMNS}) VALUES ({_placeholders(_COLUMN_COUNT)})",
                unit.to_row(),
            )
            await self._write_index_rows(db, unit.id, unit.pattern, unit.entities)
            await db.commit()
        logger.debug("Stored memory %s (%s, tier=%s)", unit.id, unit.pattern.type, unit.tier)
        return unit.id

    async def get_by_id(self, memory_id: str) -> MemoryUnit | None:
        """Fetch a unit by ID, or None if not found."""
        async with self._session() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
            )
            row = await cursor.fetchone()
        return MemoryUnit.from_row(row) if row else None

    async def find(
        self,
        memory_filter: MemoryFilter | None = None,
        sort: list[tuple[str, str]] | None = None,
        limit: int | None = 10,
    ) -> list[MemoryUnit]:
        """Return units matching *memory_filter*, ordered by *sort* (default ``DEFAULT_SORT``)."""
        where, params = (memory_filter or MemoryFilter()).to_sql()
        sql = f"SELECT {_COLUMNS} FROM memories m WHERE {where} ORDER BY {_order_by(sort)}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        async with self._session() as db:
            cursor = await db.execute(sql, tuple(params))
            rows = await cursor.fetchall()
        return [MemoryUnit.from_row(row) for row in rows]

    async def count(self, memory_filter: MemoryFilter | None = None) -> int:
        where, params = (memory_filter or MemoryFilter()).to_sql()
        async with self._session() as db:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM memories m WHERE {where}", tuple(params)
            )
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def update(self, memory_id: str, patch: dict[str, Any]) -> bool:
        """Apply a field patch. Returns True if the unit exists.

        ``updated_at`` is always refreshed; confidence and importance are
        clamped rather than rejected.
        """
        unknown = set(patch) - _PATCHABLE
        if unknown:
            msg = f"Cannot patch memory fields: {', '.join(sorted(unknown))}"
            raise MemoryValidationError(msg)

        sets: list[str] = []
        params: list[Any] = []
        pattern: MemoryPattern | None = None
        entities: list[EntityRef] | None = None

        for key, value in patch.items():
            if key in _SIMPLE_PATCH:
                column, convert = _SIMPLE_PATCH[key]
                sets.append(f"{column} = ?")
                params.append(convert(value) if value is not None else None)
            elif key == "tier":
                if value not in TIERS:
                    msg = f"Invalid tier: {value!r}"
                    raise MemoryValidationError(msg)
                sets.append("tier = ?")
                params.append(value)
            elif key == "pattern":
                pattern = (
                    value if isinstance(value, MemoryPattern) else MemoryPattern.from_dict(value)
                )
                sets.extend(["pattern_type = ?", "pattern_intent = ?", "pattern = ?"])
                params.extend([pattern.type, pattern.intent, json.dumps(pattern.to_dict())])
            elif key == "entities":
                entities = [
                    e if isinstance(e, EntityRef) else EntityRef.from_dict(e) for e in value
                ]
                sets.append("entities = ?")
                params.append(json.dumps([e.to_dict() for e in entities]))
            elif key == "relationships":
                rels = [
                    r if isinstance(r, Relationship) else Relationship.from_dict(r) for r in value
                ]
                sets.append("relationships = ?")
                params.append(json.dumps([r.to_dict() for r in rels]))
            elif key == "context":
                ctx = value if isinstance(value, MemoryContext) else MemoryContext.from_dict(value)
                sets.extend([
                    "context = ?",
                    "source_tool = ?",
                    "session_id = ?",
                    "user_id = ?",
                    "conversation_id = ?",
                ])
                params.extend([
                    json.dumps(ctx.to_dict()),
                    ctx.source_tool,
                    ctx.session_id,
                    ctx.user_id,
                    ctx.conversation_id,
                ])

        sets.append("updated_at = ?")
        params.append(to_iso(utcnow()))
        params.append(memory_id)

        async with self._session() as db:
            cursor = await db.execute(
                f"UPDATE memories SET {', '.join(sets)} WHERE id = ?", tuple(params)
            )
            updated = cursor.rowcount > 0
            if updated and (pattern is not None or entities is not None):
                await self._write_index_rows(db, memory_id, pattern, entities)
            await db.commit()
        return updated

    async def delete(self, memory_id: str) -> bool:
        """Delete a unit. Returns True if a row was removed."""
        async with self._session() as db:
            cursor = await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted memory: %s", memory_id)
        return deleted

    async def find_related(self, memory_id: str, depth: int = 1) -> list[MemoryUnit]:
        """Resolve ``related_memories`` links, breadth-first up to *depth* hops."""
        origin = await self.get_by_id(memory_id)
        if origin is None:
            return []

        seen = {origin.id}
        frontier = [i for i in origin.related_memories if i not in seen]
        found: list[MemoryUnit] = []
        for _ in range(max(depth, 1)):
            if not frontier:
                break
            units = await self.find(MemoryFilter(ids=frontier), limit=None)
            seen.update(frontier)
            found.extend(units)
            frontier = list(
                dict.fromkeys(i for u in units for i in u.related_memories if i not in seen)
            )
        return found

    # -- Usage and links -------------------------------------------------------

    async def record_access(self, memory_ids: list[str], when: datetime | None = None) -> int:
        """Count a recall hit for each unit, then promote units that earned it.

        Returns the number of units whose access was recorded.
        """
        if not memory_ids:
            return 0
        now = when or utcnow()
        ts = to_iso(now)
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE memories SET access_count = access_count + 1, last_accessed = ?,"
                f" updated_at = ? WHERE id IN ({_placeholders(len(memory_ids))})",
                (ts, ts, *memory_ids),
            )
            recorded = cursor.rowcount
            promoted = await self._promote_by_usage(db, memory_ids, now)
            await db.commit()
        if promoted:
            logger.info("Promoted %d memories by usage", promoted)
        return recorded

    @staticmethod
    async def _promote_by_usage(
        db,  # noqa: ANN001
        memory_ids: list[str],
        now: datetime,
    ) -> int:
        """Move heavily used or long-lived units up one tier with a fresh expiry.

        medium -> long runs before short -> medium so a unit climbs at most one
        tier per access.  Volatile and invalidated units stay where they are.
        """
        ts = to_iso(now)
        steps = (
            (
                TIER_MEDIUM,
                TIER_LONG,
                settings.medium_promotion_access_count,
                settings.medium_promotion_age_days,
            ),
            (
                TIER_SHORT,
                TIER_MEDIUM,
                settings.short_promotion_access_count,
                settings.short_promotion_age_days,
            ),
        )
        promoted = 0
        for from_tier, to_tier, max_count, max_age_days in steps:
            days = settings.tier_days(to_tier)
            expires_at = to_iso(now + timedelta(days=days)) if days else None
            cursor = await db.execute(
                "UPDATE memories SET tier = ?, expires_at = ?, updated_at = ?"
                f" WHERE id IN ({_placeholders(len(memory_ids))}) AND tier = ?"
                " AND confidence > 0 AND (expires_at IS NULL OR expires_at > ?)"
                " AND tags NOT LIKE ? ESCAPE '\\'"
                " AND (access_count > ? OR created_at < ?)",
                (
                    to_tier,
                    expires_at,
                    ts,
                    *memory_ids,
                    from_tier,
                    ts,
                    _like(json.dumps(TAG_VOLATILE)),
                    max_count,
                    to_iso(now - timedelta(days=max_age_days)),
                ),
            )
            promoted += cursor.rowcount
        return promoted

    async def link(self, memory_id: str, other_id: str) -> bool:
        """Associate two units in both directions, atomically."""
        if memory_id == other_id:
            return False
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT id, related_memories FROM memories WHERE id IN (?, ?)",
                (memory_id, other_id),
            )
            related = {row[0]: json.loads(row[1] or "[]") for row in await cursor.fetchall()}
            if len(related) < 2:
                return False
            ts = to_iso(utcnow())
            for source, target in ((memory_id, other_id), (other_id, memory_id)):
                if target not in related[source]:
                    await db.execute(
                        "UPDATE memories SET related_memories = ?, updated_at = ? WHERE id = ?",
                        (json.dumps([*related[source], target]), ts, source),
                    )
            await db.commit()
        return True

    # -- Invalidation (batch) --------------------------------------------------

    async def expire_matching(
        self,
        entity_type: str,
        entity_id: str | None,
        at: str,
        tags_any: list[str] | None = None,
    ) -> int:
        """Expire (``expires_at`` ≤ *at*, confidence 0) every unit depending on an entity.

        Units already in that state are left untouched, so repeating the call
        changes nothing.
        """
        match_sql, match_params = _entity_match_sql(entity_type, entity_id, tags_any)
        at = normalize_iso(at)
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE memories SET"
                " expires_at = CASE WHEN expires_at IS NOT NULL AND expires_at <= ?"
                " THEN expires_at ELSE ? END,"
                " confidence = 0, updated_at = ?"
                f" WHERE {match_sql}"
                " AND (confidence > 0 OR expires_at IS NULL OR expires_at > ?)",
                (at, at, to_iso(utcnow()), *match_params, at),
            )
            await db.commit()
            changed = cursor.rowcount
        return changed

    async def cap_confidence_matching(
        self,
        entity_type: str,
        entity_id: str | None,
        value: float,
        tags_any: list[str] | None = None,
    ) -> int:
        """Lower confidence to at most *value* for units depending on an entity (or type)."""
        value = clamp_unit(value)
        match_sql, match_params = _entity_match_sql(entity_type, entity_id, tags_any)
        async with self._session() as db:
            # A cap, not a fixed write: units already at or below value are left
            # alone, so a replayed event is a no-op (DESIGN.md, invalidation).
            cursor = await db.execute(
                "UPDATE memories SET confidence = ?, updated_at = ?"
                f" WHERE {match_sql} AND confidence > ?",
                (value, to_iso(utcnow()), *match_params, value),
            )
            await db.commit()
            changed = cursor.rowcount
        return changed

    # -- Decay (batch) ---------------------------------------------------------

    async def delete_expired_untrusted(self, now: datetime, confidence_floor: float) -> int:
        """Delete live units past expiry whose confidence is below *confidence_floor*."""
        async with self._session() as db:
            cursor = await db.execute(
                "DELETE FROM memories WHERE expires_at IS NOT NULL AND expires_at < ?"
                " AND confidence < ? AND tier != ?",
                (to_iso(now), confidence_floor, TIER_ARCHIVED),
            )
            await db.commit()
            changed = cursor.rowcount
        return changed

    async def downgrade_expired(
        self, now: datetime, confidence_floor: float, extension: timedelta
    ) -> int:
        """Soften trusted-but-expired units: short tier, floor confidence, new expiry."""
        ts = to_iso(now)
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE memories SET tier = ?, confidence = ?, expires_at = ?, updated_at = ?"
                " WHERE expires_at IS NOT NULL AND expires_at < ?"
                " AND confidence >= ? AND tier != ?",
                (
                    TIER_SHORT,
                    confidence_floor,
                    to_iso(now + extension),
                    ts,
                    ts,
                    confidence_floor,
                    TIER_ARCHIVED,
                ),
            )
            await db.commit()
            changed = cursor.rowcount
        return changed

    async def delete_stale(
        self,
        accessed_before: datetime,
        confidence_below: float,
        exempt_tiers: tuple[str, ...] = (TIER_LONG, TIER_ARCHIVED),
    ) -> int:
        """Delete units unused since *accessed_before* with low confidence.

        Units never recalled count from their creation time.
        """
        async with self._session() as db:
            cursor = await db.execute(
                "DELETE FROM memories WHERE COALESCE(last_accessed, created_at) < ?"
                f" AND confidence < ? AND tier NOT IN ({_placeholders(len(exempt_tiers))})",
                (to_iso(accessed_before), confidence_below, *exempt_tiers),
            )
            await db.commit()
            changed = cursor.rowcount
        return changed

    # -- Aggregates ------------------------------------------------------------

    async def aggregate_stats(
        self, now: datetime, high_confidence: float, low_confidence: float
    ) -> dict[str, Any]:
        """Counts by tier, confidence bucket, validation and expiry in one query."""
        async with self._session() as db:
            cursor = await db.execute(
                """
                SELECT
                    COUNT(*),
                    SUM(CASE WHEN tier = 'short' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN tier = 'medium' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN tier = 'long' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN tier = 'archived' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN confidence >= ? THEN 1 ELSE 0 END),
                    SUM(CASE WHEN confidence < ? THEN 1 ELSE 0 END),
                    SUM(validated),
                    SUM(CASE WHEN expires_at IS NOT NULL AND expires_at < ? THEN 1 ELSE 0 END),
                    SUM(access_count),
                    AVG(confidence)
                FROM memories
                """,
                (high_confidence, low_confidence, to_iso(now)),
            )
            row = await cursor.fetchone()

        total = int(row[0] or 0)
        high = int(row[5] or 0)
        low = int(row[6] or 0)
        return {
            "total": total,
            "by_tier": {
                "short": int(row[1] or 0),
                "medium": int(row[2] or 0),
                "long": int(row[3] or 0),
                "archived": int(row[4] or 0),
            },
            "by_confidence": {"high": high, "medium": total - high - low, "low": low},
            "validated": int(row[7] or 0),
            "expired": int(row[8] or 0),
            "total_access_count": int(row[9] or 0),
            "avg_confidence": float(row[10]) if row[10] is not None else 0.0,
        }

    async def tool_breakdown(self) -> list[dict[str, Any]]:
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT source_tool, COUNT(*) AS n FROM memories"
                " GROUP BY source_tool ORDER BY n DESC"
            )
            rows = await cursor.fetchall()
        return [{"tool": row[0], "count": int(row[1])} for row in rows]

    async def entity_breakdown(self) -> list[dict[str, Any]]:
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT entity_type, COUNT(DISTINCT memory_id) AS n FROM memory_entities"
                " GROUP BY entity_type ORDER BY n DESC"
            )
            rows = await cursor.fetchall()
        return [{"entity_type": row[0], "count": int(row[1])} for row in rows]

    async def usage_trend(self, since: datetime) -> list[dict[str, Any]]:
        """Units created and last accessed per day since *since*."""
        ts = to_iso(since)
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT substr(created_at, 1, 10) AS day, COUNT(*) FROM memories"
                " WHERE created_at >= ? GROUP BY day",
                (ts,),
            )
            created = {row[0]: int(row[1]) for row in await cursor.fetchall()}
            cursor = await db.execute(
                "SELECT substr(last_accessed, 1, 10) AS day, COUNT(*) FROM memories"
                " WHERE last_accessed >= ? GROUP BY day",
                (ts,),
            )
            accessed = {row[0]: int(row[1]) for row in await cursor.fetchall()}

        days = sorted(set(created) | set(accessed))
        return [
            {"day": day, "created": created.get(day, 0), "accessed": accessed.get(day, 0)}
            for day in days
        ]
