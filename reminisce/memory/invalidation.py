"""InvalidationEngine — apply entity change events to dependent memory units.

Rules are keyed by ``(entity_type, event_type)``.  Resolution tries the exact
pair first, then the ``("*", event_type)`` wildcard; events with no rule are
logged and ignored.  Every action writes absolute values, so processing the
same event twice leaves the store exactly as processing it once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from reminisce.config import settings
from reminisce.memory.models import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_NOTE_ADDED,
    EVENT_STATUS_CHANGED,
    EVENT_TRANSFERRED,
    EVENT_UPDATED,
    EntityChangeEvent,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from reminisce.memory.store import MemoryStore

logger = logging.getLogger(__name__)

EXPIRE = "expire"
REDUCE_CONFIDENCE = "reduce_confidence"

WILDCARD = "*"


@dataclass(frozen=True)
class EntityMatch:
    """Which units a plan applies to.

    ``entity_id=None`` matches any unit anchored to an entity of
    ``entity_type``.  ``tags_any`` further restricts to units carrying one of
    the tags.
    """

    entity_type: str
    entity_id: str | None = None
    tags_any: tuple[str, ...] = ()


@dataclass(frozen=True)
class InvalidationPlan:
    match: EntityMatch
    action: str


RuleKey = tuple[str, str]


def _for_entity(event: EntityChangeEvent, *tags: str) -> EntityMatch:
    return EntityMatch(event.entity_type, event.entity_id, tuple(tags))


def expire_entity(event: EntityChangeEvent) -> InvalidationPlan:
    return InvalidationPlan(_for_entity(event), EXPIRE)


def reduce_entity(event: EntityChangeEvent) -> InvalidationPlan:
    return InvalidationPlan(_for_entity(event), REDUCE_CONFIDENCE)


def reduce_entity_type(event: EntityChangeEvent) -> InvalidationPlan:
    """New data can make aggregate answers about the whole type stale."""
    return InvalidationPlan(EntityMatch(event.entity_type), REDUCE_CONFIDENCE)


def item_updated(event: EntityChangeEvent) -> InvalidationPlan:
    if event.details.get("statusChanged"):
        return InvalidationPlan(_for_entity(event), EXPIRE)
    if event.details.get("locationChanged"):
        return InvalidationPlan(_for_entity(event, "item_location"), REDUCE_CONFIDENCE)
    return InvalidationPlan(_for_entity(event), REDUCE_CONFIDENCE)


def default_rules() -> dict[RuleKey, Callable[[EntityChangeEvent], InvalidationPlan]]:
    rules: dict[RuleKey, Callable[[EntityChangeEvent], InvalidationPlan]] = {
        ("item", EVENT_TRANSFERRED): expire_entity,
        ("item", EVENT_UPDATED): item_updated,
        ("task", EVENT_STATUS_CHANGED): expire_entity,
        (WILDCARD, EVENT_NOTE_ADDED): reduce_entity,
        (WILDCARD, EVENT_CREATED): reduce_entity_type,
    }
    for entity_type in ("item", "location", "task", "contact", "biodata"):
        rules[(entity_type, EVENT_DELETED)] = expire_entity
    for entity_type in ("location", "task", "contact", "biodata"):
        rules[(entity_type, EVENT_UPDATED)] = reduce_entity
    return rules


class InvalidationEngine:
    """Maps entity change events onto batch updates in a MemoryStore."""

    def __init__(
        self,
        store: MemoryStore,
        reduced_confidence: float | None = None,
        rules: dict[RuleKey, Callable[[EntityChangeEvent], InvalidationPlan]] | None = None,
    ) -> None:
        self._store = store
        self._reduced_confidence = (
            reduced_confidence if reduced_confidence is not None else settings.reduced_confidence
        )
        self._rules = dict(rules) if rules is not None else default_rules()

    @property
    def rule_keys(self) -> list[RuleKey]:
        return list(self._rules)

    def register(
        self,
        entity_type: str,
        event_type: str,
        rule: Callable[[EntityChangeEvent], InvalidationPlan],
    ) -> None:
        """Add or replace the rule for ``(entity_type, event_type)``."""
        self._rules[(entity_type, event_type)] = rule

    def resolve(self, event: EntityChangeEvent) -> InvalidationPlan | None:
        rule = self._rules.get(event.key) or self._rules.get((WILDCARD, event.event_type))
        return rule(event) if rule else None

    async def process(self, event: EntityChangeEvent) -> int:
        """Apply the matching rule to the store. Returns the number of units touched."""
        plan = self.resolve(event)
        if plan is None:
            logger.debug(
                "No invalidation rule for %s.%s", event.entity_type, event.event_type
            )
            return 0

        match = plan.match
        tags = list(match.tags_any) or None
        if plan.action == EXPIRE:
            touched = await self._store.expire_matching(
                match.entity_type, match.entity_id, event.timestamp, tags_any=tags
            )
        elif plan.action == REDUCE_CONFIDENCE:
            touched = await self._store.cap_confidence_matching(
                match.entity_type, match.entity_id, self._reduced_confidence, tags_any=tags
            )
        else:
            logger.warning("Unknown invalidation action %r; ignoring", plan.action)
            return 0

        if touched:
            logger.info(
                "%s.%s (%s): %s applied to %d memories",
                event.entity_type,
                event.event_type,
                event.entity_id,
                plan.action,
                touched,
            )
        return touched
