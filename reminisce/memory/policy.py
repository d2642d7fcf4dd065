"""Per-tool caching policy: tiers, initial confidence, expiry, tags and dependencies.

Tools that read fast-changing data (pending tasks, the latest bio-data
reading) are never cached, and items in sensitive categories (documents,
keys, valuables, electronics) are always looked up fresh.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from reminisce.config import settings
from reminisce.memory.analyzer import analyze, canonicalize
from reminisce.memory.models import (
    TIER_LONG,
    TIER_MEDIUM,
    TIER_SHORT,
    EntityRef,
    to_iso,
    utcnow,
)


@dataclass(frozen=True)
class CachePolicy:
    default_tier: str = TIER_MEDIUM
    initial_confidence: float = 0.8
    enabled: bool = True


DEFAULT_POLICY = CachePolicy()

TOOL_POLICIES: dict[str, CachePolicy] = {
    "find_item": CachePolicy(TIER_MEDIUM, 0.9),
    "estimate_time": CachePolicy(TIER_LONG, 0.7),
    "query_item": CachePolicy(TIER_MEDIUM, 0.95),
    "query_location": CachePolicy(TIER_LONG, 0.95),
    "query_contact": CachePolicy(TIER_LONG, 0.95),
    "query_biodata": CachePolicy(TIER_MEDIUM, 0.85),
    "query_task": CachePolicy(TIER_SHORT, 0.8),
    "get_latest_biodata": CachePolicy(TIER_SHORT, 0.85, enabled=False),
    "get_pending_tasks": CachePolicy(TIER_SHORT, 0.7, enabled=False),
}

CATEGORY_POLICIES: dict[str, CachePolicy] = {
    "DOCUMENT": CachePolicy(TIER_SHORT, 0.8, enabled=False),
    "VALUABLE": CachePolicy(TIER_SHORT, 0.8, enabled=False),
    "KEY": CachePolicy(TIER_SHORT, 0.8, enabled=False),
    "ELECTRONICS": CachePolicy(TIER_SHORT, 0.9, enabled=False),
    "STATIONERY": CachePolicy(TIER_MEDIUM, 0.9),
    "CLOTHING": CachePolicy(TIER_MEDIUM, 0.9),
    "MEDICINE": CachePolicy(TIER_MEDIUM, 0.9),
    "CONTAINER": CachePolicy(TIER_LONG, 0.95),
    "FOOD": CachePolicy(TIER_SHORT, 0.8),
    "MISC": CachePolicy(TIER_MEDIUM, 0.8),
}

# Checked in order; first match wins.
_ITEM_CATEGORIES: list[tuple[str, re.Pattern[str]]] = [
    ("DOCUMENT", re.compile(r"passport|licen[cs]e|\bid\b|identity|certificate|document|permit")),
    ("VALUABLE", re.compile(r"wallet|cash|money|credit card|bank card|jewel|valuable")),
    ("KEY", re.compile(r"\bkeys?\b|keycard|access card|\bfob\b|\blocks?\b")),
    ("ELECTRONICS", re.compile(r"phone|laptop|tablet|camera|hard drive|charger|computer|device")),
    ("STATIONERY", re.compile(r"book|\bpens?\b|pencil|eraser|paper|stationery")),
    ("CLOTHING", re.compile(r"shirt|jacket|coat|trousers|pants|sock|shoe|\bhats?\b|scarf|cloth")),
    ("MEDICINE", re.compile(r"medicine|pill|tablet pack|ointment|drug|medical|bandage")),
    ("CONTAINER", re.compile(r"bag|backpack|box|case|suitcase|container|drawer")),
    ("FOOD", re.compile(r"food|snack|drink|water|\btea\b|coffee|fruit")),
]

_ROUTE_CATEGORIES: list[tuple[str, re.Pattern[str]]] = [
    ("CAMPUS", re.compile(r"campus|college|university|school|dorm|library|canteen|lecture")),
    ("SHOPPING", re.compile(r"mall|market|supermarket|shop|store")),
    ("COMMUTE", re.compile(r"office|work|company|headquarters")),
]

_TOOL_TAGS: dict[str, str] = {
    "find_item": "item_location",
    "estimate_time": "travel_time",
    "query_item": "item_info",
    "query_location": "location_info",
    "query_contact": "contact_info",
    "query_biodata": "biodata_info",
    "query_task": "task_info",
}

# tool -> [(param, entity_type, role)]
_DEPENDENCY_PARAMS: dict[str, list[tuple[str, str, str]]] = {
    "find_item": [("itemId", "item", "primary"), ("itemIds", "item", "primary")],
    "estimate_time": [("origin", "location", "primary"), ("destination", "location", "primary")],
    "query_item": [("itemId", "item", "primary"), ("containerId", "item", "primary")],
    "query_location": [
        ("locationId", "location", "primary"),
        ("hierarchyFor", "location", "primary"),
        ("childrenOf", "location", "primary"),
    ],
    "query_contact": [("contactId", "contact", "primary")],
    "query_biodata": [("recordId", "biodata", "primary")],
    "query_task": [("taskId", "task", "primary")],
    "transfer_item": [
        ("itemId", "item", "primary"),
        ("targetLocationId", "location", "secondary"),
        ("targetContainerId", "item", "secondary"),
    ],
    "update_task_status": [("taskId", "task", "primary")],
}

_ID_RE = re.compile(r"^(?:[0-9a-fA-F]{24}|[0-9a-fA-F]{32})$")


# -- Categorisation ------------------------------------------------------------


def categorize_item(item_name: str) -> str:
    """Bucket an item by name; ``MISC`` when nothing matches."""
    if not item_name:
        return "UNKNOWN"
    name = item_name.lower().strip()
    for category, pattern in _ITEM_CATEGORIES:
        if pattern.search(name):
            return category
    return "MISC"


def categorize_route(origin: str | None, destination: str | None) -> str:
    text = f"{origin or ''} {destination or ''}".lower()
    for category, pattern in _ROUTE_CATEGORIES:
        if pattern.search(text):
            return category
    return "GENERAL"


def abstract_params(tool_name: str, params: dict[str, Any] | None) -> dict[str, Any]:
    """Replace concrete values with category markers for template matching.

    Item names become their category and routes become a route type, so
    calls that differ only in those values share a template.
    """
    abstract = canonicalize(params or {})
    if tool_name == "find_item" and abstract.get("itemName"):
        category = categorize_item(str(abstract["itemName"]))
        abstract["itemCategory"] = category
        abstract["itemName"] = f"<{category}>"
    elif tool_name == "estimate_time":
        if abstract.get("origin") and abstract.get("destination"):
            abstract["routeType"] = categorize_route(abstract["origin"], abstract["destination"])
        if abstract.get("origin"):
            abstract["origin"] = "<ORIGIN>"
        if abstract.get("destination"):
            abstract["destination"] = "<DESTINATION>"
    return abstract


# -- Policy lookups ------------------------------------------------------------


def tool_policy(tool_name: str) -> CachePolicy:
    return TOOL_POLICIES.get(tool_name, DEFAULT_POLICY)


def category_policy(category: str) -> CachePolicy:
    return CATEGORY_POLICIES.get(category, CATEGORY_POLICIES["MISC"])


def _item_policy(tool_name: str, params: dict[str, Any]) -> CachePolicy | None:
    if tool_name == "find_item" and params.get("itemName"):
        return category_policy(categorize_item(str(params["itemName"])))
    return None


def is_volatile(tool_name: str, params: dict[str, Any]) -> bool:
    """Data that changes too often to keep for a full tier lifetime."""
    if not settings.memory_enabled or not tool_policy(tool_name).enabled:
        return True
    item = _item_policy(tool_name, params)
    if item is not None:
        return not item.enabled
    return tool_name in ("get_latest_biodata", "get_pending_tasks", "query_task")


def is_cacheable(tool_name: str, params: dict[str, Any] | None) -> bool:
    """Policy and complexity both allow caching this call."""
    params = params or {}
    if not settings.memory_enabled or not tool_policy(tool_name).enabled:
        return False
    item = _item_policy(tool_name, params)
    if item is not None and not item.enabled:
        return False
    return analyze(tool_name, params).should_cache


def storage_tier(tool_name: str, params: dict[str, Any]) -> str:
    item = _item_policy(tool_name, params)
    if item is not None:
        return item.default_tier
    return tool_policy(tool_name).default_tier


def initial_confidence(tool_name: str, params: dict[str, Any]) -> float:
    item = _item_policy(tool_name, params)
    if item is not None:
        return item.initial_confidence
    return tool_policy(tool_name).initial_confidence


def expiry_for(
    tier: str,
    tool_name: str = "",
    params: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> str | None:
    """Absolute expiry for a new unit, or None when the tier never expires."""
    now = now or utcnow()
    days = settings.tier_days(tier)
    if days is None:
        return None
    if tool_name and is_volatile(tool_name, params or {}):
        return to_iso(now + timedelta(hours=settings.volatile_expiry_hours))
    return to_iso(now + timedelta(days=days))


def generate_tags(tool_name: str, params: dict[str, Any]) -> list[str]:
    tags = [tool_name]
    if tool_name in _TOOL_TAGS:
        tags.append(_TOOL_TAGS[tool_name])
    if tool_name == "query_biodata" and params.get("measurementType"):
        tags.append(f"measurement_{params['measurementType']}")
    if tool_name == "estimate_time" and (params.get("origin") or params.get("destination")):
        route = categorize_route(params.get("origin"), params.get("destination"))
        tags.append(f"route_{route.lower()}")
    if tool_name == "find_item" and params.get("itemName"):
        tags.append(f"category_{categorize_item(str(params['itemName'])).lower()}")
    return tags


# -- Entity dependencies -------------------------------------------------------


def _looks_like_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_ID_RE.match(value))


def extract_entity_dependencies(tool_name: str, params: dict[str, Any]) -> list[EntityRef]:
    """Derive the entities a tool call's result depends on from its parameters."""
    deps: list[EntityRef] = []
    for param, entity_type, role in _DEPENDENCY_PARAMS.get(tool_name, []):
        value = params.get(param)
        values = value if isinstance(value, list) else [value]
        deps.extend(
            EntityRef(entity_id=v, entity_type=entity_type, role=role)
            for v in values
            if _looks_like_id(v)
        )

    if tool_name in ("add_structured_note", "search_notes"):
        if _looks_like_id(params.get("entityId")) and params.get("entityType"):
            deps.append(EntityRef(params["entityId"], params["entityType"], "primary"))
        for related in params.get("relatedEntities") or []:
            if _looks_like_id(related.get("id")) and related.get("type"):
                deps.append(EntityRef(related["id"], related["type"], "reference"))

    # Collapse duplicates while keeping order.
    seen: set[tuple[str, str]] = set()
    unique = []
    for dep in deps:
        key = (dep.entity_type, dep.entity_id)
        if key not in seen:
            seen.add(key)
            unique.append(dep)
    return unique
