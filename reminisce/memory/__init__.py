"""Memory subsystem — cached tool outcomes, recall, invalidation, and decay."""

from reminisce.memory.context import ContextChainTracker, QueryContext, QueryStep
from reminisce.memory.decay import DecayScheduler, MemoryStats
from reminisce.memory.invalidation import InvalidationEngine
from reminisce.memory.models import EntityChangeEvent, EntityRef, MemoryPattern, MemoryUnit
from reminisce.memory.recall import RecallEngine, RecallQuery
from reminisce.memory.service import CachedCall, OperationResult, ReminisceService
from reminisce.memory.store import MemoryFilter, MemoryStore

__all__ = [
    "MemoryUnit",
    "MemoryPattern",
    "EntityRef",
    "EntityChangeEvent",
    "MemoryStore",
    "MemoryFilter",
    "RecallEngine",
    "RecallQuery",
    "InvalidationEngine",
    "ContextChainTracker",
    "QueryContext",
    "QueryStep",
    "DecayScheduler",
    "MemoryStats",
    "ReminisceService",
    "OperationResult",
    "CachedCall",
]
