"""Exceptions raised by the memory subsystem."""


class ReminisceError(Exception):
    """Base class for memory subsystem errors."""


class MemoryNotFoundError(ReminisceError):
    """Unknown memory unit or query context id."""


class MemoryValidationError(ReminisceError):
    """A value was rejected before any mutation happened."""


class TransientStoreError(ReminisceError):
    """The underlying storage could not be reached for this operation."""
