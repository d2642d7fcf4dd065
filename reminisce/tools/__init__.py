"""Tool framework — import tool modules here to register them."""

# Import tool modules so their @registry.tool() decorators execute.
from reminisce.tools import memory_tools  # noqa: F401
from reminisce.tools.registry import registry

__all__ = ["registry"]
