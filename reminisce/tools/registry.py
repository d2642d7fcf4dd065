"""Tool registry — catalog of agent tools, with memory routing for cacheable ones."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from reminisce.tools.base import BaseTool, ToolParams, ToolResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from reminisce.memory.service import ReminisceService

logger = logging.getLogger(__name__)

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass
class ToolDef:
    """A registered tool and its call counters."""

    name: str
    description: str
    category: str
    handler: Callable[..., Awaitable[ToolResult]]
    params_model: type[ToolParams] | None = None
    cacheable: bool = False
    calls: int = 0
    memory_hits: int = 0

    def schema(self) -> dict[str, Any]:
        model = self.params_model
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": model.model_json_schema() if model else dict(_EMPTY_SCHEMA),
        }


class ToolRegistry:
    """Central registry for agent tools.

    Register stateless tools with the decorator::

        @registry.tool(
            name="estimate_time",
            description="Travel time between two places",
            category="travel",
            params_model=RouteParams,
            cacheable=True,
        )
        async def estimate_time(origin: str, destination: str) -> ToolResult:
            ...

    and stateful ones with ``registry.register(SomeTool(), cacheable=...)``.

    Once a memory service is attached, cacheable tools run through
    ``ReminisceService.cached_call``: a remembered outcome answers the
    call without touching the handler, and a successful fresh result is
    learned for next time. Everything else runs the handler directly.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}
        self._memory: ReminisceService | None = None

    def attach_memory(self, service: ReminisceService | None) -> None:
        """Route cacheable tools through *service*; ``None`` detaches."""
        self._memory = service

    # -- Registration --------------------------------------------------------

    def tool(
        self,
        *,
        name: str,
        description: str,
        category: str,
        params_model: type[ToolParams] | None = None,
        cacheable: bool = False,
    ) -> Callable:
        def decorator(fn: Callable[..., Awaitable[ToolResult]]) -> Callable:
            if not inspect.iscoroutinefunction(fn):
                msg = f"Tool handler '{name}' must be an async function"
                raise TypeError(msg)
            self._add(ToolDef(name, description, category, fn, params_model, cacheable))
            return fn

        return decorator

    def register(self, tool_instance: BaseTool, cacheable: bool = False) -> None:
        self._add(
            ToolDef(
                tool_instance.name,
                tool_instance.description,
                tool_instance.category,
                tool_instance.execute,
                tool_instance.params_model,
                cacheable,
            )
        )

    def _add(self, tool_def: ToolDef) -> None:
        if tool_def.name in self._tools:
            logger.debug("Replacing tool '%s'", tool_def.name)
        self._tools[tool_def.name] = tool_def

    # -- Lookup --------------------------------------------------------------

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    @property
    def cacheable_tools(self) -> list[str]:
        """Names of tools whose results may be answered from memory."""
        return [t.name for t in self._tools.values() if t.cacheable]

    def get_schemas(self) -> list[dict[str, Any]]:
        return [t.schema() for t in self._tools.values()]

    def get_tools_by_category(self) -> dict[str, list[ToolDef]]:
        groups: dict[str, list[ToolDef]] = {}
        for tool_def in self._tools.values():
            groups.setdefault(tool_def.category, []).append(tool_def)
        return groups

    # -- Execution -----------------------------------------------------------

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context_id: str | None = None,
    ) -> ToolResult:
        """Run tool *name* with *arguments*, validated against its params model.

        *context_id* ties a cacheable call to a multi-step query context.
        Handler exceptions are logged and returned as an error result.
        """
        tool_def = self._tools.get(name)
        if tool_def is None:
            return ToolResult(error=f"Unknown tool: {name}")

        tool_def.calls += 1
        logger.info("Tool '%s' called with %s", name, arguments)
        started = time.monotonic()
        try:
            kwargs = self._validate(tool_def, arguments)
            if tool_def.cacheable and self._memory is not None:
                result = await self._through_memory(tool_def, kwargs, context_id)
            else:
                result = await tool_def.handler(**kwargs)
        except Exception:
            logger.exception("Tool '%s' failed in %.2fs", name, time.monotonic() - started)
            return ToolResult(error=f"Tool '{name}' failed. Check logs for details.")

        elapsed = time.monotonic() - started
        if result.success:
            logger.info("Tool '%s' succeeded in %.2fs", name, elapsed)
        else:
            logger.warning("Tool '%s' returned error in %.2fs: %s", name, elapsed, result.error)
        return result

    @staticmethod
    def _validate(tool_def: ToolDef, arguments: dict[str, Any]) -> dict[str, Any]:
        if tool_def.params_model is None:
            return dict(arguments)
        return tool_def.params_model(**arguments).model_dump()

    async def _through_memory(
        self,
        tool_def: ToolDef,
        kwargs: dict[str, Any],
        context_id: str | None,
    ) -> ToolResult:
        fresh: list[ToolResult] = []

        async def run(params: dict[str, Any]) -> dict[str, Any] | None:
            result = await tool_def.handler(**params)
            fresh.append(result)
            # None tells cached_call there is nothing to learn.
            return result.data if result.success else None

        outcome = await self._memory.cached_call(tool_def.name, kwargs, run, context_id=context_id)
        if not outcome.from_cache:
            return fresh[0]
        tool_def.memory_hits += 1
        logger.info("Tool '%s' answered from memory %s", tool_def.name, outcome.memory_id)
        return ToolResult(data=outcome.result)


# Process-wide registry; tool modules register into it on import.
registry = ToolRegistry()
