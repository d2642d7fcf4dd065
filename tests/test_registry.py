"""Tests for the tool registry."""

from unittest.mock import AsyncMock

import pytest
from pydantic import Field

from reminisce.memory.service import CachedCall
from reminisce.tools.base import BaseTool, ToolParams, ToolResult
from reminisce.tools.registry import ToolRegistry

# -- Fixtures ----------------------------------------------------------------


@pytest.fixture
def reg() -> ToolRegistry:
    """Fresh registry for each test."""
    return ToolRegistry()


class RouteParams(ToolParams):
    origin: str = Field(description="Where the trip starts")
    destination: str = Field(description="Where the trip ends")


def _register_route_tool(reg: ToolRegistry, handler: AsyncMock) -> None:
    reg.tool(
        name="estimate_time",
        description="Travel time",
        category="travel",
        params_model=RouteParams,
        cacheable=True,
    )(handler)


# -- Decorator registration --------------------------------------------------


def test_register_via_decorator(reg: ToolRegistry) -> None:
    @reg.tool(name="ping", description="Ping", category="test")
    async def ping() -> ToolResult:
        return ToolResult(data={"pong": True})

    assert "ping" in reg.tool_names
    assert reg.get("ping").category == "test"
    assert reg.get("ping").cacheable is False


def test_decorator_rejects_sync_function(reg: ToolRegistry) -> None:
    with pytest.raises(TypeError, match="must be an async function"):

        @reg.tool(name="bad", description="Bad", category="test")
        def bad() -> ToolResult:
            return ToolResult()


# -- Class-based registration ------------------------------------------------


def test_register_class_based_tool(reg: ToolRegistry) -> None:
    class LookupTool(BaseTool):
        name = "lookup"
        description = "Look something up"
        category = "lookup"

        async def execute(self, **kwargs) -> ToolResult:
            return ToolResult(data={"found": True})

    reg.register(LookupTool(), cacheable=True)
    assert "lookup" in reg.tool_names
    assert reg.get("lookup").description == "Look something up"
    assert reg.get("lookup").cacheable is True
    assert reg.cacheable_tools == ["lookup"]


# -- Schema generation -------------------------------------------------------


def test_get_schemas_no_params(reg: ToolRegistry) -> None:
    @reg.tool(name="simple", description="Simple tool", category="test")
    async def simple() -> ToolResult:
        return ToolResult()

    schemas = reg.get_schemas()
    assert len(schemas) == 1
    assert schemas[0]["name"] == "simple"
    assert schemas[0]["input_schema"] == {"type": "object", "properties": {}}


def test_get_schemas_with_params(reg: ToolRegistry) -> None:
    @reg.tool(
        name="estimate_time", description="Travel time", category="travel", params_model=RouteParams
    )
    async def estimate_time(origin: str, destination: str) -> ToolResult:
        return ToolResult()

    schema = reg.get_schemas()[0]["input_schema"]
    assert schema["properties"]["origin"]["type"] == "string"
    assert set(schema["required"]) == {"origin", "destination"}


# -- Execution ---------------------------------------------------------------


async def test_execute_with_params(reg: ToolRegistry) -> None:
    class AddParams(ToolParams):
        a: int = Field(description="First number")
        b: int = Field(description="Second number")

    @reg.tool(name="add", description="Add", category="test", params_model=AddParams)
    async def add(a: int, b: int) -> ToolResult:
        return ToolResult(data={"sum": a + b})

    result = await reg.execute("add", {"a": 3, "b": 7})
    assert result.success
    assert result.data["sum"] == 10


async def test_execute_unknown_tool(reg: ToolRegistry) -> None:
    result = await reg.execute("nonexistent", {})
    assert not result.success
    assert "Unknown tool" in result.error


async def test_execute_with_invalid_params(reg: ToolRegistry) -> None:
    class Params(ToolParams):
        count: int = Field(description="A number")

    @reg.tool(name="strict", description="Strict", category="test", params_model=Params)
    async def strict(count: int) -> ToolResult:
        return ToolResult(data={"count": count})

    result = await reg.execute("strict", {"count": "not_a_number"})
    assert not result.success


async def test_execute_handler_exception(reg: ToolRegistry) -> None:
    @reg.tool(name="boom", description="Boom", category="test")
    async def boom() -> ToolResult:
        msg = "kaboom"
        raise RuntimeError(msg)

    result = await reg.execute("boom", {})
    assert not result.success
    assert "failed" in result.error


# -- Memory routing ----------------------------------------------------------


async def test_cacheable_tool_without_memory_runs_directly(reg: ToolRegistry) -> None:
    handler = AsyncMock(return_value=ToolResult(data={"minutes": 12}))
    _register_route_tool(reg, handler)

    result = await reg.execute("estimate_time", {"origin": "Library", "destination": "Dorm"})

    assert result.data == {"minutes": 12}
    handler.assert_awaited_once_with(origin="Library", destination="Dorm")


async def test_cacheable_tool_answered_from_memory(reg: ToolRegistry) -> None:
    handler = AsyncMock(return_value=ToolResult(data={"minutes": 99}))
    _register_route_tool(reg, handler)
    memory = AsyncMock()
    memory.cached_call.return_value = CachedCall(
        result={"minutes": 12}, from_cache=True, memory_id="m1"
    )
    reg.attach_memory(memory)

    result = await reg.execute(
        "estimate_time", {"origin": "Library", "destination": "Dorm"}, context_id="c1"
    )

    assert result.data == {"minutes": 12}
    handler.assert_not_awaited()
    args, kwargs = memory.cached_call.call_args
    assert args[0] == "estimate_time"
    assert args[1] == {"origin": "Library", "destination": "Dorm"}
    assert kwargs["context_id"] == "c1"
    tool_def = reg.get("estimate_time")
    assert (tool_def.calls, tool_def.memory_hits) == (1, 1)


async def test_cacheable_tool_miss_returns_fresh_result(reg: ToolRegistry) -> None:
    fresh = ToolResult(data={"minutes": 12})
    handler = AsyncMock(return_value=fresh)
    _register_route_tool(reg, handler)

    async def cached_call(tool_name, params, execute, context_id=None):
        remembered = await execute(params)
        return CachedCall(result=remembered, from_cache=False, memory_id="m2")

    memory = AsyncMock()
    memory.cached_call.side_effect = cached_call
    reg.attach_memory(memory)

    result = await reg.execute("estimate_time", {"origin": "Library", "destination": "Dorm"})
    assert result is fresh
    assert reg.get("estimate_time").memory_hits == 0


async def test_failed_tool_result_is_not_remembered(reg: ToolRegistry) -> None:
    handler = AsyncMock(return_value=ToolResult(error="no route"))
    _register_route_tool(reg, handler)
    seen: list = []

    async def cached_call(tool_name, params, execute, context_id=None):
        seen.append(await execute(params))
        return CachedCall(result=seen[-1], from_cache=False)

    memory = AsyncMock()
    memory.cached_call.side_effect = cached_call
    reg.attach_memory(memory)

    result = await reg.execute("estimate_time", {"origin": "Library", "destination": "Dorm"})
    assert result.error == "no route"
    assert seen == [None]


async def test_non_cacheable_tool_bypasses_memory(reg: ToolRegistry) -> None:
    @reg.tool(name="greet", description="Greet", category="test")
    async def greet() -> ToolResult:
        return ToolResult(data={"greeting": "hello"})

    memory = AsyncMock()
    reg.attach_memory(memory)

    result = await reg.execute("greet", {})
    assert result.data == {"greeting": "hello"}
    memory.cached_call.assert_not_called()


# -- Categories --------------------------------------------------------------


def test_tools_by_category(reg: ToolRegistry) -> None:
    @reg.tool(name="a", description="A", category="alpha")
    async def a() -> ToolResult:
        return ToolResult()

    @reg.tool(name="b", description="B", category="beta")
    async def b() -> ToolResult:
        return ToolResult()

    @reg.tool(name="c", description="C", category="alpha")
    async def c() -> ToolResult:
        return ToolResult()

    groups = reg.get_tools_by_category()
    assert len(groups["alpha"]) == 2
    assert len(groups["beta"]) == 1


# -- ToolResult serialization ------------------------------------------------


def test_tool_result_success_serialization() -> None:
    r = ToolResult(data={"key": "val"})
    assert r.success
    assert '"key"' in r.to_content()


def test_tool_result_error_serialization() -> None:
    r = ToolResult(error="something broke")
    assert not r.success
    assert "something broke" in r.to_content()
