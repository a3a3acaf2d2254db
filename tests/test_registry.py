"""Tool registry: registration, dispatch, collisions and lifecycle."""

import asyncio

import pytest

from pysuna.tools.base import BaseTool, ToolResult
from pysuna.tools.registry import RegisterOptions, ToolRegistry
from pysuna.tools.schema import OperationSpec, ParamSpec

RUN = OperationSpec(
    name="run",
    description="Run something",
    tag_name="run",
    params=(ParamSpec("value", "integer", "A number", required=True),),
    examples=({"value": 1},),
)


class AlphaTool(BaseTool):
    name = "alpha"
    description = "First tool"
    version = "1.0.0"
    operations = (RUN, OperationSpec(name="alpha_only", description="Only on alpha"))

    def __init__(self):
        super().__init__()
        self.calls = []
        self.cleaned = False

    def handlers(self):
        return {"run": self._run, "alpha_only": self._alpha_only}

    async def _run(self, params, context):
        self.calls.append(params.value)
        return ToolResult.ok({"tool": self.name, "value": params.value})

    async def _alpha_only(self, params, context):
        return ToolResult.ok({"tool": self.name})

    async def cleanup(self):
        self.cleaned = True
        await super().cleanup()


class BetaTool(AlphaTool):
    name = "beta"
    description = "Second tool"
    version = "2.0.0"
    operations = (RUN,)

    def handlers(self):
        return {"run": self._run}


class ExplodingTool(BaseTool):
    name = "exploding"
    operations = (OperationSpec(name="boom", description="Always raises"),)

    def handlers(self):
        return {"boom": self._boom}

    async def _boom(self, params, context):
        raise RuntimeError("kaboom")


class BrokenCleanupTool(AlphaTool):
    name = "broken_cleanup"
    operations = (OperationSpec(name="noop", description="Nothing"),)

    def handlers(self):
        return {"noop": self._alpha_only}

    async def cleanup(self):
        raise RuntimeError("cleanup failed")


@pytest.fixture
def registry():
    return ToolRegistry()


class TestRegistration:
    async def test_register_indexes_functions_and_tags(self, registry):
        tool = await registry.register_tool(AlphaTool)
        assert tool.initialized
        assert registry.has_function("run")
        assert registry.has_function("alpha_only")
        assert registry.has_tag("run")
        assert not registry.has_tag("alpha_only")
        assert registry.get_function_tool("run") is tool
        assert registry.get_tool("alpha") is tool

    async def test_register_options_filter(self, registry):
        await registry.register_tool(AlphaTool, RegisterOptions(function_names=["alpha_only"], enable_xml=False))
        assert registry.available_functions() == ["alpha_only"]
        assert registry.available_tags() == []

    async def test_openapi_disabled_keeps_tags(self, registry):
        await registry.register_tool(AlphaTool, RegisterOptions(enable_openapi=False))
        assert registry.available_functions() == []
        assert registry.available_tags() == ["run"]

    async def test_schemas_and_examples(self, registry):
        await registry.register_tool(AlphaTool)
        names = [s["function"]["name"] for s in registry.get_function_schemas()]
        assert names == ["run", "alpha_only"]
        assert registry.get_tag_schemas()[0]["tag_name"] == "run"
        assert registry.get_tag_examples() == ["<run>\n<value>1</value>\n</run>"]

    async def test_reregistering_same_name_replaces_and_cleans_up(self, registry):
        first = await registry.register_tool(AlphaTool)
        second = await registry.register_tool(AlphaTool)
        assert first.cleaned
        assert registry.get_tool("alpha") is second
        assert registry.get_stats()["total_tools"] == 1


class TestCollisions:
    async def test_last_registered_wins(self, registry, context):
        alpha = await registry.register_tool(AlphaTool)
        beta = await registry.register_tool(BetaTool)

        result = await registry.execute_function("run", {"value": 7}, context)

        assert result.success
        assert result.data["tool"] == "beta"
        assert beta.calls == [7]
        assert alpha.calls == []
        stats = registry.get_stats()
        assert set(stats["tools_by_name"]) == {"alpha", "beta"}
        assert stats["tools_by_name"]["beta"]["version"] == "2.0.0"

    async def test_overridden_is_reported(self, registry):
        await registry.register_tool(AlphaTool)
        await registry.register_tool(BetaTool)
        overridden = registry.get_stats()["overridden"]
        assert {"kind": "function", "key": "run", "previous": "alpha", "current": "beta"} in overridden
        assert {"kind": "tag", "key": "run", "previous": "alpha", "current": "beta"} in overridden

    async def test_unregistering_winner_restores_previous_owner(self, registry, context):
        await registry.register_tool(AlphaTool)
        await registry.register_tool(BetaTool)
        assert await registry.unregister_tool("beta")

        result = await registry.execute_function("run", {"value": 1}, context)
        assert result.data["tool"] == "alpha"
        assert registry.get_stats()["overridden"] == []

    async def test_concurrent_registration_is_consistent(self, registry):
        await asyncio.gather(*(registry.register_tool(t) for t in (AlphaTool, BetaTool, AlphaTool, BetaTool)))
        stats = registry.get_stats()
        assert stats["total_tools"] == 2
        assert registry.get_function_tool("run") is not None


class TestDispatch:
    async def test_unknown_function_not_found(self, registry, context):
        alpha = await registry.register_tool(AlphaTool)
        result = await registry.execute_function("missing", {}, context)
        assert not result.success
        assert result.error == "Function missing not found in registry"
        assert result.error_kind == "not_found"
        assert alpha.calls == []

    async def test_unknown_tag_not_found(self, registry):
        result = await registry.execute_tag("missing", {})
        assert result.error == "Tag missing not found in registry"
        assert result.error_kind == "not_found"

    async def test_tag_dispatch_coerces_string_values(self, registry, context):
        alpha = await registry.register_tool(AlphaTool)
        result = await registry.execute_tag("run", {"value": "42"}, context)
        assert result.success
        assert alpha.calls == [42]

    async def test_validation_failure_has_field_detail(self, registry, context):
        alpha = await registry.register_tool(AlphaTool)
        result = await registry.execute_function("run", {"value": "not a number"}, context)
        assert not result.success
        assert result.error_kind == "validation"
        assert result.error.startswith("Parameter validation failed for run: value:")
        assert alpha.calls == []

    async def test_missing_required_parameter(self, registry):
        await registry.register_tool(AlphaTool)
        result = await registry.execute_function("run", {})
        assert result.error_kind == "validation"
        assert "value" in result.error

    async def test_tool_exception_becomes_failure(self, registry, context):
        await registry.register_tool(ExplodingTool)
        result = await registry.execute_function("boom", {}, context)
        assert not result.success
        assert result.error == "Tool execution failed: kaboom"
        assert result.error_kind == "internal"

    async def test_base_tool_rejects_unknown_function(self, context):
        tool = AlphaTool()
        result = await tool.execute("nope", {}, context)
        assert not result.success
        assert result.error == "Unknown function: nope"
        assert result.error_kind == "not_found"


class TestLifecycle:
    async def test_unregister_is_idempotent(self, registry):
        tool = await registry.register_tool(AlphaTool)
        assert await registry.unregister_tool("alpha") is True
        assert await registry.unregister_tool("alpha") is False
        assert tool.cleaned
        assert not registry.has_function("run")

    async def test_clear_all_survives_cleanup_errors(self, registry):
        alpha = await registry.register_tool(AlphaTool)
        await registry.register_tool(BrokenCleanupTool)
        await registry.clear_all()
        assert alpha.cleaned
        assert registry.get_stats()["total_tools"] == 0
        assert registry.available_functions() == []

    async def test_stats_counts(self, registry):
        await registry.register_tool(AlphaTool)
        stats = registry.get_stats()
        assert stats["function_count"] == 2
        assert stats["tag_count"] == 1
        assert "registered_at" in stats["tools_by_name"]["alpha"]


def test_fail_requires_message():
    with pytest.raises(ValueError):
        ToolResult.fail("")


class BadSchemaTool(AlphaTool):
    name = "bad_schema"

    def get_schemas(self):
        raise ValueError("bad schema")


async def test_tool_is_cleaned_up_when_schemas_fail(registry):
    created = []

    def factory():
        tool = BadSchemaTool()
        created.append(tool)
        return tool

    with pytest.raises(ValueError, match="bad schema"):
        await registry.register_tool(factory)

    assert created[0].cleaned
    assert registry.get_stats()["total_tools"] == 0


async def test_registration_metadata_in_stats(registry):
    await registry.register_tool(AlphaTool, RegisterOptions(metadata={"source": "plugin"}))
    assert registry.get_stats()["tools_by_name"]["alpha"]["metadata"] == {"source": "plugin"}


async def test_tag_parameters(registry):
    await registry.register_tool(AlphaTool)
    assert registry.get_tag_parameters()["run"]["value"]["type"] == "integer"
