from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .base import BaseTool, ToolContext, ToolResult
from .schema import FunctionSchema, SchemaDescriptor, TagSchema
from ..log import Timer, log_fields

logger = logging.getLogger(__name__)


@dataclass
class RegisterOptions:
    # None means every operation the tool declares
    function_names: list[str] | None = None
    enable_openapi: bool = True
    enable_xml: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolEntry:
    name: str
    description: str
    version: str
    instance: BaseTool
    schemas: Mapping[str, tuple[SchemaDescriptor, ...]]
    registered_at: str
    metadata: Mapping[str, Any]


@dataclass(frozen=True)
class _Snapshot:
    tools: Mapping[str, ToolEntry]
    # operation / tag name -> (owning tool name, descriptor)
    functions: Mapping[str, tuple[str, FunctionSchema]]
    tags: Mapping[str, tuple[str, TagSchema]]
    overridden: tuple[dict[str, str], ...]


_EMPTY = _Snapshot(MappingProxyType({}), MappingProxyType({}), MappingProxyType({}), ())


def _build_snapshot(tools: dict[str, ToolEntry]) -> _Snapshot:
    functions: dict[str, tuple[str, FunctionSchema]] = {}
    tags: dict[str, tuple[str, TagSchema]] = {}
    overridden: list[dict[str, str]] = []

    # Registration order; a later tool wins a colliding key.
    for entry in tools.values():
        for descriptors in entry.schemas.values():
            for d in descriptors:
                if isinstance(d, FunctionSchema):
                    index, key, kind = functions, d.name, "function"
                else:
                    index, key, kind = tags, d.tag_name, "tag"
                prev = index.get(key)
                if prev is not None and prev[0] != entry.name:
                    overridden.append({"kind": kind, "key": key, "previous": prev[0], "current": entry.name})
                index[key] = (entry.name, d)  # type: ignore[assignment]

    return _Snapshot(
        tools=MappingProxyType(dict(tools)),
        functions=MappingProxyType(functions),
        tags=MappingProxyType(tags),
        overridden=tuple(overridden),
    )


class ToolRegistry:
    """Registered tools and their operation/tag indices.

    Mutations are serialized by a lock and publish a new immutable snapshot in
    one assignment. Lookups and dispatch read the current snapshot unlocked.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._snapshot: _Snapshot = _EMPTY

    async def register_tool(
        self, tool_cls: Callable[[], BaseTool], options: RegisterOptions | None = None
    ) -> BaseTool:
        """Instantiate, init and index a tool.

        `tool_cls` is a tool class or any zero-argument factory (e.g. a
        `functools.partial` carrying configuration). Raises if `init()` does.
        """
        opts = options or RegisterOptions()
        instance = tool_cls()
        await instance.init()
        try:
            declared = instance.get_schemas()
        except Exception:
            try:
                await instance.cleanup()
            except Exception:
                logger.exception("Cleanup failed for tool %s", instance.name)
            raise

        schemas: dict[str, tuple[SchemaDescriptor, ...]] = {}
        for op_name, descriptors in declared.items():
            if opts.function_names is not None and op_name not in opts.function_names:
                continue
            kept = tuple(
                d
                for d in descriptors
                if (isinstance(d, FunctionSchema) and opts.enable_openapi)
                or (isinstance(d, TagSchema) and opts.enable_xml)
            )
            if kept:
                schemas[op_name] = kept

        entry = ToolEntry(
            name=instance.name,
            description=instance.description,
            version=instance.version,
            instance=instance,
            schemas=MappingProxyType(schemas),
            registered_at=datetime.now(timezone.utc).isoformat(),
            metadata=MappingProxyType(dict(opts.metadata)),
        )

        async with self._lock:
            previous = self._snapshot.tools.get(instance.name)
            if previous is not None:
                await self._cleanup_quietly(previous)
            tools = {k: v for k, v in self._snapshot.tools.items() if k != instance.name}
            tools[instance.name] = entry
            self._snapshot = _build_snapshot(tools)

        logger.info(
            "Registered tool %s",
            instance.name,
            extra=log_fields(
                tool=instance.name,
                version=instance.version,
                functions=sum(isinstance(d, FunctionSchema) for ds in schemas.values() for d in ds),
                tags=sum(isinstance(d, TagSchema) for ds in schemas.values() for d in ds),
            ),
        )
        for o in self._snapshot.overridden:
            if o["current"] == instance.name:
                logger.warning(
                    "%s %s re-bound from tool %s to %s",
                    o["kind"], o["key"], o["previous"], o["current"],
                )
        return instance

    async def unregister_tool(self, name: str) -> bool:
        async with self._lock:
            entry = self._snapshot.tools.get(name)
            if entry is None:
                return False
            await self._cleanup_quietly(entry)
            tools = {k: v for k, v in self._snapshot.tools.items() if k != name}
            self._snapshot = _build_snapshot(tools)
        logger.info("Unregistered tool %s", name)
        return True

    async def clear_all(self) -> None:
        async with self._lock:
            for entry in self._snapshot.tools.values():
                await self._cleanup_quietly(entry)
            self._snapshot = _EMPTY
        logger.info("Cleared all tools")

    async def _cleanup_quietly(self, entry: ToolEntry) -> None:
        try:
            await entry.instance.cleanup()
        except Exception:
            logger.exception("Cleanup failed for tool %s", entry.name)

    # -- dispatch --

    async def execute_function(
        self, function_name: str, parameters: dict[str, Any] | None, context: ToolContext | None = None
    ) -> ToolResult:
        snap = self._snapshot
        hit = snap.functions.get(function_name)
        if hit is None:
            return ToolResult.fail(f"Function {function_name} not found in registry", "not_found")
        entry = snap.tools[hit[0]]
        return await self.execute_safely(entry.instance, function_name, parameters, context)

    async def execute_tag(
        self, tag_name: str, parameters: dict[str, Any] | None, context: ToolContext | None = None
    ) -> ToolResult:
        snap = self._snapshot
        hit = snap.tags.get(tag_name)
        if hit is None:
            return ToolResult.fail(f"Tag {tag_name} not found in registry", "not_found")
        entry = snap.tools[hit[0]]
        op_name = next(
            (op for op, ds in entry.schemas.items() if any(d is hit[1] for d in ds)),
            tag_name,
        )
        return await self.execute_safely(entry.instance, op_name, parameters, context)

    async def execute_safely(
        self,
        tool: BaseTool,
        function_name: str,
        parameters: dict[str, Any] | None,
        context: ToolContext | None = None,
    ) -> ToolResult:
        timer = Timer(f"{tool.name}.{function_name}", logger)
        try:
            result = await tool.execute(function_name, parameters, context)
        except Exception as e:
            logger.exception(
                "Tool %s.%s raised",
                tool.name,
                function_name,
                extra=log_fields(
                    tool=tool.name,
                    function=function_name,
                    request_id=context.request_id if context else None,
                    duration_ms=timer.elapsed_ms,
                ),
            )
            return ToolResult.fail(f"Tool execution failed: {e}", "internal")
        timer.end(
            tool=tool.name,
            function=function_name,
            success=result.success,
            error_kind=result.error_kind,
            request_id=context.request_id if context else None,
        )
        return result

    # -- discovery --

    def get_function_schemas(self, include_examples: bool = True) -> list[dict[str, Any]]:
        """Structured-call schemas; pass `include_examples=False` for a provider payload."""
        return [d.to_dict(include_examples) for _, d in self._snapshot.functions.values()]

    def get_tag_schemas(self) -> list[dict[str, Any]]:
        return [d.to_dict() for _, d in self._snapshot.tags.values()]

    def get_tag_examples(self) -> list[str]:
        out: list[str] = []
        for _, d in self._snapshot.tags.values():
            out.extend(d.examples)
        return out

    def get_tool(self, name: str) -> BaseTool | None:
        entry = self._snapshot.tools.get(name)
        return entry.instance if entry else None

    def get_function_tool(self, function_name: str) -> BaseTool | None:
        snap = self._snapshot
        hit = snap.functions.get(function_name)
        return snap.tools[hit[0]].instance if hit else None

    def get_tag_tool(self, tag_name: str) -> BaseTool | None:
        snap = self._snapshot
        hit = snap.tags.get(tag_name)
        return snap.tools[hit[0]].instance if hit else None

    def get_all_tools(self) -> dict[str, BaseTool]:
        return {name: e.instance for name, e in self._snapshot.tools.items()}

    def has_function(self, function_name: str) -> bool:
        return function_name in self._snapshot.functions

    def has_tag(self, tag_name: str) -> bool:
        return tag_name in self._snapshot.tags

    def available_functions(self) -> list[str]:
        return list(self._snapshot.functions)

    def available_tags(self) -> list[str]:
        return list(self._snapshot.tags)

    def get_tag_parameters(self) -> dict[str, Mapping[str, Mapping[str, Any]]]:
        """Tag name -> declared parameter schemas, for parsing inline calls."""
        return {tag: d.parameters for tag, (_, d) in self._snapshot.tags.items()}

    def get_stats(self) -> dict[str, Any]:
        snap = self._snapshot
        return {
            "total_tools": len(snap.tools),
            "function_count": len(snap.functions),
            "tag_count": len(snap.tags),
            "tools_by_name": {
                name: {"version": e.version, "registered_at": e.registered_at, "metadata": dict(e.metadata)}
                for name, e in snap.tools.items()
            },
            "overridden": [dict(o) for o in snap.overridden],
        }
