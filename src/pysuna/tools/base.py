from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ValidationError

from .schema import OperationSpec, SchemaDescriptor, schemas_for

ErrorKind = Literal["validation", "policy", "backend", "timeout", "not_found", "internal"]

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: Any = None, metadata: dict[str, Any] | None = None) -> "ToolResult":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error: str,
        kind: ErrorKind = "internal",
        data: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> "ToolResult":
        if not error:
            raise ValueError("failed ToolResult needs an error message")
        return cls(success=False, data=data, error=error, metadata=metadata, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
            out["error_kind"] = self.error_kind
        if self.metadata:
            out["metadata"] = self.metadata
        return out


@dataclass
class ToolContext:
    user_id: str | None = None
    thread_id: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[BaseModel, "ToolContext | None"], Awaitable[ToolResult]]


class BaseTool:
    """A named bundle of operations.

    Subclasses declare `operations` (one OperationSpec each) and map operation
    names to async handlers in `handlers()`. Handlers get the validated model,
    never the raw parameter dict.
    """

    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    operations: tuple[OperationSpec, ...] = ()

    def __init__(self) -> None:
        self._initialized = False

    async def init(self) -> None:
        self._initialized = True

    async def cleanup(self) -> None:
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def get_schemas(self) -> dict[str, list[SchemaDescriptor]]:
        return {op.name: schemas_for(op) for op in self.operations}

    def get_operation(self, function_name: str) -> OperationSpec | None:
        for op in self.operations:
            if op.name == function_name:
                return op
        return None

    def handlers(self) -> dict[str, Handler]:
        raise NotImplementedError

    def validate_parameters(
        self, function_name: str, parameters: dict[str, Any] | None
    ) -> tuple[BaseModel | None, ToolResult | None]:
        op = self.get_operation(function_name)
        if op is None:
            return None, ToolResult.fail(f"Unknown function: {function_name}", "not_found")
        try:
            return op.model().model_validate(parameters or {}), None
        except ValidationError as e:
            details = ", ".join(
                f"{'.'.join(str(x) for x in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
            )
            return None, ToolResult.fail(
                f"Parameter validation failed for {function_name}: {details}", "validation"
            )

    async def execute(
        self,
        function_name: str,
        parameters: dict[str, Any] | None,
        context: ToolContext | None = None,
    ) -> ToolResult:
        handler = self.handlers().get(function_name)
        if handler is None:
            return ToolResult.fail(f"Unknown function: {function_name}", "not_found")
        params, failure = self.validate_parameters(function_name, parameters)
        if failure is not None:
            return failure
        assert params is not None
        return await handler(params, context)
