from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, create_model

SchemaType = Literal["openapi", "xml"]

_PY_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "object": dict[str, Any],
}


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: str  # "string" | "integer" | "number" | "boolean" | "array" | "object"
    description: str = ""
    required: bool = False
    default: Any = None
    enum: tuple[Any, ...] | None = None
    items: str | None = None  # element type for arrays
    minimum: float | None = None
    maximum: float | None = None
    max_length: int | None = None

    def json_schema(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        if self.description:
            out["description"] = self.description
        if self.type == "array":
            out["items"] = {"type": self.items or "string"}
        if self.enum is not None:
            out["enum"] = list(self.enum)
        if self.default is not None:
            out["default"] = self.default
        if self.minimum is not None:
            out["minimum"] = self.minimum
        if self.maximum is not None:
            out["maximum"] = self.maximum
        if self.max_length is not None:
            out["maxLength"] = self.max_length
        return out

    def python_type(self) -> Any:
        if self.enum is not None:
            return Literal[self.enum]  # type: ignore[valid-type]
        if self.type == "array":
            return list[_PY_TYPES.get(self.items or "string", Any)]
        if self.type not in _PY_TYPES:
            raise ValueError(f"Unsupported parameter type {self.type!r} for {self.name}")
        return _PY_TYPES[self.type]


@dataclass(frozen=True)
class FunctionSchema:
    """Structured-call view of an operation."""

    name: str
    description: str
    parameters: dict[str, Any]
    examples: tuple[dict[str, Any], ...] = ()
    schema_type: SchemaType = "openapi"

    def to_dict(self, include_examples: bool = True) -> dict[str, Any]:
        fn: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }
        # `examples` is not part of the OpenAI tool object
        if include_examples and self.examples:
            fn["examples"] = [dict(e) for e in self.examples]
        return {"type": "function", "function": fn}


@dataclass(frozen=True)
class TagSchema:
    """Tag-markup view of an operation."""

    tag_name: str
    description: str
    parameters: dict[str, dict[str, Any]]
    examples: tuple[str, ...] = ()
    schema_type: SchemaType = "xml"

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag_name": self.tag_name,
            "description": self.description,
            "parameters": {k: dict(v) for k, v in self.parameters.items()},
            "examples": list(self.examples),
        }


SchemaDescriptor = Union[FunctionSchema, TagSchema]


def _format_tag_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def render_tag_call(tag_name: str, params: dict[str, Any]) -> str:
    lines = [f"<{tag_name}>"]
    for k, v in params.items():
        lines.append(f"<{k}>{_format_tag_value(v)}</{k}>")
    lines.append(f"</{tag_name}>")
    return "\n".join(lines)


@dataclass(frozen=True)
class OperationSpec:
    """Single parameter definition for an operation.

    Both the structured-call descriptor and the tag descriptor are projected
    from this, as is the validation model, so the three cannot drift.
    """

    name: str
    description: str
    params: tuple[ParamSpec, ...] = ()
    tag_name: str | None = None
    examples: tuple[dict[str, Any], ...] = ()
    tag_examples: tuple[str, ...] = ()
    _model: list[type[BaseModel]] = field(default_factory=list, repr=False, compare=False)

    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {p.name: p.json_schema() for p in self.params},
            "required": [p.name for p in self.params if p.required],
        }

    def to_function_schema(self) -> FunctionSchema:
        return FunctionSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameters_schema(),
            examples=self.examples,
        )

    def to_tag_schema(self) -> TagSchema | None:
        if not self.tag_name:
            return None
        params = {
            p.name: {"type": p.type, "description": p.description, "required": p.required}
            for p in self.params
        }
        examples = self.tag_examples or tuple(
            render_tag_call(self.tag_name, {k: v for k, v in ex.items() if k in self.param_names()})
            for ex in self.examples
        )
        return TagSchema(
            tag_name=self.tag_name,
            description=self.description,
            parameters=params,
            examples=examples,
        )

    def param_names(self) -> set[str]:
        return {p.name for p in self.params}

    def model(self) -> type[BaseModel]:
        # built lazily once; the dataclass is frozen so cache in a list slot
        if not self._model:
            self._model.append(_build_model(self))
        return self._model[0]


def _build_model(op: OperationSpec) -> type[BaseModel]:
    fields: dict[str, Any] = {}
    for p in op.params:
        constraints: dict[str, Any] = {"description": p.description or None}
        if p.minimum is not None:
            constraints["ge"] = p.minimum
        if p.maximum is not None:
            constraints["le"] = p.maximum
        if p.max_length is not None:
            constraints["max_length"] = p.max_length
        typ = p.python_type()
        if p.required:
            fields[p.name] = (typ, Field(..., **constraints))
        else:
            fields[p.name] = (Optional[typ], Field(p.default, **constraints))
    model_name = "".join(part.capitalize() for part in op.name.split("_")) + "Params"
    return create_model(model_name, __config__=ConfigDict(extra="ignore"), **fields)


def schemas_for(op: OperationSpec, *, include_tag: bool = True) -> list[SchemaDescriptor]:
    out: list[SchemaDescriptor] = [op.to_function_schema()]
    if include_tag:
        tag = op.to_tag_schema()
        if tag is not None:
            out.append(tag)
    return out
