from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping

_PARAM_RE = re.compile(r"<([A-Za-z_][\w-]*)>(.*?)</\1>", re.DOTALL)

TagParameters = Mapping[str, Mapping[str, Mapping[str, Any]]]


@dataclass
class TagCall:
    tag: str
    params: dict[str, Any]
    raw: str


def _value(text: str, param: Mapping[str, Any] | None) -> Any:
    kind = (param or {}).get("type", "string")
    if kind == "string":
        # file content and commands are taken verbatim, whitespace included
        return text
    s = text.strip()
    if kind in ("array", "object"):
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            return s
    # numbers and booleans stay strings; the tool's validator coerces "10" / "true"
    return s


def parse_tag_calls(text: str, tags: TagParameters) -> list[TagCall]:
    """Find `<tag><param>value</param>...</tag>` blocks for registered tags.

    `tags` maps each tag name to its parameter schemas (as in `TagSchema.parameters`);
    a parameter's declared type decides how its text is read. Calls are returned in
    the order they appear. Unknown tags are ignored.
    """
    names = sorted({t for t in tags if t}, key=len, reverse=True)
    if not names or not text:
        return []
    block_re = re.compile(
        r"<(" + "|".join(re.escape(t) for t in names) + r")>(.*?)</\1>",
        re.DOTALL,
    )
    calls: list[TagCall] = []
    for m in block_re.finditer(text):
        declared = tags[m.group(1)]
        params = {name: _value(val, declared.get(name)) for name, val in _PARAM_RE.findall(m.group(2))}
        calls.append(TagCall(tag=m.group(1), params=params, raw=m.group(0)))
    return calls


def render_tag_result(tag: str, payload: str) -> str:
    return f'<tool_result tag="{tag}">\n{payload}\n</tool_result>'
