from __future__ import annotations

import json
import logging
import uuid
from typing import Any, AsyncIterator

from .tag_calls import parse_tag_calls, render_tag_result
from ..errors import ProviderError
from ..llm.models import AssistantTurn, ChatProvider
from ..log import Timer, log_fields
from ..threads.manager import ThreadManager
from ..tools.base import ToolContext, ToolResult
from ..tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are pysuna, a helpful assistant with access to tools.
Rules:
- Use the provided tools to run commands, work with files in the sandbox, search the web or read pages.
- Do not fabricate command outputs or file contents: use tools.
- Keep tool arguments minimal and correct.
"""

MAX_TOOL_RESULT_CHARS = 12000


def _tool_payload(result: ToolResult) -> str:
    s = json.dumps(result.to_dict(), ensure_ascii=False, default=str)
    if len(s) > MAX_TOOL_RESULT_CHARS:
        head = s[: MAX_TOOL_RESULT_CHARS // 2]
        tail = s[-MAX_TOOL_RESULT_CHARS // 2:]
        s = head + "\n\n... (truncated) ...\n\n" + tail
    return s


def _merge_usage(total: dict[str, Any] | None, usage: dict[str, Any] | None) -> dict[str, Any] | None:
    if not usage:
        return total
    out = dict(total or {})
    for k, v in usage.items():
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            out[k] = out.get(k, 0) + v
    return out


def _history_to_prompt(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for m in history:
        if m["role"] == "tool":
            # stored tool output has no call id to pair with
            out.append({"role": "system", "content": f"Tool output: {m['content']}"})
        else:
            out.append({"role": m["role"], "content": m["content"]})
    return out


class ChatService:
    """Runs one assistant reply: model turns, tool dispatch, persistence."""

    def __init__(
        self,
        registry: ToolRegistry,
        threads: ThreadManager,
        provider: ChatProvider,
        *,
        max_steps: int = 8,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.registry = registry
        self.threads = threads
        self.provider = provider
        self.max_steps = max_steps
        self.system_prompt = system_prompt

    def _system_message(self) -> dict[str, Any]:
        text = self.system_prompt
        examples = self.registry.get_tag_examples()
        if examples:
            text += (
                "\nTools can also be called inline with tag markup, for example:\n"
                + "\n\n".join(examples)
            )
        return {"role": "system", "content": text}

    async def stream_reply(
        self,
        thread_id: str,
        user_id: str,
        request_id: str | None = None,
    ) -> AsyncIterator[str]:
        timer = Timer("chat_reply", logger)
        ctx: ToolContext = self.threads.get_thread_context(thread_id, user_id, request_id)
        history = await self.threads.get_messages_for_ai(thread_id)
        prompt = [self._system_message(), *_history_to_prompt(history)]
        tools = self.registry.get_function_schemas(include_examples=False)

        streamed: list[str] = []
        tool_log: list[dict[str, Any]] = []
        usage: dict[str, Any] | None = None
        finish_reason: str | None = None

        try:
            for step in range(self.max_steps):
                turn: AssistantTurn | None = None
                async for item in self.provider.stream(prompt, tools=tools):
                    if isinstance(item, AssistantTurn):
                        turn = item
                    else:
                        streamed.append(item)
                        yield item
                if turn is None:
                    raise ProviderError("Provider stream ended without a final turn")
                usage = _merge_usage(usage, turn.usage)
                finish_reason = turn.finish_reason

                if turn.tool_calls:
                    for i, tc in enumerate(turn.tool_calls):
                        if not tc.id:
                            tc.id = f"call_{step}_{i}_{uuid.uuid4().hex[:8]}"
                    prompt.append({
                        "role": "assistant",
                        "content": turn.text or None,
                        "tool_calls": [tc.to_openai() for tc in turn.tool_calls],
                    })
                    for tc in turn.tool_calls:
                        result = await self.registry.execute_function(tc.name, tc.arguments, ctx)
                        tool_log.append(_log_entry("function", tc.name, result, tc.id))
                        prompt.append({"role": "tool", "tool_call_id": tc.id, "content": _tool_payload(result)})
                    continue

                calls = parse_tag_calls(turn.text, self.registry.get_tag_parameters())
                if calls:
                    prompt.append({"role": "assistant", "content": turn.text})
                    rendered: list[str] = []
                    for call in calls:
                        result = await self.registry.execute_tag(call.tag, call.params, ctx)
                        tool_log.append(_log_entry("tag", call.tag, result))
                        rendered.append(render_tag_result(call.tag, _tool_payload(result)))
                    prompt.append({"role": "user", "content": "\n".join(rendered)})
                    continue
                break
            else:
                finish_reason = "max_steps"
                logger.warning("Reply hit max steps", extra=log_fields(thread_id=thread_id, max_steps=self.max_steps))
        except ProviderError:
            logger.exception("Provider failed mid-reply", extra=log_fields(thread_id=thread_id, request_id=request_id))
            finish_reason = "error"
            notice = "\n[The model provider failed; the reply is incomplete.]"
            streamed.append(notice)
            yield notice

        text = "".join(streamed)
        await self.threads.add_message(
            thread_id,
            "assistant",
            text,
            {"usage": usage, "finish_reason": finish_reason, "tool_calls": tool_log},
        )
        timer.end(thread_id=thread_id, request_id=request_id, tool_calls=len(tool_log), finish_reason=finish_reason)
        await self.threads.maybe_summarize(thread_id)


def _log_entry(kind: str, name: str, result: ToolResult, call_id: str | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {"kind": kind, "name": name, "success": result.success}
    if call_id:
        entry["id"] = call_id
    if not result.success:
        entry["error_kind"] = result.error_kind
    return entry
