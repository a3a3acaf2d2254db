from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from .models import AssistantTurn, StreamItem, ToolCall
from ..errors import ProviderError

logger = logging.getLogger(__name__)


def _parse_args(arg_str: Any) -> dict[str, Any]:
    if isinstance(arg_str, dict):
        return arg_str
    try:
        args = json.loads(arg_str or "{}")
    except json.JSONDecodeError:
        logger.warning("Provider sent tool arguments that are not valid JSON")
        return {}
    return args if isinstance(args, dict) else {}


@dataclass
class OpenAICompatProvider:
    """
    Minimal async OpenAI-compatible Chat Completions client (streaming).
    Works with OpenAI and many compatible gateways (OpenRouter, vLLM, LM Studio, etc.)
    """

    model: str
    base_url: str
    api_key: str
    provider_name: str = "openai"
    temperature: float = 0.0
    max_tokens: int = 4096
    timeout: float = 120.0
    transport: httpx.AsyncBaseTransport | None = None
    _client: httpx.AsyncClient | None = field(default=None, init=False, repr=False)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamItem]:
        if not self.api_key:
            raise ProviderError(f"Missing API key for provider {self.provider_name}")

        url = self.base_url.rstrip("/") + "/chat/completions"
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        headers = {"Authorization": f"Bearer {self.api_key}"}

        # OpenAI-compatible servers stream SSE lines of the form:
        #   data: {"choices":[{"delta":{...}}]}
        # ending with:
        #   data: [DONE]
        text_parts: list[str] = []
        # tool_calls are streamed as deltas by index; accumulate into strings.
        tc_by_index: dict[int, dict[str, Any]] = {}
        finish_reason: str | None = None
        usage: dict[str, Any] | None = None

        try:
            async with self._http().stream("POST", url, json=payload, headers=headers) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise ProviderError(f"Provider HTTP {resp.status_code}: {body[:500]}")
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data_str = line[len("data:"):].strip()
                    if data_str == "[DONE]":
                        break
                    try:
                        ev = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(ev.get("usage"), dict):
                        usage = ev["usage"]
                    choices = ev.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
                    delta = choice.get("delta") or {}
                    if delta.get("content"):
                        chunk = str(delta["content"])
                        text_parts.append(chunk)
                        yield chunk
                    for tc in delta.get("tool_calls") or []:
                        idx = int(tc.get("index", 0))
                        cur = tc_by_index.setdefault(idx, {"id": "", "name": "", "arguments": ""})
                        if tc.get("id"):
                            cur["id"] = tc["id"]
                        fn = tc.get("function") or {}
                        if fn.get("name"):
                            cur["name"] = fn["name"]
                        if fn.get("arguments"):
                            cur["arguments"] += str(fn["arguments"])
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider request failed: {e}") from e

        turn = AssistantTurn(text="".join(text_parts), finish_reason=finish_reason, usage=usage)
        for idx in sorted(tc_by_index):
            tc = tc_by_index[idx]
            turn.tool_calls.append(
                ToolCall(id=str(tc["id"] or f"call_{idx}"), name=str(tc["name"]), arguments=_parse_args(tc["arguments"]))
            )
        yield turn
