"""Shared fixtures: a temp sandbox, an on-disk thread store and a scripted provider."""

from pathlib import Path
from typing import Any, AsyncIterator

import pytest

from pysuna.cache.memory import MemoryCache
from pysuna.compaction.policy import CompactionPolicy
from pysuna.llm.models import AssistantTurn, StreamItem
from pysuna.threads.manager import ThreadManager
from pysuna.threads.store import JsonlThreadStore
from pysuna.tools.base import ToolContext


class ScriptedProvider:
    """Chat provider that replays canned turns and records every prompt."""

    model = "scripted"

    def __init__(self, turns: list[tuple[list[str], AssistantTurn]] | None = None):
        self.turns = list(turns or [])
        self.prompts: list[list[dict[str, Any]]] = []
        self.tools_seen: list[list[dict[str, Any]] | None] = []
        self.closed = False

    async def stream(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None
    ) -> AsyncIterator[StreamItem]:
        self.prompts.append([dict(m) for m in messages])
        self.tools_seen.append(tools)
        if self.turns:
            chunks, turn = self.turns.pop(0)
        else:
            chunks, turn = ["ok"], AssistantTurn(text="ok", finish_reason="stop")
        for c in chunks:
            yield c
        yield turn

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def sandbox(tmp_path: Path) -> Path:
    root = tmp_path / "sandbox"
    root.mkdir()
    return root


@pytest.fixture
def store(tmp_path: Path) -> JsonlThreadStore:
    return JsonlThreadStore(tmp_path / "threads")


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def manager(store, cache) -> ThreadManager:
    return ThreadManager(store, cache, policy=CompactionPolicy(keep_recent=10, summarize_when_over=1000))


@pytest.fixture
def context() -> ToolContext:
    return ToolContext(user_id="tester", thread_id="t-1", request_id="req-1")


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()
