"""Thread manager: persistence, caching, stats and summarization."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from pysuna.cache.memory import messages_key, thread_key
from pysuna.compaction.policy import CompactionPolicy
from pysuna.compaction.summarizer import SUMMARY_PREFIX, is_summary
from pysuna.errors import StoreError, ThreadNotFoundError
from pysuna.threads.manager import ThreadManager
from pysuna.threads.models import ThreadConfig


async def _thread_with(manager, count):
    thread = await manager.create_thread(ThreadConfig(account_id="acct", title="t"))
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        await manager.add_message(thread.thread_id, role, f"message {i}")
    return thread.thread_id


class TestThreads:
    async def test_scenario_stats_after_two_messages(self, manager):
        thread = await manager.create_thread(ThreadConfig())
        assert thread.thread_id
        assert thread.account_id == "anonymous"
        await manager.add_message(thread.thread_id, "user", "Hello")
        await manager.add_message(thread.thread_id, "assistant", "Hi there")

        stats = await manager.get_thread_stats(thread.thread_id)

        assert stats.message_count == 2
        assert stats.user_messages == 1
        assert stats.assistant_messages == 1
        assert stats.total_characters == len("Hello") + len("Hi there")

    async def test_explicit_thread_id(self, manager):
        thread = await manager.create_thread(ThreadConfig(thread_id="fixed-id", metadata={"k": "v"}))
        assert thread.thread_id == "fixed-id"
        assert (await manager.get_thread("fixed-id")).metadata == {"k": "v"}

    async def test_unknown_thread(self, manager):
        assert await manager.get_thread("missing") is None
        with pytest.raises(ThreadNotFoundError):
            await manager.get_thread_stats("missing")

    async def test_add_message_to_unknown_thread_raises(self, manager):
        with pytest.raises(ThreadNotFoundError):
            await manager.add_message("missing", "user", "hi")

    async def test_invalid_role(self, manager):
        thread_id = await _thread_with(manager, 0)
        with pytest.raises(ValueError):
            await manager.add_message(thread_id, "robot", "beep")

    async def test_update_thread_invalidates_cache(self, manager):
        thread_id = await _thread_with(manager, 0)
        assert (await manager.get_thread(thread_id)).title == "t"
        await manager.update_thread(thread_id, title="renamed", metadata={"x": 1})
        got = await manager.get_thread(thread_id)
        assert got.title == "renamed"
        assert got.metadata == {"x": 1}

    async def test_delete_thread(self, manager, cache):
        thread_id = await _thread_with(manager, 2)
        await manager.get_thread(thread_id)
        await manager.get_messages(thread_id, limit=1)
        assert await manager.delete_thread(thread_id) is True
        assert await cache.keys(f"*{thread_id}*") == []
        assert await manager.get_thread(thread_id) is None
        assert await manager.delete_thread(thread_id) is False

    async def test_thread_context(self, manager):
        ctx = manager.get_thread_context("t1", "u1", "r1")
        assert (ctx.thread_id, ctx.user_id, ctx.request_id) == ("t1", "u1", "r1")
        assert "timestamp" in ctx.metadata

    async def test_cleanup_old_threads(self, manager, store):
        stale = await _thread_with(manager, 0)
        fresh = await _thread_with(manager, 0)
        thread = await store.get_thread(stale)
        thread.updated_at = (datetime.now(timezone.utc) - timedelta(days=40)).isoformat()
        await store.update_thread(thread)

        assert await manager.cleanup_old_threads(older_than_days=30) == 1
        assert await manager.get_thread(stale) is None
        assert await manager.get_thread(fresh) is not None


class TestMessages:
    async def test_round_trip_in_call_order(self, manager):
        thread_id = await _thread_with(manager, 0)
        sent = [("user", "a"), ("assistant", "b"), ("tool", "c"), ("system", "d"), ("user", "e")]
        for role, content in sent:
            await manager.add_message(thread_id, role, content)

        ai = await manager.get_messages_for_ai(thread_id)

        assert [(m["role"], m["content"]) for m in ai] == sent

    async def test_invalidate_on_write(self, manager, cache):
        thread_id = await _thread_with(manager, 1)
        assert len(await manager.get_messages(thread_id)) == 1
        assert len(await manager.get_messages(thread_id, limit=5)) == 1
        assert await cache.get(messages_key(thread_id)) is not None

        await manager.add_message(thread_id, "assistant", "new")

        assert await cache.get(messages_key(thread_id, 5)) is None
        assert [m.content for m in await manager.get_messages(thread_id)] == ["message 0", "new"]
        assert len(await manager.get_messages(thread_id, limit=5)) == 2

    async def test_cached_reads_skip_store(self, store, cache):
        manager = ThreadManager(store, cache)
        thread_id = await _thread_with(manager, 2)
        await manager.get_messages(thread_id)
        store.get_messages = AsyncMock(side_effect=AssertionError("store should not be read"))
        assert len(await manager.get_messages(thread_id)) == 2

    async def test_update_message_metadata(self, manager):
        thread_id = await _thread_with(manager, 1)
        msg = (await manager.get_messages(thread_id))[0]
        await manager.update_message(msg.message_id, thread_id, {"rating": 5})
        assert (await manager.get_messages(thread_id))[0].metadata == {"rating": 5}

    async def test_failing_cache_degrades_to_store(self, store):
        broken = AsyncMock()
        for name in ("get", "set", "delete", "delete_pattern"):
            getattr(broken, name).side_effect = ConnectionError("cache down")
        manager = ThreadManager(store, broken)

        thread_id = await _thread_with(manager, 3)

        assert len(await manager.get_messages(thread_id)) == 3
        assert (await manager.get_thread(thread_id)).thread_id == thread_id

    async def test_caching_disabled(self, store, cache):
        manager = ThreadManager(store, cache, enable_caching=False)
        thread_id = await _thread_with(manager, 2)
        await manager.get_messages(thread_id)
        assert len(cache) == 0

    async def test_store_errors_propagate(self, manager, store):
        thread_id = await _thread_with(manager, 0)
        store.add_message = AsyncMock(side_effect=StoreError("add_message", "disk full"))
        with pytest.raises(StoreError):
            await manager.add_message(thread_id, "user", "hi")

    async def test_ai_view_limit(self, manager):
        thread_id = await _thread_with(manager, 4)
        ai = await manager.get_messages_for_ai(thread_id, limit=2)
        assert [m["content"] for m in ai] == ["message 0", "message 1"]


class TestSummarization:
    async def test_summarize_keeps_recent_and_hides_old(self, manager):
        thread_id = await _thread_with(manager, 15)
        before = await manager.get_messages(thread_id)

        summary = await manager.summarize_old_messages(thread_id, keep_recent_count=10)

        assert summary.role == "system"
        assert summary.content.startswith(SUMMARY_PREFIX)
        assert "3 user messages and 2 assistant responses" in summary.content
        assert summary.metadata["original_message_count"] == 5
        assert summary.metadata["summarized_message_ids"] == [m.message_id for m in before[:5]]

        after = await manager.get_messages(thread_id)
        assert len(after) == 16
        assert [m.to_dict() for m in after[5:15]] == [m.to_dict() for m in before[5:]]

        ai = await manager.get_messages_for_ai(thread_id)
        assert [m["content"] for m in ai[:10]] == [f"message {i}" for i in range(5, 15)]
        assert ai[10]["content"] == summary.content
        assert len(ai) == 11

    async def test_archive_deletes_summarized(self, manager):
        thread_id = await _thread_with(manager, 15)
        before = await manager.get_messages(thread_id)

        await manager.summarize_old_messages(thread_id, keep_recent_count=10, archive=True)

        after = await manager.get_messages(thread_id)
        assert len(after) == 11
        assert [m.message_id for m in after[:10]] == [m.message_id for m in before[5:]]
        assert is_summary(after[10])

    async def test_nothing_to_summarize(self, manager):
        thread_id = await _thread_with(manager, 5)
        assert await manager.summarize_old_messages(thread_id, keep_recent_count=10) is None
        assert len(await manager.get_messages(thread_id)) == 5

    async def test_summary_ids_accumulate(self, manager):
        thread_id = await _thread_with(manager, 15)
        first = await manager.summarize_old_messages(thread_id, keep_recent_count=10)
        for i in range(5):
            await manager.add_message(thread_id, "user", f"later {i}")

        second = await manager.summarize_old_messages(thread_id, keep_recent_count=10)

        assert second.metadata["original_message_count"] == 6
        first_ids = set(first.metadata["summarized_message_ids"])
        assert first_ids < set(second.metadata["summarized_message_ids"])
        ai = [m["content"] for m in await manager.get_messages_for_ai(thread_id)]
        assert ai == (
            [f"message {i}" for i in range(11, 15)]
            + [first.content]
            + [f"later {i}" for i in range(5)]
            + [second.content]
        )

    async def test_policy_defaults_and_auto_trigger(self, store, cache):
        manager = ThreadManager(
            store, cache, policy=CompactionPolicy(keep_recent=2, summarize_when_over=4, archive_summarized=True)
        )
        thread_id = await _thread_with(manager, 4)
        assert await manager.maybe_summarize(thread_id) is None

        await manager.add_message(thread_id, "user", "one more")
        summary = await manager.maybe_summarize(thread_id)

        assert summary is not None
        assert len(await manager.get_messages(thread_id)) == 3

    async def test_negative_keep_rejected(self, manager):
        thread_id = await _thread_with(manager, 1)
        with pytest.raises(ValueError):
            await manager.summarize_old_messages(thread_id, keep_recent_count=-1)
