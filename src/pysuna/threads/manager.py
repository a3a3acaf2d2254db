from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .models import ROLES, Message, Role, Thread, ThreadConfig, ThreadStats, new_id, utc_now
from .store import ThreadStore
from ..cache.memory import Cache, messages_key, thread_key
from ..compaction import summarizer
from ..compaction.policy import CompactionPolicy
from ..errors import StoreError, ThreadNotFoundError
from ..log import Timer, log_fields
from ..tools.base import ToolContext

logger = logging.getLogger(__name__)

THREAD_TTL = 300
MESSAGES_TTL = 120


class ThreadManager:
    """Conversation persistence with read-through caching.

    Store failures are logged and re-raised. Cache failures are logged and
    treated as a miss, so results never depend on whether caching is on.
    """

    def __init__(
        self,
        store: ThreadStore,
        cache: Cache | None = None,
        *,
        enable_caching: bool = True,
        policy: CompactionPolicy | None = None,
        thread_ttl: int = THREAD_TTL,
        messages_ttl: int = MESSAGES_TTL,
    ):
        self.store = store
        self.cache = cache
        self.enable_caching = enable_caching and cache is not None
        self.policy = policy or CompactionPolicy()
        self.thread_ttl = thread_ttl
        self.messages_ttl = messages_ttl

    # -- cache helpers (never raise) --

    async def _cache_get(self, key: str) -> Any | None:
        if not self.enable_caching:
            return None
        try:
            return await self.cache.get(key)  # type: ignore[union-attr]
        except Exception:
            logger.warning("Cache read failed", exc_info=True, extra=log_fields(key=key))
            return None

    async def _cache_set(self, key: str, value: Any, ttl: int) -> None:
        if not self.enable_caching:
            return
        try:
            await self.cache.set(key, value, ttl)  # type: ignore[union-attr]
        except Exception:
            logger.warning("Cache write failed", exc_info=True, extra=log_fields(key=key))

    async def _invalidate(self, thread_id: str) -> None:
        if not self.enable_caching:
            return
        try:
            await self.cache.delete(thread_key(thread_id))  # type: ignore[union-attr]
            await self.cache.delete(messages_key(thread_id))  # type: ignore[union-attr]
            await self.cache.delete_pattern(f"{messages_key(thread_id)}:*")  # type: ignore[union-attr]
        except Exception:
            logger.warning("Cache invalidation failed", exc_info=True, extra=log_fields(thread_id=thread_id))

    def _store_failed(self, operation: str, timer: Timer | None = None, **ids: Any) -> None:
        if timer is not None:
            timer.end(success=False, **ids)
        logger.error("Store operation %s failed", operation, exc_info=True, extra=log_fields(**ids))

    # -- threads --

    async def create_thread(self, config: ThreadConfig) -> Thread:
        timer = Timer("create_thread", logger)
        now = utc_now()
        thread = Thread(
            thread_id=config.thread_id or new_id(),
            account_id=config.account_id,
            created_at=now,
            updated_at=now,
            title=config.title,
            metadata=config.metadata,
        )
        try:
            created = await self.store.create_thread(thread)
        except StoreError:
            self._store_failed("create_thread", timer, account_id=config.account_id)
            raise
        timer.end(thread_id=created.thread_id)
        return created

    async def get_thread(self, thread_id: str) -> Thread | None:
        cached = await self._cache_get(thread_key(thread_id))
        if cached is not None:
            logger.debug("Thread cache hit", extra=log_fields(thread_id=thread_id))
            return Thread.from_dict(cached)
        try:
            thread = await self.store.get_thread(thread_id)
        except StoreError:
            self._store_failed("get_thread", thread_id=thread_id)
            raise
        if thread is not None:
            await self._cache_set(thread_key(thread_id), thread.to_dict(), self.thread_ttl)
        return thread

    async def update_thread(
        self,
        thread_id: str,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Thread:
        try:
            thread = await self.store.get_thread(thread_id)
            if thread is None:
                raise ThreadNotFoundError(thread_id)
            if title is not None:
                thread.title = title
            if metadata is not None:
                thread.metadata = {**(thread.metadata or {}), **metadata}
            thread.updated_at = utc_now()
            updated = await self.store.update_thread(thread)
        except StoreError:
            self._store_failed("update_thread", thread_id=thread_id)
            raise
        await self._invalidate(thread_id)
        return updated

    async def delete_thread(self, thread_id: str) -> bool:
        timer = Timer("delete_thread", logger)
        try:
            deleted = await self.store.delete_thread(thread_id)
        except StoreError:
            self._store_failed("delete_thread", timer, thread_id=thread_id)
            raise
        await self._invalidate(thread_id)
        timer.end(thread_id=thread_id, deleted=deleted)
        return deleted

    # -- messages --

    async def add_message(
        self,
        thread_id: str,
        role: Role,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        if role not in ROLES:
            raise ValueError(f"Invalid message role: {role}")
        timer = Timer("add_message", logger)
        now = utc_now()
        message = Message(
            message_id=new_id(),
            thread_id=thread_id,
            role=role,
            content=content,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )
        try:
            saved = await self.store.add_message(message)
        except StoreError:
            self._store_failed("add_message", timer, thread_id=thread_id, role=role)
            raise
        await self._invalidate(thread_id)
        timer.end(message_id=saved.message_id, thread_id=thread_id, role=role, content_length=len(content))
        return saved

    async def update_message(self, message_id: str, thread_id: str, metadata: dict[str, Any]) -> Message | None:
        try:
            updated = await self.store.update_message(thread_id, message_id, metadata)
        except StoreError:
            self._store_failed("update_message", thread_id=thread_id, message_id=message_id)
            raise
        await self._invalidate(thread_id)
        return updated

    async def get_messages(self, thread_id: str, limit: int | None = None) -> list[Message]:
        key = messages_key(thread_id, limit)
        cached = await self._cache_get(key)
        if cached is not None:
            logger.debug("Messages cache hit", extra=log_fields(thread_id=thread_id, count=len(cached)))
            return [Message.from_dict(m) for m in cached]
        try:
            messages = await self.store.get_messages(thread_id, limit)
        except StoreError:
            self._store_failed("get_messages", thread_id=thread_id)
            raise
        await self._cache_set(key, [m.to_dict() for m in messages], self.messages_ttl)
        return messages

    async def get_messages_for_ai(self, thread_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        shown = summarizer.visible(await self.get_messages(thread_id))
        if limit is not None:
            shown = shown[:limit]
        return [m.to_ai() for m in shown]

    def get_thread_context(
        self, thread_id: str, user_id: str, request_id: str | None = None
    ) -> ToolContext:
        return ToolContext(
            user_id=user_id,
            thread_id=thread_id,
            request_id=request_id,
            metadata={"timestamp": utc_now()},
        )

    # -- compaction --

    async def summarize_old_messages(
        self,
        thread_id: str,
        keep_recent_count: int | None = None,
        archive: bool | None = None,
    ) -> Message | None:
        """Collapse all but the newest `keep_recent_count` visible messages.

        Appends one system summary message and returns it, or None when the
        visible history is already short enough. With `archive` the
        summarized messages are deleted; otherwise they stay on disk and only
        drop out of `get_messages_for_ai`.
        """
        keep = self.policy.keep_recent if keep_recent_count is None else keep_recent_count
        archive = self.policy.archive_summarized if archive is None else archive
        if keep < 0:
            raise ValueError("keep_recent_count must be >= 0")

        timer = Timer("summarize_messages", logger)
        messages = await self.get_messages(thread_id)
        already = summarizer.hidden_ids(messages)
        shown = [m for m in messages if m.message_id not in already]
        if len(shown) <= keep:
            logger.debug(
                "No summarization needed",
                extra=log_fields(thread_id=thread_id, message_count=len(shown), keep_recent=keep),
            )
            return None

        old = shown[: len(shown) - keep]
        result = summarizer.summarize(
            old,
            already_summarized=[m.message_id for m in messages if m.message_id in already],
            topic_chars=self.policy.topic_chars,
        )
        summary = await self.add_message(thread_id, "system", result.text, result.metadata)

        if archive:
            try:
                removed = await self.store.delete_messages(thread_id, {m.message_id for m in old})
            except StoreError:
                self._store_failed("delete_messages", timer, thread_id=thread_id)
                raise
            await self._invalidate(thread_id)
            logger.info("Archived summarized messages", extra=log_fields(thread_id=thread_id, removed=removed))

        timer.end(thread_id=thread_id, summarized_count=len(old), kept_count=keep, archived=archive)
        return summary

    async def maybe_summarize(self, thread_id: str) -> Message | None:
        messages = await self.get_messages(thread_id)
        if len(summarizer.visible(messages)) <= self.policy.summarize_when_over:
            return None
        return await self.summarize_old_messages(thread_id)

    # -- stats / maintenance --

    async def get_thread_stats(self, thread_id: str) -> ThreadStats:
        thread = await self.get_thread(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        messages = await self.get_messages(thread_id)

        def count(role: str) -> int:
            return sum(1 for m in messages if m.role == role)

        return ThreadStats(
            message_count=len(messages),
            user_messages=count("user"),
            assistant_messages=count("assistant"),
            system_messages=count("system"),
            tool_messages=count("tool"),
            total_characters=sum(len(m.content) for m in messages),
            created_at=thread.created_at,
            last_activity=messages[-1].created_at if messages else thread.created_at,
        )

    async def cleanup_old_threads(self, older_than_days: int = 30) -> int:
        timer = Timer("cleanup_old_threads", logger)
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        try:
            threads = await self.store.list_threads()
        except StoreError:
            self._store_failed("list_threads", timer)
            raise
        removed = 0
        for t in threads:
            if datetime.fromisoformat(t.updated_at) < cutoff:
                if await self.delete_thread(t.thread_id):
                    removed += 1
        timer.end(older_than_days=older_than_days, removed=removed)
        return removed
