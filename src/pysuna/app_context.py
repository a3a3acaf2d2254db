from __future__ import annotations

import logging
from dataclasses import dataclass

from .cache.memory import MemoryCache
from .chat.streaming import ChatService
from .compaction.policy import CompactionPolicy
from .config.models import AppConfig
from .llm.factory import resolve_provider
from .llm.models import ChatProvider
from .threads.manager import ThreadManager
from .threads.store import JsonlThreadStore
from .tools.builtin import register_builtin_tools
from .tools.registry import ToolRegistry
from .util.fs import ensure_dir

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: AppConfig
    registry: ToolRegistry
    threads: ThreadManager
    provider: ChatProvider
    chat: ChatService
    cache: MemoryCache | None = None

    @staticmethod
    async def create(config: AppConfig, provider: ChatProvider | None = None) -> "AppContext":
        """Wire up everything one process needs.

        `provider` is resolved from the providers YAML when not given.
        """
        ensure_dir(config.sandbox_root)

        cache = MemoryCache() if config.cache.enabled else None
        store = JsonlThreadStore(config.data_dir / "threads" if config.data_dir else None)
        threads = ThreadManager(
            store,
            cache,
            enable_caching=config.cache.enabled,
            policy=CompactionPolicy.from_config(config.compaction),
            thread_ttl=config.cache.thread_ttl,
            messages_ttl=config.cache.messages_ttl,
        )

        registry = ToolRegistry()
        try:
            await register_builtin_tools(registry, config)
            if provider is None:
                provider = resolve_provider(
                    config.provider,
                    config.model,
                    config.providers_path,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                )
        except Exception:
            # tools registered so far own open clients
            await registry.clear_all()
            raise

        chat = ChatService(registry, threads, provider, max_steps=config.max_tool_steps)
        logger.info(
            "Application context ready: %d tools, caching %s",
            len(registry.get_all_tools()),
            "on" if cache is not None else "off",
        )
        return AppContext(
            config=config,
            registry=registry,
            threads=threads,
            provider=provider,
            chat=chat,
            cache=cache,
        )

    async def close(self) -> None:
        await self.registry.clear_all()
        await self.provider.aclose()
        if self.cache is not None:
            await self.cache.close()
