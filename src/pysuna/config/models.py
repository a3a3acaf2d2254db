from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class ShellConfig:
    # Extra leading commands allowed on top of the built-in allow-list.
    extra_allowed_commands: list[str] = field(default_factory=list)
    max_timeout: int = 60
    default_timeout: int = 30


@dataclass
class CacheConfig:
    enabled: bool = True
    thread_ttl: int = 300
    messages_ttl: int = 120
    session_ttl: int = 3600


@dataclass
class CompactionConfig:
    keep_recent: int = 10
    archive_summarized: bool = False
    # Summarize automatically once a thread holds more than this many messages.
    summarize_when_over: int = 60


@dataclass
class AppConfig:
    """Process configuration.

    Loaded from JSON (global < project < explicit file) and then overridden by
    PYSUNA_* environment variables.
    """

    sandbox_root: Path = Path("/tmp/pysuna-sandbox")
    data_dir: Path | None = None
    providers_path: Path = Path("pysuna.yaml")

    provider: str | None = None
    model: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.0
    max_tool_steps: int = 8

    tavily_api_key: str | None = None
    file_max_size: int = 10 * 1024 * 1024

    shell: ShellConfig = field(default_factory=ShellConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)

    log_level: str = "INFO"
    log_json: bool = False
    host: str = "127.0.0.1"
    port: int = 8000

    loaded_from: Path | None = None
