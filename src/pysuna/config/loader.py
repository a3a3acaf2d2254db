from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

from platformdirs import user_config_dir

from .models import AppConfig, CacheConfig, CompactionConfig, ShellConfig
from ..errors import ConfigError

APP_NAME = "pysuna"

logger = logging.getLogger(__name__)


def _candidate_paths(cwd: Path) -> list[Path]:
    # project-level (higher priority)
    return [
        cwd / ".pysuna.json",
        cwd / "pysuna.json",
    ]


def _global_candidate_paths() -> list[Path]:
    cfg_dir = Path(user_config_dir(APP_NAME))
    return [cfg_dir / "pysuna.json"]


def _load_json(p: Path) -> dict[str, Any] | None:
    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", p, e)
        return None
    if isinstance(obj, dict):
        return obj
    logger.warning("Ignoring config file %s: top level is not an object", p)
    return None


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge_dicts(out[k], v)
        else:
            out[k] = v
    return out


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")


# env var -> dotted config key
_ENV_OVERRIDES: dict[str, str] = {
    "PYSUNA_SANDBOX_ROOT": "sandbox_root",
    "PYSUNA_DATA_DIR": "data_dir",
    "PYSUNA_PROVIDERS": "providers_path",
    "PYSUNA_PROVIDER": "provider",
    "PYSUNA_MODEL": "model",
    "PYSUNA_MAX_TOKENS": "max_tokens",
    "PYSUNA_TEMPERATURE": "temperature",
    "PYSUNA_LOG_LEVEL": "log_level",
    "PYSUNA_LOG_JSON": "log_json",
    "PYSUNA_CACHE_ENABLED": "cache.enabled",
    "PYSUNA_HOST": "host",
    "PYSUNA_PORT": "port",
    "TAVILY_API_KEY": "tavily_api_key",
}


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for var, key in _ENV_OVERRIDES.items():
        val = environ.get(var)
        if val is None or val == "":
            continue
        cur = out
        parts = key.split(".")
        for p in parts[:-1]:
            cur = cur.setdefault(p, {})
        cur[parts[-1]] = val
    return out


def _build_config(merged: dict[str, Any]) -> AppConfig:
    cfg = AppConfig()

    for key in ("sandbox_root", "data_dir", "providers_path"):
        v = merged.get(key)
        if isinstance(v, str) and v.strip():
            setattr(cfg, key, Path(v).expanduser())

    for key in ("provider", "model", "tavily_api_key", "host"):
        v = merged.get(key)
        if isinstance(v, str) and v.strip():
            setattr(cfg, key, v.strip())

    if "log_level" in merged:
        cfg.log_level = str(merged["log_level"]).upper()
    if "log_json" in merged:
        cfg.log_json = _as_bool(merged["log_json"])
    for key in ("max_tokens", "max_tool_steps", "file_max_size", "port"):
        if key in merged:
            setattr(cfg, key, _as_int(key, merged[key]))
    if "temperature" in merged:
        cfg.temperature = _as_float("temperature", merged["temperature"])

    shell = merged.get("shell", {})
    if isinstance(shell, dict):
        extra = shell.get("extra_allowed_commands", [])
        cfg.shell = ShellConfig(
            extra_allowed_commands=[str(c) for c in extra] if isinstance(extra, list) else [],
            max_timeout=_as_int("shell.max_timeout", shell.get("max_timeout", 60)),
            default_timeout=_as_int("shell.default_timeout", shell.get("default_timeout", 30)),
        )

    cache = merged.get("cache", {})
    if isinstance(cache, dict):
        cfg.cache = CacheConfig(
            enabled=_as_bool(cache.get("enabled", True)),
            thread_ttl=_as_int("cache.thread_ttl", cache.get("thread_ttl", 300)),
            messages_ttl=_as_int("cache.messages_ttl", cache.get("messages_ttl", 120)),
            session_ttl=_as_int("cache.session_ttl", cache.get("session_ttl", 3600)),
        )

    comp = merged.get("compaction", {})
    if isinstance(comp, dict):
        cfg.compaction = CompactionConfig(
            keep_recent=_as_int("compaction.keep_recent", comp.get("keep_recent", 10)),
            archive_summarized=_as_bool(comp.get("archive_summarized", False)),
            summarize_when_over=_as_int("compaction.summarize_when_over", comp.get("summarize_when_over", 60)),
        )

    if cfg.shell.max_timeout <= 0:
        raise ConfigError("shell.max_timeout must be positive")
    if cfg.compaction.keep_recent < 1:
        raise ConfigError("compaction.keep_recent must be at least 1")
    return cfg


def load_app_config(
    *,
    cwd: Path,
    explicit_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load app config.

    Merge order: global < project < explicit_path < environment.
    """
    merged: dict[str, Any] = {}
    loaded_from: Path | None = None

    for p in _global_candidate_paths():
        if p.exists() and p.is_file():
            obj = _load_json(p)
            if obj is not None:
                merged = _merge_dicts(merged, obj)
                loaded_from = p

    for p in _candidate_paths(cwd):
        if p.exists() and p.is_file():
            obj = _load_json(p)
            if obj is not None:
                merged = _merge_dicts(merged, obj)
                loaded_from = p
                break  # first match wins for project-level

    if explicit_path is not None:
        p = explicit_path.expanduser().resolve()
        if not p.is_file():
            raise ConfigError(f"Config file not found: {p}")
        obj = _load_json(p)
        if obj is None:
            raise ConfigError(f"Config file is not a JSON object: {p}")
        merged = _merge_dicts(merged, obj)
        loaded_from = p

    merged = _merge_dicts(merged, _env_overrides(os.environ if environ is None else environ))

    cfg = _build_config(merged)
    cfg.loaded_from = loaded_from
    return cfg
