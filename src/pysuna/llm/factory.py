from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml

from .openai_compat import OpenAICompatProvider
from ..errors import ProviderError

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")

DEFAULT_MODEL = "gpt-4o"


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    model: str
    api_key: str


class ProviderRegistry:
    def __init__(self) -> None:
        self._items: Dict[str, ProviderConfig] = {}

    def add(self, cfg: ProviderConfig) -> None:
        key = cfg.name.strip().lower()
        if not key:
            raise ProviderError("Provider name cannot be empty.")
        self._items[key] = cfg

    def get(self, name: str) -> ProviderConfig:
        key = (name or "").strip().lower()
        if not key:
            raise ProviderError("Missing provider name.")
        if key not in self._items:
            known = ", ".join(sorted(self._items.keys())) or "(none)"
            raise ProviderError(f"Unknown provider '{name}'. Known providers: {known}")
        return self._items[key]

    def first(self) -> ProviderConfig:
        if not self._items:
            raise ProviderError("No providers configured.")
        return next(iter(self._items.values()))

    def names(self) -> list[str]:
        return sorted(self._items.keys())


def _expand_env_placeholders(s: str) -> str:
    def repl(m: re.Match) -> str:
        var = m.group(1)
        val = os.getenv(var)
        if not val:
            raise ProviderError(f"Placeholder '${{{var}}}' not found in environment or is empty.")
        return val

    return _ENV_PATTERN.sub(repl, s)


def load_provider_registry(yaml_path: str | Path) -> ProviderRegistry:
    p = Path(yaml_path).expanduser().resolve()
    if not p.exists():
        raise ProviderError(f"Provider YAML not found: {p}")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ProviderError(f"Invalid provider YAML {p}: {e}") from e
    providers = data.get("providers") if isinstance(data, dict) else None
    if not isinstance(providers, dict) or not providers:
        raise ProviderError("YAML must contain a non-empty 'providers:' mapping.")

    reg = ProviderRegistry()

    for name, cfg in providers.items():
        if not isinstance(cfg, dict):
            raise ProviderError(f"providers.{name} must be a mapping/dict.")

        fields = {
            "PYSUNA_BASE_URL": cfg.get("PYSUNA_BASE_URL"),
            "PYSUNA_API_KEY": cfg.get("PYSUNA_API_KEY"),
        }
        missing = [k for k, v in fields.items() if not v]
        if missing:
            raise ProviderError(f"providers.{name} missing required field(s): {', '.join(missing)}")

        base_url = _expand_env_placeholders(str(fields["PYSUNA_BASE_URL"]).strip())
        api_key = _expand_env_placeholders(str(fields["PYSUNA_API_KEY"]).strip())
        model = str(cfg.get("PYSUNA_MODEL") or DEFAULT_MODEL).strip()

        if not base_url or not api_key:
            raise ProviderError(f"providers.{name} has empty base_url/api_key after expansion.")

        reg.add(ProviderConfig(name=str(name), base_url=base_url, model=model, api_key=api_key))

    return reg


def resolve_provider(
    provider: Optional[str],
    model: Optional[str],
    yaml_path: Path,
    *,
    temperature: float = 0.0,
    max_tokens: int = 4096,
) -> OpenAICompatProvider:
    """Build a provider from the YAML registry.

    With no provider name the first entry in the file is used; `model`
    overrides the entry's model.
    """
    reg = load_provider_registry(yaml_path)
    cfg = reg.get(provider) if provider else reg.first()
    logger.info("Using provider %s from %s", cfg.name, yaml_path)

    return OpenAICompatProvider(
        model=model or cfg.model,
        base_url=cfg.base_url,
        api_key=cfg.api_key,
        provider_name=cfg.name,
        temperature=temperature,
        max_tokens=max_tokens,
    )
