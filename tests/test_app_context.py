"""Application context wiring and teardown."""

import pytest

from conftest import ScriptedProvider
from pysuna import app_context
from pysuna.app_context import AppContext
from pysuna.config.models import AppConfig
from pysuna.errors import ProviderError
from pysuna.tools.registry import ToolRegistry


class RecordingRegistry(ToolRegistry):
    instances = []

    def __init__(self):
        super().__init__()
        self.cleared = False
        RecordingRegistry.instances.append(self)

    async def clear_all(self):
        self.cleared = True
        await super().clear_all()


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        sandbox_root=tmp_path / "sandbox",
        data_dir=tmp_path / "data",
        providers_path=tmp_path / "absent.yaml",
    )


async def test_create_and_close(config):
    provider = ScriptedProvider()
    ctx = await AppContext.create(config, provider)

    assert set(ctx.registry.get_all_tools()) == {"shell", "file_operations", "web_search", "browser_automation"}
    assert ctx.cache is not None

    await ctx.close()
    assert provider.closed
    assert ctx.registry.get_all_tools() == {}


async def test_provider_failure_releases_tools(config, monkeypatch):
    RecordingRegistry.instances = []
    monkeypatch.setattr(app_context, "ToolRegistry", RecordingRegistry)

    with pytest.raises(ProviderError):
        await AppContext.create(config)

    registry = RecordingRegistry.instances[0]
    assert registry.cleared
    assert registry.get_all_tools() == {}
