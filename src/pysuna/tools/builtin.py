from __future__ import annotations

from functools import partial

from .registry import RegisterOptions, ToolRegistry
from .builtin_tools.shell_tool import ShellTool
from .builtin_tools.file_tool import FileTool
from .builtin_tools.web_search_tool import WebSearchTool
from .builtin_tools.browser_tool import BrowserTool
from ..config.models import AppConfig


async def register_builtin_tools(registry: ToolRegistry, config: AppConfig) -> None:
    await registry.register_tool(
        partial(
            ShellTool,
            sandbox_root=config.sandbox_root,
            extra_allowed_commands=config.shell.extra_allowed_commands,
            max_timeout=config.shell.max_timeout,
            default_timeout=config.shell.default_timeout,
        ),
        RegisterOptions(metadata={"category": "sandbox"}),
    )
    await registry.register_tool(
        partial(FileTool, sandbox_root=config.sandbox_root, max_file_size=config.file_max_size),
        RegisterOptions(metadata={"category": "sandbox"}),
    )
    await registry.register_tool(
        partial(WebSearchTool, api_key=config.tavily_api_key),
        RegisterOptions(metadata={"category": "external"}),
    )
    await registry.register_tool(BrowserTool, RegisterOptions(metadata={"category": "external"}))
