from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel

from ..base import BaseTool, ToolContext, ToolResult
from ..schema import OperationSpec, ParamSpec
from ...log import log_fields
from ...util.fs import FsError, ensure_dir, resolve_path
from ...util.subprocess import CmdTimeout, run_shell

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_COMMANDS = frozenset({
    "ls", "pwd", "echo", "cat", "head", "tail", "grep", "find", "wc",
    "date", "whoami", "uname", "df", "du", "ps", "top", "free",
    "curl", "wget", "ping", "nslookup", "dig",
    "git", "npm", "node", "python", "python3", "pip", "pip3",
    "docker", "kubectl", "helm",
})

DANGEROUS_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rm\s+-rf",
        r">\s*/dev/null",
        r"sudo",
        r"su\s",
        r"passwd",
        r"chmod\s+777",
        r"mkfs",
        r"dd\s+if=",
        r":\(\)\{.*\}",  # fork bomb
        r"eval",
        r"exec",
        r"system",
    )
)

MAX_COMMAND_LENGTH = 1000
MAX_OUTPUT_BYTES = 1024 * 1024


class ShellTool(BaseTool):
    name = "shell"
    description = "Execute shell commands in a sandboxed environment"
    version = "1.0.0"

    operations = (
        OperationSpec(
            name="execute",
            description="Execute a shell command and return the output",
            tag_name="shell_execute",
            params=(
                ParamSpec("command", "string", "The shell command to execute", required=True),
                ParamSpec("timeout", "integer", "Timeout in seconds (default: 30)", default=30, minimum=1),
                ParamSpec("working_directory", "string", "Working directory inside the sandbox"),
            ),
            examples=(
                {"command": "ls -la", "description": "List files in current directory"},
                {"command": "pwd", "description": "Show current working directory"},
                {"command": 'echo "Hello World"', "description": "Echo a message"},
            ),
        ),
    )

    def __init__(
        self,
        sandbox_root: Path = Path("/tmp/pysuna-sandbox"),
        extra_allowed_commands: Iterable[str] = (),
        max_timeout: int = 60,
        default_timeout: int = 30,
    ) -> None:
        super().__init__()
        self.sandbox_root = sandbox_root
        self.allowed_commands = DEFAULT_ALLOWED_COMMANDS | frozenset(extra_allowed_commands)
        self.max_timeout = max_timeout
        self.default_timeout = default_timeout

    async def init(self) -> None:
        ensure_dir(self.sandbox_root)
        await super().init()
        logger.info(
            "Shell tool initialized",
            extra=log_fields(allowed_commands=len(self.allowed_commands), sandbox=str(self.sandbox_root)),
        )

    def handlers(self):
        return {"execute": self._execute}

    def check_command(self, command: str) -> ToolResult | None:
        """Return a policy failure for `command`, or None when it may run."""
        for pattern in DANGEROUS_PATTERNS:
            if pattern.search(command):
                return ToolResult.fail(
                    f"Command contains potentially dangerous pattern: {pattern.pattern}", "policy"
                )

        words = command.strip().split()
        if not words:
            return ToolResult.fail("Command is empty", "policy")
        base = words[0].rsplit("/", 1)[-1] or words[0]
        if base not in self.allowed_commands:
            return ToolResult.fail(f"Command '{base}' is not in the allowed commands list", "policy")

        if len(command) > MAX_COMMAND_LENGTH:
            return ToolResult.fail(f"Command is too long (max {MAX_COMMAND_LENGTH} characters)", "policy")
        return None

    async def _execute(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        command: str = params.command
        denied = self.check_command(command)
        if denied is not None:
            logger.warning(
                "Rejected shell command",
                extra=log_fields(reason=denied.error, user_id=context.user_id if context else None),
            )
            return denied

        try:
            cwd = (
                resolve_path(self.sandbox_root, params.working_directory)
                if params.working_directory
                else self.sandbox_root.resolve()
            )
        except FsError as e:
            return ToolResult.fail(str(e), "policy")
        if not cwd.is_dir():
            return ToolResult.fail(f"Working directory not found: {params.working_directory}", "validation")

        requested = params.timeout if params.timeout is not None else self.default_timeout
        timeout = min(requested, self.max_timeout)

        logger.debug(
            "Executing shell command",
            extra=log_fields(
                timeout=timeout,
                user_id=context.user_id if context else None,
                thread_id=context.thread_id if context else None,
            ),
        )
        start = time.perf_counter()
        try:
            res = await run_shell(command, cwd=str(cwd), timeout=timeout, max_output=MAX_OUTPUT_BYTES)
        except CmdTimeout as e:
            logger.warning("Shell command timed out", extra=log_fields(timeout=timeout))
            return ToolResult.fail(
                f"Command timed out after {timeout} seconds",
                "timeout",
                data={
                    "command": command,
                    "timeout": timeout,
                    "exit_code": -1,
                    "stdout": e.stdout,
                    "stderr": e.stderr,
                },
            )
        except OSError as e:
            logger.error("Shell command could not start: %s", e)
            return ToolResult.fail(
                f"Command execution failed: {e}", "backend", data={"command": command, "exit_code": -1}
            )
        duration_ms = int(round((time.perf_counter() - start) * 1000))

        if res.returncode != 0:
            return ToolResult.fail(
                f"Command failed with exit code {res.returncode}",
                "backend",
                data={
                    "stdout": res.stdout,
                    "stderr": res.stderr,
                    "exit_code": res.returncode,
                    "command": command,
                },
            )

        logger.info(
            "Shell command executed",
            extra=log_fields(
                duration_ms=duration_ms,
                output_length=len(res.stdout),
                error_length=len(res.stderr),
                truncated=res.truncated,
            ),
        )
        return ToolResult.ok(
            data={
                "stdout": res.stdout,
                "stderr": res.stderr,
                "exit_code": 0,
                "command": command,
                "duration_ms": duration_ms,
            },
            metadata={
                "executed_at": datetime.now(timezone.utc).isoformat(),
                "working_directory": str(cwd),
                "truncated": res.truncated,
            },
        )
