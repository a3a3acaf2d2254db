from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass
from typing import Optional


class CmdTimeout(RuntimeError):
    def __init__(self, timeout: float, stdout: str = "", stderr: str = ""):
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"timed out after {timeout} seconds")


@dataclass
class CmdResult:
    returncode: int
    stdout: str
    stderr: str
    truncated: bool = False


class _Capture:
    """Bounded buffer filled from a pipe; keeps what it has if cancelled."""

    def __init__(self, limit: int):
        self.limit = limit
        self.buf = bytearray()
        self.truncated = False

    async def drain(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(64 * 1024)
            if not chunk:
                return
            room = self.limit - len(self.buf)
            if room > 0:
                self.buf.extend(chunk[:room])
            if len(chunk) > room:
                # keep draining so the child never blocks on a full pipe
                self.truncated = True

    def text(self) -> str:
        return self.buf.decode("utf-8", errors="replace")


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        if os.name == "posix":
            # the child leads its own session, so this reaches every process the shell spawned
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


async def run_shell(command: str, cwd: str, timeout: float, max_output: int = 1024 * 1024) -> CmdResult:
    """Run `command` through the shell; kill its process group and reap it on timeout.

    On timeout, `CmdTimeout` carries whatever output was captured so far.
    """
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    out = _Capture(max_output)
    err = _Capture(max_output)

    async def collect() -> int:
        await asyncio.gather(out.drain(proc.stdout), err.drain(proc.stderr))
        return await proc.wait()

    try:
        returncode = await asyncio.wait_for(collect(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        raise CmdTimeout(timeout, out.text(), err.text())
    return CmdResult(
        returncode=returncode,
        stdout=out.text(),
        stderr=err.text(),
        truncated=out.truncated or err.truncated,
    )
