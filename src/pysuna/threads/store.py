from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import threading
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

from platformdirs import user_data_dir

from .models import Message, Thread, utc_now
from ..errors import StoreError, ThreadNotFoundError

APP_NAME = "pysuna"

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def default_threads_dir() -> Path:
    return Path(user_data_dir(APP_NAME)) / "threads"


class ThreadStore(Protocol):
    async def create_thread(self, thread: Thread) -> Thread: ...
    async def get_thread(self, thread_id: str) -> Thread | None: ...
    async def update_thread(self, thread: Thread) -> Thread: ...
    async def delete_thread(self, thread_id: str) -> bool: ...
    async def list_threads(self) -> list[Thread]: ...
    async def add_message(self, message: Message) -> Message: ...
    async def get_messages(self, thread_id: str, limit: int | None = None) -> list[Message]: ...
    async def update_message(self, thread_id: str, message_id: str, metadata: dict[str, Any]) -> Message | None: ...
    async def delete_messages(self, thread_id: str, message_ids: set[str]) -> int: ...


def _fsync(f) -> None:
    f.flush()
    try:
        os.fsync(f.fileno())
    except OSError:
        # some filesystems do not support fsync
        pass


def _has_torn_tail(path: Path) -> bool:
    """True when the file has content whose last byte is not a newline."""
    try:
        with path.open("rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() == 0:
                return False
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"
    except FileNotFoundError:
        return False


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(text)
        _fsync(f)
    os.replace(tmp, path)


class JsonlThreadStore:
    """Threads on disk, one directory per thread.

    `meta.json` holds the thread record (replaced atomically) and
    `messages.jsonl` holds one message per line (append + fsync). Corrupt or
    partial lines, e.g. from a crash mid-write, are skipped on read.
    """

    def __init__(self, root: Path | None = None):
        self.root = root or default_threads_dir()
        self._lock = threading.Lock()
        self.root.mkdir(parents=True, exist_ok=True)

    # -- helpers (call with the lock held) --

    def _dir(self, thread_id: str) -> Path | None:
        if not _ID_RE.match(thread_id):
            return None
        return self.root / thread_id

    def _read_meta(self, thread_id: str) -> Thread | None:
        d = self._dir(thread_id)
        if d is None:
            return None
        meta = d / "meta.json"
        if not meta.exists():
            return None
        return Thread.from_dict(json.loads(meta.read_text(encoding="utf-8")))

    def _read_messages(self, d: Path) -> list[Message]:
        path = d / "messages.jsonl"
        if not path.exists():
            return []
        msgs: list[Message] = []
        for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                msgs.append(Message.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping corrupt message line in %s", path)
                continue
        return msgs

    def _rewrite_messages(self, d: Path, msgs: list[Message]) -> None:
        _atomic_write(
            d / "messages.jsonl",
            "".join(json.dumps(m.to_dict(), ensure_ascii=False) + "\n" for m in msgs),
        )

    def _require(self, thread_id: str) -> Path:
        d = self._dir(thread_id)
        if d is None or not (d / "meta.json").exists():
            raise ThreadNotFoundError(thread_id)
        return d

    async def _run(self, operation: str, fn: Callable[[], T]) -> T:
        def locked() -> T:
            with self._lock:
                return fn()

        try:
            return await asyncio.to_thread(locked)
        except StoreError:
            raise
        except (OSError, ValueError) as e:
            raise StoreError(operation, str(e)) from e

    # -- threads --

    async def create_thread(self, thread: Thread) -> Thread:
        def _create() -> Thread:
            d = self._dir(thread.thread_id)
            if d is None:
                raise StoreError("create_thread", f"Invalid thread id: {thread.thread_id}")
            if (d / "meta.json").exists():
                raise StoreError("create_thread", f"Thread {thread.thread_id} already exists")
            d.mkdir(parents=True, exist_ok=True)
            _atomic_write(d / "meta.json", json.dumps(thread.to_dict(), ensure_ascii=False))
            return thread

        return await self._run("create_thread", _create)

    async def get_thread(self, thread_id: str) -> Thread | None:
        return await self._run("get_thread", lambda: self._read_meta(thread_id))

    async def update_thread(self, thread: Thread) -> Thread:
        def _update() -> Thread:
            d = self._require(thread.thread_id)
            _atomic_write(d / "meta.json", json.dumps(thread.to_dict(), ensure_ascii=False))
            return thread

        return await self._run("update_thread", _update)

    async def delete_thread(self, thread_id: str) -> bool:
        def _delete() -> bool:
            d = self._dir(thread_id)
            if d is None or not d.exists():
                return False
            shutil.rmtree(d)
            return True

        return await self._run("delete_thread", _delete)

    async def list_threads(self) -> list[Thread]:
        def _list() -> list[Thread]:
            out: list[Thread] = []
            for d in sorted(self.root.iterdir()):
                if not d.is_dir():
                    continue
                try:
                    t = self._read_meta(d.name)
                except (ValueError, KeyError):
                    logger.warning("Skipping unreadable thread metadata in %s", d)
                    continue
                if t is not None:
                    out.append(t)
            return out

        return await self._run("list_threads", _list)

    # -- messages --

    async def add_message(self, message: Message) -> Message:
        def _add() -> Message:
            d = self._require(message.thread_id)
            existing = self._read_messages(d)
            message.seq = (existing[-1].seq + 1) if existing else 1
            path = d / "messages.jsonl"
            torn = _has_torn_tail(path)
            with path.open("a", encoding="utf-8") as f:
                if torn:
                    f.write("\n")
                f.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
                _fsync(f)
            return message

        return await self._run("add_message", _add)

    async def get_messages(self, thread_id: str, limit: int | None = None) -> list[Message]:
        def _get() -> list[Message]:
            d = self._dir(thread_id)
            if d is None:
                return []
            msgs = self._read_messages(d)
            return msgs[:limit] if limit is not None else msgs

        return await self._run("get_messages", _get)

    async def update_message(self, thread_id: str, message_id: str, metadata: dict[str, Any]) -> Message | None:
        def _update() -> Message | None:
            d = self._require(thread_id)
            msgs = self._read_messages(d)
            hit = next((m for m in msgs if m.message_id == message_id), None)
            if hit is None:
                return None
            hit.metadata = {**(hit.metadata or {}), **metadata}
            hit.updated_at = utc_now()
            self._rewrite_messages(d, msgs)
            return hit

        return await self._run("update_message", _update)

    async def delete_messages(self, thread_id: str, message_ids: set[str]) -> int:
        def _delete() -> int:
            d = self._require(thread_id)
            msgs = self._read_messages(d)
            kept = [m for m in msgs if m.message_id not in message_ids]
            removed = len(msgs) - len(kept)
            if removed:
                self._rewrite_messages(d, kept)
            return removed

        return await self._run("delete_messages", _delete)
