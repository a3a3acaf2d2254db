from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from ..base import BaseTool, ToolContext, ToolResult
from ..schema import OperationSpec, ParamSpec
from ...log import log_fields
from ...util.fs import FsError, ensure_dir, resolve_path

logger = logging.getLogger(__name__)

HARD_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_READ_SIZE = 1024 * 1024

ALLOWED_EXTENSIONS = frozenset({
    ".txt", ".md", ".json", ".yaml", ".yml", ".xml", ".csv", ".log",
    ".js", ".ts", ".jsx", ".tsx", ".py", ".java", ".cpp", ".c", ".h",
    ".html", ".css", ".scss", ".sass", ".less", ".sql", ".sh", ".bat",
    ".dockerfile", ".gitignore", ".env", ".config", ".ini", ".toml",
})

ENCODINGS = ("utf8", "base64", "binary")

_PATH = ParamSpec("path", "string", "Path inside the sandbox", required=True)


def _mtime_iso(st: os.stat_result) -> str:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat()


def _decode(raw: bytes, encoding: str) -> str:
    if encoding == "base64":
        return base64.b64encode(raw).decode("ascii")
    if encoding == "binary":
        return raw.decode("latin-1")
    return raw.decode("utf-8", errors="replace")


def _encode(content: str, encoding: str) -> bytes:
    if encoding == "base64":
        return base64.b64decode(content, validate=True)
    if encoding == "binary":
        return content.encode("latin-1")
    return content.encode("utf-8")


class FileTool(BaseTool):
    name = "file_operations"
    description = "Perform file system operations like read, write, list, delete, and move files"
    version = "1.0.0"

    operations = (
        OperationSpec(
            name="read_file",
            description="Read the contents of a file",
            tag_name="read_file",
            params=(
                _PATH,
                ParamSpec("encoding", "string", "File encoding", default="utf8", enum=ENCODINGS),
                ParamSpec("max_size", "integer", "Maximum file size in bytes", default=DEFAULT_READ_SIZE, minimum=0),
            ),
            examples=({"path": "notes/todo.md"}, {"path": "data.json", "encoding": "utf8"}),
        ),
        OperationSpec(
            name="write_file",
            description="Write content to a file",
            tag_name="write_file",
            params=(
                _PATH,
                ParamSpec("content", "string", "Content to write to the file", required=True),
                ParamSpec("encoding", "string", "File encoding", default="utf8", enum=ENCODINGS),
                ParamSpec("create_dirs", "boolean", "Create parent directories if they don't exist", default=True),
            ),
            examples=({"path": "hello.txt", "content": "Hello World"},),
        ),
        OperationSpec(
            name="list_files",
            description="List files in a directory",
            params=(
                ParamSpec("path", "string", "Directory path to list", default="."),
                ParamSpec("recursive", "boolean", "List files recursively", default=False),
                ParamSpec("include_hidden", "boolean", "Include hidden files", default=False),
                ParamSpec("pattern", "string", "Regular expression the file name must match"),
            ),
            examples=({"path": ".", "recursive": True},),
        ),
        OperationSpec(
            name="delete_file",
            description="Delete a file or directory",
            params=(
                _PATH,
                ParamSpec("recursive", "boolean", "Delete non-empty directories", default=False),
            ),
        ),
        OperationSpec(
            name="move_file",
            description="Move or rename a file",
            params=(
                ParamSpec("source", "string", "Source file path", required=True),
                ParamSpec("destination", "string", "Destination file path", required=True),
                ParamSpec("overwrite", "boolean", "Overwrite destination if it exists", default=False),
            ),
        ),
        OperationSpec(
            name="get_file_info",
            description="Get size, type and timestamps of a file or directory",
            params=(
                _PATH,
                ParamSpec("include_hash", "boolean", "Include sha256 of the file contents", default=False),
            ),
        ),
    )

    def __init__(self, sandbox_root: Path = Path("/tmp/pysuna-sandbox"), max_file_size: int = HARD_MAX_FILE_SIZE):
        super().__init__()
        self.sandbox_root = sandbox_root
        self.max_file_size = min(max_file_size, HARD_MAX_FILE_SIZE)

    async def init(self) -> None:
        ensure_dir(self.sandbox_root)
        await super().init()
        logger.info(
            "File tool initialized",
            extra=log_fields(sandbox=str(self.sandbox_root), allowed_extensions=len(ALLOWED_EXTENSIONS)),
        )

    def handlers(self):
        return {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "list_files": self._list_files,
            "delete_file": self._delete_file,
            "move_file": self._move_file,
            "get_file_info": self._get_file_info,
        }

    # -- path policy --

    def _safe_path(self, path_str: str, *, for_write: bool = False) -> Path:
        p = resolve_path(self.sandbox_root, path_str)
        if for_write:
            ext = p.suffix.lower()
            if ext and ext not in ALLOWED_EXTENSIONS:
                raise FsError(f"File extension '{ext}' not allowed")
        return p

    def _rel(self, p: Path) -> str:
        return p.relative_to(self.sandbox_root.resolve()).as_posix() or "."

    # -- handlers --

    async def _read_file(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        try:
            p = self._safe_path(params.path)
        except FsError as e:
            return ToolResult.fail(str(e), "policy")
        limit = min(params.max_size, self.max_file_size)

        def _read() -> ToolResult:
            try:
                st = p.stat()
            except FileNotFoundError:
                return ToolResult.fail(f"File not found: {params.path}", "not_found")
            if not p.is_file():
                return ToolResult.fail(f"Not a file: {params.path}", "validation")
            if st.st_size > limit:
                return ToolResult.fail(f"File too large: {st.st_size} bytes (max: {limit})", "policy")
            raw = p.read_bytes()
            return ToolResult.ok(
                data={
                    "content": _decode(raw, params.encoding),
                    "size": st.st_size,
                    "encoding": params.encoding,
                    "path": params.path,
                }
            )

        try:
            result = await asyncio.to_thread(_read)
        except OSError as e:
            return ToolResult.fail(f"Failed to read file: {e}", "backend")
        if result.success:
            logger.debug(
                "File read",
                extra=log_fields(path=params.path, size=result.data["size"], user_id=_user(context)),
            )
        return result

    async def _write_file(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        try:
            p = self._safe_path(params.path, for_write=True)
        except FsError as e:
            return ToolResult.fail(str(e), "policy")
        try:
            payload = _encode(params.content, params.encoding)
        except (binascii.Error, ValueError) as e:
            return ToolResult.fail(f"Content is not valid {params.encoding}: {e}", "validation")
        if len(payload) > self.max_file_size:
            return ToolResult.fail(
                f"File too large: {len(payload)} bytes (max: {self.max_file_size})", "policy"
            )

        def _write() -> int:
            if params.create_dirs:
                p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(payload)
            return p.stat().st_size

        try:
            size = await asyncio.to_thread(_write)
        except OSError as e:
            return ToolResult.fail(f"Failed to write file: {e}", "backend")
        logger.debug("File written", extra=log_fields(path=params.path, size=size, user_id=_user(context)))
        return ToolResult.ok(data={"path": params.path, "size": size, "encoding": params.encoding})

    async def _list_files(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        try:
            p = self._safe_path(params.path or ".")
        except FsError as e:
            return ToolResult.fail(str(e), "policy")
        try:
            name_re = re.compile(params.pattern) if params.pattern else None
        except re.error as e:
            return ToolResult.fail(f"Invalid pattern: {e}", "validation")

        def _walk(d: Path) -> list[dict[str, Any]]:
            out: list[dict[str, Any]] = []
            for child in sorted(d.iterdir(), key=lambda x: x.name):
                if not params.include_hidden and child.name.startswith("."):
                    continue
                is_dir = child.is_dir() and not child.is_symlink()
                if name_re is None or name_re.search(child.name):
                    st = child.stat()
                    out.append({
                        "name": child.name,
                        "path": self._rel(child),
                        "type": "directory" if is_dir else "file",
                        "size": st.st_size,
                        "modified": _mtime_iso(st),
                    })
                if params.recursive and is_dir:
                    out.extend(_walk(child))
            return out

        if not p.exists():
            return ToolResult.fail(f"Path not found: {params.path}", "not_found")
        if not p.is_dir():
            return ToolResult.fail(f"Not a directory: {params.path}", "validation")
        try:
            files = await asyncio.to_thread(_walk, p)
        except OSError as e:
            return ToolResult.fail(f"Failed to list directory: {e}", "backend")
        return ToolResult.ok(data={"path": params.path, "files": files, "count": len(files)})

    async def _delete_file(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        try:
            p = self._safe_path(params.path)
        except FsError as e:
            return ToolResult.fail(str(e), "policy")
        if p == self.sandbox_root.resolve():
            return ToolResult.fail("Refusing to delete the sandbox root", "policy")

        def _delete() -> ToolResult:
            if not p.exists() and not p.is_symlink():
                return ToolResult.fail(f"Path not found: {params.path}", "not_found")
            if p.is_dir() and not p.is_symlink():
                if any(p.iterdir()):
                    if not params.recursive:
                        return ToolResult.fail(
                            f"Directory not empty: {params.path} (set recursive to delete)", "policy"
                        )
                    shutil.rmtree(p)
                else:
                    p.rmdir()
                kind = "directory"
            else:
                p.unlink()
                kind = "file"
            return ToolResult.ok(data={"path": params.path, "type": kind, "deleted": True})

        try:
            result = await asyncio.to_thread(_delete)
        except OSError as e:
            return ToolResult.fail(f"Failed to delete: {e}", "backend")
        if result.success:
            logger.info("Deleted %s", params.path, extra=log_fields(user_id=_user(context)))
        return result

    async def _move_file(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        try:
            src = self._safe_path(params.source)
            dst = self._safe_path(params.destination, for_write=True)
        except FsError as e:
            return ToolResult.fail(str(e), "policy")

        def _move() -> ToolResult:
            if not src.exists():
                return ToolResult.fail(f"Source not found: {params.source}", "not_found")
            if dst.exists():
                if not params.overwrite:
                    return ToolResult.fail(f"Destination exists: {params.destination}", "policy")
                if dst.is_dir() and not dst.is_symlink():
                    return ToolResult.fail(f"Destination is a directory: {params.destination}", "policy")
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)
            return ToolResult.ok(data={"source": params.source, "destination": params.destination})

        try:
            return await asyncio.to_thread(_move)
        except OSError as e:
            return ToolResult.fail(f"Failed to move file: {e}", "backend")

    async def _get_file_info(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        try:
            p = self._safe_path(params.path)
        except FsError as e:
            return ToolResult.fail(str(e), "policy")

        def _info() -> ToolResult:
            try:
                st = p.stat()
            except FileNotFoundError:
                return ToolResult.fail(f"Path not found: {params.path}", "not_found")
            is_dir = p.is_dir()
            info: dict[str, Any] = {
                "path": params.path,
                "name": p.name,
                "type": "directory" if is_dir else "file",
                "size": st.st_size,
                "extension": "" if is_dir else p.suffix.lower(),
                "created": datetime.fromtimestamp(st.st_ctime, tz=timezone.utc).isoformat(),
                "modified": _mtime_iso(st),
                "mode": oct(st.st_mode & 0o777),
            }
            if params.include_hash and not is_dir:
                if st.st_size > self.max_file_size:
                    return ToolResult.fail(
                        f"File too large to hash: {st.st_size} bytes (max: {self.max_file_size})", "policy"
                    )
                h = hashlib.sha256()
                with p.open("rb") as fh:
                    for chunk in iter(lambda: fh.read(64 * 1024), b""):
                        h.update(chunk)
                info["sha256"] = h.hexdigest()
            return ToolResult.ok(data=info)

        try:
            return await asyncio.to_thread(_info)
        except OSError as e:
            return ToolResult.fail(f"Failed to stat: {e}", "backend")


def _user(context: ToolContext | None) -> str | None:
    return context.user_id if context else None
