from __future__ import annotations

import os
from pathlib import Path


class FsError(RuntimeError):
    pass


# Rejected on the raw string, before the filesystem is touched.
DANGEROUS_PATH_PATTERNS = ("..", "/proc/", "/sys/", "/dev/")


def resolve_path(root: Path, path_str: str) -> Path:
    """Resolve `path_str` inside `root` or raise FsError."""
    for pat in DANGEROUS_PATH_PATTERNS:
        if pat in path_str:
            raise FsError(f"Path contains dangerous pattern: {pat}")
    if "\x00" in path_str:
        raise FsError("Path contains a NUL byte")

    root_abs = Path(os.path.abspath(root))
    p = Path(path_str)
    if p.is_absolute():
        # Absolute paths are taken relative to the sandbox root.
        p = Path(*p.parts[1:]) if len(p.parts) > 1 else Path()
    candidate = root_abs / p

    resolved = candidate.resolve()
    try:
        resolved.relative_to(root_abs.resolve())
    except ValueError:
        raise FsError(f"Path escapes sandbox: {path_str}")
    return resolved


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path
