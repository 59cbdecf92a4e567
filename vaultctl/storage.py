"""Container file allocation and discovery."""

from __future__ import annotations

import glob
import os
import shutil

from .errors import InsufficientSpace, PathConflict, ProviderError
from .executil import run, trace

SEALED_SUFFIX = ".enc"


def free_space(path: str) -> int:
    existing = path
    while existing and not os.path.exists(existing):
        parent = os.path.dirname(existing)
        if parent == existing:
            break
        existing = parent
    return shutil.disk_usage(existing or "/").free


def require_space(root: str, size_bytes: int) -> int:
    available = free_space(root)
    if available < size_bytes:
        raise InsufficientSpace(
            f"{root} has {available} bytes free, {size_bytes} required",
            step="storage.check_space",
            path=root,
            state={"available": available, "required": size_bytes},
        )
    return available


def allocate(path: str, size_bytes: int) -> None:
    """Reserve ``size_bytes`` for a new container file with ``fallocate``."""

    if os.path.exists(path):
        raise PathConflict(f"container file {path} already exists", step="storage.allocate", path=path)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    res = run(["fallocate", "-l", str(size_bytes), path], timeout=360.0)
    if res.rc != 0:
        raise ProviderError(f"fallocate failed on {path}: {res.message()}", step="storage.allocate",
                            path=path, state={"rc": res.rc})
    trace("storage.allocated", path=path, size=size_bytes)


def file_size(path: str) -> int:
    return os.path.getsize(path)


def list_containers(root: str, suffix: str) -> list[str]:
    """Return container names found under ``root`` (sealed files excluded)."""

    names = []
    for path in glob.glob(os.path.join(glob.escape(root), f"*{suffix}")):
        if os.path.isfile(path):
            base = os.path.basename(path)
            names.append(base[: len(base) - len(suffix)])
    return sorted(names)


def list_sealed(root: str, suffix: str) -> list[str]:
    pattern = os.path.join(glob.escape(root), f"*{suffix}{SEALED_SUFFIX}")
    return sorted(os.path.basename(p) for p in glob.glob(pattern))
