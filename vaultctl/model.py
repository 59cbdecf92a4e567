from __future__ import annotations

import getpass
import os
from dataclasses import dataclass, field
from typing import Optional

from . import paths

MAPPER_SUFFIX = "_mapper"
MASTER_NAME = "master"


def _invoking_user() -> str:
    return os.environ.get("SUDO_USER") or getpass.getuser()


@dataclass
class Settings:
    keys_root: str = field(default_factory=paths.keys_root)
    container_root: str = field(default_factory=paths.container_root)
    mount_root: str = field(default_factory=paths.mount_root)
    journal_path: str = field(default_factory=paths.rotation_journal_path)
    container_suffix: str = ".img"
    unit_bytes: int = 1024 * 1024
    key_bits: int = 2048
    fs_type: str = "ext4"
    owner: str = field(default_factory=_invoking_user)
    rollback_on_failure: bool = False


@dataclass(frozen=True)
class KeyPairPaths:
    private: str
    public: str


@dataclass(frozen=True)
class ContainerHandle:
    """Identity of one container, threaded through every lifecycle call."""

    name: str
    path: str
    mapping: str
    mount_path: str

    @property
    def device(self) -> str:
        return f"/dev/mapper/{self.mapping}"


@dataclass
class KeyslotReport:
    container: str
    slots: list[int]
    raw: str = ""


@dataclass
class BulkReport:
    operation: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> dict:
        return {
            "operation": self.operation,
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "ok": self.ok,
        }


@dataclass
class RotationResult:
    completed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    promoted: bool = False
    master_path: Optional[str] = None
