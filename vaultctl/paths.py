from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "~/.vaultctl"
_DEFAULT_KEYS = "~/.secrets"
_DEFAULT_CONTAINERS = "~"
_DEFAULT_MOUNTS = "/mnt"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def _from_env(var: str, default: str) -> str:
    override = os.environ.get(var)
    if override:
        return _expand(override)
    return _expand(default)


def vault_base_path() -> str:
    """Return the base directory for vaultctl state (logs, rotation journal).

    The location can be overridden via the ``VAULT_BASE_PATH`` environment
    variable.
    """

    return _from_env("VAULT_BASE_PATH", _DEFAULT_BASE)


def vault_logs_dir() -> str:
    return str(Path(vault_base_path()) / "logs")


def rotation_journal_path() -> str:
    return str(Path(vault_base_path()) / "rotation.json")


def keys_root() -> str:
    return _from_env("VAULT_KEYS_DIR", _DEFAULT_KEYS)


def container_root() -> str:
    return _from_env("VAULT_CONTAINER_ROOT", _DEFAULT_CONTAINERS)


def mount_root() -> str:
    return _from_env("VAULT_MOUNT_ROOT", _DEFAULT_MOUNTS)
