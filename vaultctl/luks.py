"""cryptsetup adapter: formatting, keyslots and device mappings."""

from __future__ import annotations

import json
import os
import re
from typing import Iterable

from .errors import KeyFileNotFound, LastKeyslot, OpenFailed, ProviderError
from .executil import run, trace, udev_settle
from .model import MAPPER_SUFFIX, KeyslotReport

ACTIVE = "active"
ABSENT = "absent"


def _require_key_file(path: str, role: str, step: str) -> None:
    if not path or not os.path.isfile(path):
        raise KeyFileNotFound(f"{role} key file {path} does not exist", step=step, path=path)


def _fail(step: str, path: str, res) -> ProviderError:
    return ProviderError(f"{step} failed on {path}: {res.message()}", step=step, path=path,
                         state={"rc": res.rc})


def format_container(container_path: str, key_file: str) -> None:
    _require_key_file(key_file, "format", "luks.format")
    cmd = ["cryptsetup", "-q", "--batch-mode", "luksFormat", "--type", "luks2",
           "--key-file", key_file, container_path]
    res = run(cmd, timeout=360.0)
    if res.rc != 0:
        raise _fail("luks.format", container_path, res)


def mapping_status(mapping: str) -> str:
    res = run(["cryptsetup", "status", mapping])
    return ACTIVE if res.rc == 0 else ABSENT


def is_active(mapping: str) -> bool:
    return mapping_status(mapping) == ACTIVE


def is_luks(container_path: str) -> bool:
    return run(["cryptsetup", "isLuks", container_path]).rc == 0


def open_mapping(container_path: str, mapping: str, key_file: str) -> None:
    cmd = ["cryptsetup", "-q", "open", container_path, mapping, "--key-file", key_file]
    res = run(cmd, timeout=120.0)
    if res.rc != 0:
        raise OpenFailed(
            f"cannot open {container_path} as {mapping} with key {key_file}: {res.message()}",
            step="luks.open",
            path=container_path,
            state={"rc": res.rc, "key_file": key_file, "mapping": mapping},
        )
    udev_settle()


def close_mapping(mapping: str) -> None:
    res = run(["cryptsetup", "close", mapping])
    if res.rc != 0:
        raise _fail("luks.close", mapping, res)


def list_active_mappings(suffix: str = MAPPER_SUFFIX) -> list[str]:
    """Return live crypt mappings whose names follow the managed convention."""

    res = run(["dmsetup", "ls", "--target", "crypt"])
    if res.rc != 0:
        raise _fail("luks.list", "dmsetup", res)
    names: list[str] = []
    for line in (res.out or "").splitlines():
        parts = line.split()
        if not parts or parts[0] == "No":
            continue
        if parts[0].endswith(suffix):
            names.append(parts[0])
    return sorted(names)


_KEY_SLOT_CREATED_RE = re.compile(r"key slot\s+(\d+)\s+created", re.IGNORECASE)


def _parse_slot_from_output(streams: Iterable[str]) -> int | None:
    for text in streams:
        if not text:
            continue
        match = _KEY_SLOT_CREATED_RE.search(text)
        if match:
            return int(match.group(1))
    return None


def add_key(container_path: str, auth_key: str, new_key: str) -> int | None:
    """Enroll ``new_key`` authenticated by ``auth_key``; return the slot when reported."""

    _require_key_file(auth_key, "authenticating", "luks.add_key")
    _require_key_file(new_key, "new", "luks.add_key")
    cmd = ["cryptsetup", "-q", "-v", "luksAddKey", container_path, new_key, "--key-file", auth_key]
    res = run(cmd, timeout=120.0)
    if res.rc != 0:
        raise _fail("luks.add_key", container_path, res)
    slot = _parse_slot_from_output((res.out or "", res.err or ""))
    trace("luks.add_key.done", container=container_path, slot=slot)
    return slot


def active_slots(container_path: str) -> set[int]:
    res = run(["cryptsetup", "luksDump", "--dump-json-metadata", container_path])
    if res.rc != 0:
        raise _fail("luks.dump", container_path, res)
    try:
        payload = json.loads(res.out or "{}")
    except json.JSONDecodeError as exc:
        raise ProviderError("failed to parse cryptsetup luksDump output", step="luks.dump",
                            path=container_path) from exc
    slots: set[int] = set()
    keyslots = payload.get("keyslots")
    if isinstance(keyslots, dict):
        for key in keyslots:
            try:
                slots.add(int(str(key)))
            except (TypeError, ValueError):
                continue
    return slots


def remove_key(container_path: str, key_file: str) -> None:
    """Remove the keyslot that ``key_file`` unlocks, never the last one."""

    _require_key_file(key_file, "removed", "luks.remove_key")
    slots = active_slots(container_path)
    if len(slots) <= 1:
        raise LastKeyslot(
            f"refusing to remove the last keyslot of {container_path}",
            step="luks.remove_key",
            path=container_path,
            state={"slots": sorted(slots)},
        )
    cmd = ["cryptsetup", "-q", "--batch-mode", "luksRemoveKey", container_path, "--key-file", key_file]
    res = run(cmd, timeout=120.0)
    if res.rc != 0:
        raise _fail("luks.remove_key", container_path, res)


def key_unlocks(container_path: str, key_file: str) -> bool:
    """Return ``True`` when ``key_file`` unlocks some keyslot of the container."""

    if not os.path.isfile(key_file):
        return False
    cmd = ["cryptsetup", "open", "--test-passphrase", "--key-file", key_file, container_path]
    res = run(cmd, timeout=120.0)
    return res.rc == 0


def dump_keyslots(container_path: str) -> KeyslotReport:
    res = run(["cryptsetup", "luksDump", container_path])
    if res.rc != 0:
        raise _fail("luks.dump", container_path, res)
    slots = active_slots(container_path)
    return KeyslotReport(container=container_path, slots=sorted(slots), raw=res.out or "")
