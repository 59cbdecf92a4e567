"""Mount helpers: filesystem creation, attach/detach and ownership."""

from __future__ import annotations

import os
import re
from typing import Callable

from .errors import MountFailed, PathConflict, ProviderError, UnmountBusy
from .executil import run, trace
from .model import MAPPER_SUFFIX

_BUSY_MARKERS = ("target is busy", "device is busy")


def mount_path_for(mapping: str, mount_root: str, container_suffix: str = "") -> str:
    """Derive ``<mount_root>/<name>`` from a mapping name.

    Both the ``_mapper`` suffix and a container-file suffix are stripped so
    ``vaultA.img_mapper`` and ``vaultA_mapper`` land on the same directory.
    """

    name = mapping
    if name.endswith(MAPPER_SUFFIX):
        name = name[: len(name) - len(MAPPER_SUFFIX)]
    if container_suffix and name.endswith(container_suffix):
        name = name[: len(name) - len(container_suffix)]
    return os.path.join(mount_root, name)


def _blkid_type(path: str) -> str:
    r = run(["blkid", "-s", "TYPE", "-o", "value", path])
    return (r.out or "").strip()


def ensure_fs(device: str, fstype: str = "ext4", label: str | None = None) -> bool:
    """Create ``fstype`` on ``device`` unless it already carries one.

    Returns ``True`` when a filesystem was written.
    """

    if _blkid_type(device) == fstype:
        trace("mounts.mkfs.skip", device=device, fstype=fstype)
        return False
    args = [f"mkfs.{fstype}"]
    if fstype.startswith("ext"):
        args += ["-F"]
    if label:
        args += ["-L", label]
    res = run(args + [device], timeout=360.0)
    if res.rc != 0:
        raise ProviderError(f"mkfs.{fstype} failed on {device}: {res.message()}", step="mounts.mkfs",
                            path=device, state={"rc": res.rc})
    trace("mounts.mkfs.done", device=device, fstype=fstype)
    return True


_HEX_ESCAPE_RE = re.compile(r"\\x([0-9a-fA-F]{2})")


def _unescape(field: str) -> str:
    return _HEX_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), field)


def list_mounts() -> list[tuple[str, str]]:
    """Return ``(source, target)`` pairs from the live mount table.

    findmnt exits 1 when the table has no entries; any other nonzero exit is
    a failure to read the table and raises.
    """

    res = run(["findmnt", "-rn", "-o", "SOURCE,TARGET"])
    if res.rc == 1:
        return []
    if res.rc != 0:
        raise ProviderError(f"cannot read the mount table: {res.message()}", step="mounts.list",
                            state={"rc": res.rc})
    pairs: list[tuple[str, str]] = []
    for line in (res.out or "").splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        pairs.append((_unescape(parts[0]), _unescape(parts[1])))
    return pairs


def mounts_for_device(device: str) -> list[str]:
    return [target for source, target in list_mounts() if source == device]


def is_mounted(path: str) -> bool:
    norm = os.path.normpath(path)
    return any(os.path.normpath(target) == norm for _source, target in list_mounts())


def _mkdir(path: str) -> None:
    res = run(["mkdir", "-p", path])
    if res.rc != 0:
        raise PathConflict(f"cannot create mount directory {path}: {res.message()}", step="mounts.mkdir",
                           path=path)


def mount_mapping(
    mapping: str,
    mount_root: str,
    owner: str,
    container_suffix: str = "",
) -> str:
    """Attach ``/dev/mapper/<mapping>`` under ``mount_root`` and hand it to ``owner``.

    On a failed attach the freshly created directory is left in place for
    inspection.
    """

    device = f"/dev/mapper/{mapping}"
    target = os.path.normpath(mount_path_for(mapping, mount_root, container_suffix))
    if target in [os.path.normpath(t) for t in mounts_for_device(device)]:
        trace("mounts.mount.already", device=device, target=target)
        return target
    _mkdir(mount_root)
    _mkdir(target)
    res = run(["mount", device, target])
    if res.rc != 0:
        raise MountFailed(f"cannot mount {device} at {target}: {res.message()}", step="mounts.mount",
                          path=target, state={"rc": res.rc, "device": device})
    chown = run(["chown", "-R", f"{owner}:{owner}", target])
    if chown.rc != 0:
        raise ProviderError(f"chown of {target} to {owner} failed: {chown.message()}", step="mounts.chown",
                            path=target, state={"rc": chown.rc})
    trace("mounts.mount.done", device=device, target=target, owner=owner)
    return target


def busy_holders(path: str) -> str:
    res = run(["fuser", "-vm", path])
    # fuser writes its table to stderr
    return "\n".join(x for x in ((res.err or "").strip(), (res.out or "").strip()) if x)


def _is_busy(message: str) -> bool:
    low = message.lower()
    return any(marker in low for marker in _BUSY_MARKERS)


def unmount(path: str, confirm_force: Callable[[str], bool]) -> bool:
    """Detach ``path``; returns ``False`` when nothing was mounted there.

    A busy mount is reported together with the processes holding it and the
    caller decides between a forced (lazy) detach and aborting.
    """

    if not is_mounted(path):
        trace("mounts.unmount.not_mounted", path=path)
        return False
    res = run(["umount", path])
    if res.rc == 0:
        trace("mounts.unmount.done", path=path)
        return True
    message = res.message()
    if not _is_busy(message):
        raise ProviderError(f"umount {path} failed: {message}", step="mounts.unmount", path=path,
                            state={"rc": res.rc})
    holders = busy_holders(path)
    trace("mounts.unmount.busy", path=path, holders=holders)
    prompt = f"{path} is busy.\n{holders}\nForce detach?" if holders else f"{path} is busy. Force detach?"
    if not confirm_force(prompt):
        raise UnmountBusy(f"{path} is busy and forced detach was declined", step="mounts.unmount",
                          path=path, state={"holders": holders})
    forced = run(["umount", "-l", path])
    if forced.rc != 0:
        raise UnmountBusy(f"forced detach of {path} failed: {forced.message()}", step="mounts.unmount",
                          path=path, state={"holders": holders, "rc": forced.rc})
    trace("mounts.unmount.forced", path=path)
    return True
