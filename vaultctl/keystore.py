"""On-disk registry of container and master key pairs."""

from __future__ import annotations

import os
import re
import stat
from typing import Callable

from . import keywrap
from .errors import InvalidName, PathConflict, UserDeclined
from .executil import audit, trace
from .model import MASTER_NAME, MAPPER_SUFFIX, KeyPairPaths

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

PRIVATE_DIR_MODE = 0o700
PUBLIC_DIR_MODE = 0o755


def validate_name(name: str) -> str:
    if not name or not _NAME_RE.match(name):
        raise InvalidName(f"container name {name!r} is not filesystem-safe", step="validate")
    if name == MASTER_NAME:
        raise InvalidName(f"container name {name!r} is reserved for the master key", step="validate")
    if name.endswith(MAPPER_SUFFIX):
        raise InvalidName(f"container name {name!r} must not end with {MAPPER_SUFFIX}", step="validate")
    return name


def _ensure_dir(path: str, mode: int) -> None:
    if os.path.exists(path) and not os.path.isdir(path):
        raise PathConflict(f"{path} exists and is not a directory", step="keystore.mkdir", path=path)
    try:
        os.makedirs(path, exist_ok=True)
        os.chmod(path, mode)
    except OSError as exc:
        raise PathConflict(f"cannot create {path}: {exc}", step="keystore.mkdir", path=path) from exc
    st = os.stat(path)
    if stat.S_IMODE(st.st_mode) != mode:
        raise PathConflict(f"directory {path} must have mode 0{mode:o}", step="keystore.mkdir", path=path)


class KeyStore:
    def __init__(self, root: str, key_bits: int = 2048) -> None:
        self.root = root
        self.key_bits = key_bits

    def derive_paths(self, name: str) -> KeyPairPaths:
        base = os.path.join(self.root, name)
        return KeyPairPaths(
            private=os.path.join(base, "priv", f"{name}_private.pem"),
            public=os.path.join(base, "pub", f"{name}_public.pem"),
        )

    def master_paths(self) -> KeyPairPaths:
        return self.derive_paths(MASTER_NAME)

    def pending_master_paths(self) -> KeyPairPaths:
        """Temporary location for a master key that is mid-rotation."""

        base = os.path.join(self.root, MASTER_NAME)
        return KeyPairPaths(
            private=os.path.join(base, "priv", f"{MASTER_NAME}_private.pending.pem"),
            public=os.path.join(base, "pub", f"{MASTER_NAME}_public.pending.pem"),
        )

    def _prepare_dirs(self, pair: KeyPairPaths) -> None:
        _ensure_dir(os.path.dirname(os.path.dirname(pair.private)), PUBLIC_DIR_MODE)
        _ensure_dir(os.path.dirname(pair.private), PRIVATE_DIR_MODE)
        _ensure_dir(os.path.dirname(pair.public), PUBLIC_DIR_MODE)

    def _generate(self, pair: KeyPairPaths) -> KeyPairPaths:
        self._prepare_dirs(pair)
        return keywrap.generate_key_pair(pair.private, pair.public, bits=self.key_bits)

    def key_pair_exists(self, name: str) -> bool:
        return os.path.isfile(self.derive_paths(name).private)

    def create_key_pair(self, name: str, replace: bool = False) -> KeyPairPaths:
        validate_name(name)
        pair = self.derive_paths(name)
        if os.path.exists(pair.private) and not replace:
            raise PathConflict(f"key pair for {name} already exists", step="keystore.create", path=pair.private)
        self._generate(pair)
        trace("keystore.key_pair.created", name=name, public=pair.public)
        audit("create_key_pair", name, True, public=pair.public)
        return pair

    def remove_key_pair(self, name: str) -> list[str]:
        removed = []
        pair = self.derive_paths(name)
        for path in (pair.private, pair.public):
            if os.path.exists(path):
                os.remove(path)
                removed.append(path)
        return removed

    def master_key_exists(self) -> bool:
        return os.path.isfile(self.master_paths().private)

    def create_master_key_pair(self, confirm_replace: Callable[[str], bool]) -> KeyPairPaths:
        """Create the master key pair, asking before replacing an existing one.

        Declining replacement is a no-op success: the existing pair is returned
        untouched and the refusal is recorded in the audit log.
        """

        master = self.master_paths()
        if self.master_key_exists():
            if not confirm_replace("The master key already exists. Replace it?"):
                declined = UserDeclined("existing master key kept", step="keystore.master", path=master.private)
                trace("keystore.master.kept", **declined.payload())
                audit("create_master_key_pair", MASTER_NAME, True, declined=True)
                return master
            pending = self._generate(self.pending_master_paths())
            os.replace(pending.private, master.private)
            os.replace(pending.public, master.public)
            trace("keystore.master.replaced", public=master.public)
            audit("create_master_key_pair", MASTER_NAME, True, replaced=True)
            return master
        self._generate(master)
        trace("keystore.master.created", public=master.public)
        audit("create_master_key_pair", MASTER_NAME, True, replaced=False)
        return master

    def pending_master_exists(self) -> bool:
        pending = self.pending_master_paths()
        return os.path.isfile(pending.private) and os.path.isfile(pending.public)

    def create_pending_master(self) -> KeyPairPaths:
        pair = self._generate(self.pending_master_paths())
        trace("keystore.master.pending_created", public=pair.public)
        return pair

    def promote_pending_master(self) -> KeyPairPaths:
        """Rename the pending master over the canonical one.

        The private half is renamed first since it is the keyfile containers
        are opened with.
        """

        pending = self.pending_master_paths()
        master = self.master_paths()
        os.replace(pending.private, master.private)
        os.replace(pending.public, master.public)
        trace("keystore.master.promoted", public=master.public)
        audit("promote_master_key", MASTER_NAME, True)
        return master
