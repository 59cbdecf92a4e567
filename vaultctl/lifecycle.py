"""Container lifecycle: create, open/mount, key rotation and bulk recovery.

``LifecycleManager`` is the only component that coordinates the key store,
the cryptsetup adapter and the mount helpers within one operation.  Live
state (active mappings, mount table) is always re-queried from the kernel;
nothing about opened containers is remembered between calls.
"""

from __future__ import annotations

import contextlib
import json
import os
from typing import Iterable, Optional

from . import keywrap, luks, mounts, storage
from .errors import (
    ContainerNotFound,
    InvalidName,
    InvalidSize,
    KeyNotFound,
    MountFailed,
    PathConflict,
    ProviderError,
    RotationInconsistent,
    VaultError,
)
from .executil import audit, log, trace
from .keystore import KeyStore, validate_name
from .model import (
    MAPPER_SUFFIX,
    BulkReport,
    ContainerHandle,
    KeyPairPaths,
    KeyslotReport,
    RotationResult,
    Settings,
)
from .prompts import Prompter, ScriptedPrompter

UNPROVISIONED = "Unprovisioned"
FORMATTED = "Formatted"
OPENED = "Opened"
MOUNTED = "Mounted"


@contextlib.contextmanager
def _operation(op: str, target: str, **fields):
    """Trace an operation and audit its outcome; failures are logged, then re-raised."""

    trace(f"lifecycle.{op}.start", target=target, **fields)
    try:
        yield
    except VaultError as exc:
        log("ERROR", f"lifecycle.{op}.failed", target=target, **exc.payload())
        audit(op, target, False, **exc.payload())
        raise
    except Exception as exc:
        log("ERROR", f"lifecycle.{op}.failed", target=target, error=repr(exc))
        audit(op, target, False, error=repr(exc))
        raise
    trace(f"lifecycle.{op}.done", target=target)
    audit(op, target, True, **fields)


@contextlib.contextmanager
def _step(op: str, step: str, target: str):
    trace(f"lifecycle.{op}.{step}", target=target)
    try:
        yield
    except VaultError as exc:
        exc.state.setdefault("operation_step", f"{op}.{step}")
        raise


def _discard(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.remove(path)


class LifecycleManager:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        prompter: Optional[Prompter] = None,
        keystore: Optional[KeyStore] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.prompter = prompter or ScriptedPrompter()
        self.keys = keystore or KeyStore(self.settings.keys_root, self.settings.key_bits)

    # -- identity -----------------------------------------------------------

    def handle(self, name: str, mapping: Optional[str] = None) -> ContainerHandle:
        validate_name(name)
        mapping = mapping or f"{name}{MAPPER_SUFFIX}"
        return ContainerHandle(
            name=name,
            path=os.path.join(self.settings.container_root, f"{name}{self.settings.container_suffix}"),
            mapping=mapping,
            mount_path=mounts.mount_path_for(mapping, self.settings.mount_root, self.settings.container_suffix),
        )

    def _existing(self, name: str, mapping: Optional[str] = None) -> ContainerHandle:
        handle = self.handle(name, mapping)
        if not os.path.isfile(handle.path):
            raise ContainerNotFound(f"container file {handle.path} does not exist", step="lifecycle.lookup",
                                    path=handle.path)
        return handle

    def state(self, name: str) -> str:
        handle = self.handle(name)
        if not os.path.isfile(handle.path) or not luks.is_luks(handle.path):
            return UNPROVISIONED
        if not luks.is_active(handle.mapping):
            return FORMATTED
        if handle.mount_path in mounts.mounts_for_device(handle.device):
            return MOUNTED
        return OPENED

    # -- open / mount -------------------------------------------------------

    def _resolve_key(self, handle: ContainerHandle, key_file: Optional[str]) -> str:
        candidate = key_file or self.keys.derive_paths(handle.name).private
        if os.path.isfile(candidate):
            return candidate
        log("WARN", "lifecycle.open.key_missing", target=handle.name, key_file=candidate)
        alternate = self.prompter.ask_path(
            f"Key file {candidate} was not found. Full path to the key file for {handle.name}:"
        )
        if alternate and os.path.isfile(alternate):
            return alternate
        raise KeyNotFound(
            f"no usable key file for {handle.name} (tried {candidate}"
            + (f", {alternate})" if alternate else ")"),
            step="lifecycle.resolve_key",
            path=alternate or candidate,
        )

    def _unmount_device(self, handle: ContainerHandle) -> None:
        for target in mounts.mounts_for_device(handle.device):
            mounts.unmount(target, self.prompter.confirm)

    def _open(self, handle: ContainerHandle, key_file: str) -> ContainerHandle:
        if luks.is_active(handle.mapping):
            log("WARN", "lifecycle.open.stale_mapping", target=handle.name, mapping=handle.mapping)
            self._unmount_device(handle)
            luks.close_mapping(handle.mapping)
        luks.open_mapping(handle.path, handle.mapping, key_file)
        return handle

    def open(self, name: str, key_file: Optional[str] = None, mapping: Optional[str] = None) -> ContainerHandle:
        """Open ``name`` as ``<name>_mapper``, replacing any stale mapping of that name."""

        with _operation("open", name):
            handle = self._existing(name, mapping)
            key = self._resolve_key(handle, key_file)
            return self._open(handle, key)

    def mount(self, handle: ContainerHandle) -> str:
        with _operation("mount", handle.name, mapping=handle.mapping):
            if not luks.is_active(handle.mapping):
                raise MountFailed(f"{handle.mapping} is not open", step="lifecycle.mount", path=handle.mount_path)
            return mounts.mount_mapping(
                handle.mapping,
                self.settings.mount_root,
                self.settings.owner,
                self.settings.container_suffix,
            )

    def open_and_mount(self, name: str, key_file: Optional[str] = None) -> ContainerHandle:
        handle = self.open(name, key_file)
        self.mount(handle)
        return handle

    def open_with_master(self, name: str) -> ContainerHandle:
        master = self.keys.master_paths().private
        if not self.keys.master_key_exists():
            raise KeyNotFound(f"master key {master} does not exist", step="lifecycle.open_master", path=master)
        return self.open_and_mount(name, master)

    def unmount(self, name: str) -> bool:
        handle = self.handle(name)
        with _operation("unmount", name):
            detached = False
            for target in mounts.mounts_for_device(handle.device):
                detached = mounts.unmount(target, self.prompter.confirm) or detached
            return detached

    def close(self, name: str) -> None:
        """Unmount (if needed) and close the mapping of ``name``."""

        handle = self.handle(name)
        with _operation("close", name, mapping=handle.mapping):
            self._unmount_device(handle)
            if luks.is_active(handle.mapping):
                luks.close_mapping(handle.mapping)
            else:
                trace("lifecycle.close.not_active", mapping=handle.mapping)

    def unmount_and_close(self, name: str) -> None:
        self.close(name)

    def _close_after_failure(self, handle: ContainerHandle) -> bool:
        """Best-effort teardown while another error propagates; returns ``False`` if the mapping stays."""

        try:
            self._unmount_device(handle)
            if luks.is_active(handle.mapping):
                luks.close_mapping(handle.mapping)
        except VaultError as exc:
            log("ERROR", "lifecycle.close_after_failure", target=handle.name, **exc.payload())
            return False
        return True

    # -- create -------------------------------------------------------------

    def create(self, name: str, size_units: int) -> ContainerHandle:
        """Allocate, format, enroll the master key and mount a new container.

        Steps run in order and the first failure aborts the rest.  With
        ``rollback_on_failure`` the artifacts created so far are removed;
        otherwise they are left for the operator.
        """

        with _operation("create", name, size_units=size_units):
            if size_units <= 0:
                raise InvalidSize(f"container size must be positive, got {size_units}", step="lifecycle.create",
                                  state={"size_units": size_units})
            size_bytes = size_units * self.settings.unit_bytes
            handle = self.handle(name)
            if os.path.exists(handle.path):
                raise PathConflict(f"container file {handle.path} already exists", step="lifecycle.create",
                                   path=handle.path)
            created: list[str] = []
            try:
                with _step("create", "check_space", name):
                    storage.require_space(self.settings.container_root, size_bytes)
                with _step("create", "allocate", name):
                    storage.allocate(handle.path, size_bytes)
                    created.append("file")
                with _step("create", "keygen", name):
                    pair = self._container_key_pair(name)
                    if pair is None:
                        pair = self.keys.create_key_pair(name)
                        created.append("keys")
                with _step("create", "format", name):
                    luks.format_container(handle.path, pair.private)
                with _step("create", "open", name):
                    self._open(handle, pair.private)
                    created.append("mapping")
                with _step("create", "mkfs", name):
                    mounts.ensure_fs(handle.device, self.settings.fs_type, label=name[:16])
                with _step("create", "enroll_master", name):
                    if not self.keys.master_key_exists():
                        self.keys.create_master_key_pair(self.prompter.confirm)
                    luks.add_key(handle.path, pair.private, self.keys.master_paths().private)
                with _step("create", "mount", name):
                    mounts.mount_mapping(
                        handle.mapping,
                        self.settings.mount_root,
                        self.settings.owner,
                        self.settings.container_suffix,
                    )
            except VaultError as exc:
                if self.settings.rollback_on_failure:
                    exc.state["rolled_back"] = self._rollback(handle, created)
                else:
                    exc.state["left_in_place"] = list(created)
                raise
            return handle

    def _container_key_pair(self, name: str) -> Optional[KeyPairPaths]:
        """Return the key pair left over from an earlier container of this name, if any.

        An earlier pair may still be the only key that opens a sealed copy, so
        create reuses it instead of generating over it.
        """

        if not self.keys.key_pair_exists(name):
            return None
        pair = self.keys.derive_paths(name)
        if not os.path.isfile(pair.public):
            raise PathConflict(f"private key {pair.private} exists without its public half",
                               step="lifecycle.create", path=pair.public)
        log("WARN", "lifecycle.create.reuse_key_pair", target=name, private=pair.private)
        return pair

    def _rollback(self, handle: ContainerHandle, created: list[str]) -> list[str]:
        removed: list[str] = []
        if "mapping" in created:
            if not self._close_after_failure(handle):
                # the file still backs a live mapping; leave everything for the operator
                log("WARN", "lifecycle.create.rollback_skipped", target=handle.name, mapping=handle.mapping)
                return removed
            removed.append(handle.mapping)
        if "keys" in created:
            removed.extend(self.keys.remove_key_pair(handle.name))
        if "file" in created and os.path.exists(handle.path):
            os.remove(handle.path)
            removed.append(handle.path)
        log("WARN", "lifecycle.create.rolled_back", target=handle.name, removed=removed)
        return removed

    # -- keys ---------------------------------------------------------------

    def create_key_pair(self, name: str) -> str:
        with _operation("create_key_pair", name):
            replace = False
            if self.keys.key_pair_exists(name):
                replace = self.prompter.confirm(f"A key pair for {name} already exists. Replace it?")
                if not replace:
                    trace("lifecycle.create_key_pair.kept", target=name)
                    return self.keys.derive_paths(name).private
            return self.keys.create_key_pair(name, replace=replace).private

    def create_master_key(self) -> str:
        with _operation("create_master_key", "master"):
            return self.keys.create_master_key_pair(self.prompter.confirm).private

    def enroll_key(self, name: str, auth_key: str, new_key: str) -> Optional[int]:
        with _operation("enroll_key", name, new_key=new_key):
            handle = self._existing(name)
            return luks.add_key(handle.path, auth_key, new_key)

    def remove_key(self, name: str, key_file: str) -> None:
        with _operation("remove_key", name, key_file=key_file):
            handle = self._existing(name)
            luks.remove_key(handle.path, key_file)

    def dump_keyslots(self, name: str) -> KeyslotReport:
        handle = self._existing(name)
        report = luks.dump_keyslots(handle.path)
        trace("lifecycle.dump_keyslots", target=name, slots=report.slots)
        return report

    # -- master rotation ----------------------------------------------------

    def _load_journal(self) -> dict:
        try:
            with open(self.settings.journal_path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return {}

    def _save_journal(self, journal: dict) -> None:
        path = self.settings.journal_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(journal, fh, indent=2, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)

    def _clear_journal(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.settings.journal_path)

    def _begin_rotation(self) -> dict:
        """Return the rotation journal, reusing a pending master from an earlier attempt."""

        old_fp = keywrap.fingerprint(self.keys.master_paths().public)
        journal = self._load_journal()
        if (
            journal.get("old_fingerprint") == old_fp
            and self.keys.pending_master_exists()
            and journal.get("new_fingerprint") == keywrap.fingerprint(self.keys.pending_master_paths().public)
        ):
            trace("lifecycle.rotate.resume", completed=journal.get("completed", []))
            return journal
        pending = self.keys.create_pending_master()
        journal = {
            "old_fingerprint": old_fp,
            "new_fingerprint": keywrap.fingerprint(pending.public),
            "completed": [],
        }
        self._save_journal(journal)
        return journal

    def _rotate_one(self, name: str, old_master: str, new_master: str) -> None:
        handle = self._existing(name)
        own = self.keys.derive_paths(name).private
        if not os.path.isfile(own):
            raise KeyNotFound(f"container key {own} does not exist", step="rotate.open", path=own)
        with _step("rotate", "open", name):
            self._open(handle, own)
        try:
            with _step("rotate", "enroll_new", name):
                if luks.key_unlocks(handle.path, new_master):
                    trace("lifecycle.rotate.new_already_enrolled", target=name)
                else:
                    luks.add_key(handle.path, own, new_master)
            with _step("rotate", "remove_old", name):
                if not luks.key_unlocks(handle.path, old_master):
                    trace("lifecycle.rotate.old_absent", target=name)
                else:
                    try:
                        luks.remove_key(handle.path, old_master)
                    except VaultError as exc:
                        raise RotationInconsistent(
                            f"new master enrolled in {name} but the old master slot could not be removed: {exc}",
                            step="rotate.remove_old",
                            path=handle.path,
                            state={"cause": exc.payload()},
                        ) from exc
        except VaultError:
            self._close_after_failure(handle)
            raise
        with _step("rotate", "close", name):
            self._unmount_device(handle)
            luks.close_mapping(handle.mapping)

    def rotate_master(self, names: Optional[Iterable[str]] = None) -> RotationResult:
        """Replace the master key across containers, one keyslot swap at a time.

        The new master lives at a pending path until every managed container
        (see ``managed_containers``) has swapped slots; only then is it renamed
        over the canonical key.  Other files under the root are reported as
        skipped and never block promotion.
        Completed containers are recorded in the journal so a retry resumes.
        """

        requested = list(names or [])
        with _operation("rotate_master", ",".join(requested) or "*"):
            master = self.keys.master_paths()
            if not self.keys.master_key_exists():
                raise KeyNotFound(f"master key {master.private} does not exist", step="rotate.begin",
                                  path=master.private)
            listed = self.list_containers()
            managed = self.managed_containers(listed)
            targets = requested or managed
            journal = self._begin_rotation()
            pending = self.keys.pending_master_paths()
            failures: dict[str, dict] = {}
            for name in targets:
                if name in journal["completed"]:
                    continue
                try:
                    self._rotate_one(name, master.private, pending.private)
                except VaultError as exc:
                    failures[name] = exc.payload()
                    continue
                journal["completed"].append(name)
                self._save_journal(journal)
            result = RotationResult(
                completed=list(journal["completed"]),
                pending=[n for n in managed if n not in journal["completed"]],
                skipped=[n for n in listed if n not in managed],
            )
            if failures:
                raise RotationInconsistent(
                    f"master rotation incomplete for {', '.join(sorted(failures))}; new master not promoted",
                    step="rotate.promote",
                    path=pending.private,
                    state={"failed": failures, "completed": result.completed},
                )
            if not result.pending:
                self.keys.promote_pending_master()
                self._clear_journal()
                result.promoted = True
                result.master_path = master.private
            return result

    # -- container-level encryption ----------------------------------------

    def seal(self, name: str) -> str:
        """Encrypt the closed container file to ``<file>.enc``."""

        with _operation("seal", name):
            handle = self._existing(name)
            if luks.is_active(handle.mapping):
                raise PathConflict(f"{name} is open; close it before sealing", step="lifecycle.seal",
                                   path=handle.path)
            own_pub = self.keys.derive_paths(name).public
            if not os.path.isfile(own_pub):
                raise KeyNotFound(f"public key {own_pub} does not exist", step="lifecycle.seal", path=own_pub)
            recipients = {"container": own_pub}
            master_pub = self.keys.master_paths().public
            if os.path.isfile(master_pub):
                recipients["master"] = master_pub
            out_path = handle.path + storage.SEALED_SUFFIX
            tmp = out_path + ".tmp"
            try:
                with open(handle.path, "rb") as src, open(tmp, "wb") as dst:
                    keywrap.seal_stream(src, dst, recipients)
                os.replace(tmp, out_path)
            finally:
                _discard(tmp)
            trace("lifecycle.seal.written", target=name, sealed=out_path, size=storage.file_size(out_path))
            return out_path

    def unseal(self, name: str, use_master: bool = False) -> str:
        with _operation("unseal", name, use_master=use_master):
            handle = self.handle(name)
            sealed = handle.path + storage.SEALED_SUFFIX
            if not os.path.isfile(sealed):
                raise ContainerNotFound(f"sealed file {sealed} does not exist", step="lifecycle.unseal",
                                        path=sealed)
            key = self.keys.master_paths().private if use_master else self.keys.derive_paths(name).private
            if not os.path.isfile(key):
                raise KeyNotFound(f"private key {key} does not exist", step="lifecycle.unseal", path=key)
            if os.path.exists(handle.path) and not self.prompter.confirm(f"{handle.path} exists. Overwrite it?"):
                raise PathConflict(f"{handle.path} exists and overwrite was declined", step="lifecycle.unseal",
                                   path=handle.path)
            tmp = handle.path + ".tmp"
            try:
                try:
                    with open(sealed, "rb") as src, open(tmp, "wb") as dst:
                        keywrap.unseal_stream(src, dst, key)
                except keywrap.RecipientMismatch as exc:
                    raise KeyNotFound(f"{key} cannot unseal {sealed}", step="lifecycle.unseal", path=key) from exc
                except ValueError as exc:
                    raise ProviderError(f"cannot unseal {sealed}: {exc}", step="lifecycle.unseal",
                                        path=sealed) from exc
                os.replace(tmp, handle.path)
            finally:
                _discard(tmp)
            return handle.path

    # -- listings and bulk recovery -----------------------------------------

    def list_containers(self) -> list[str]:
        """Container files under the root whose stem is a valid container name."""

        names = []
        for name in storage.list_containers(self.settings.container_root, self.settings.container_suffix):
            try:
                validate_name(name)
            except InvalidName as exc:
                log("WARN", "lifecycle.list.skipped", target=name, why=str(exc))
                continue
            names.append(name)
        return names

    def managed_containers(self, names: Optional[Iterable[str]] = None) -> list[str]:
        """Containers this store manages: a key pair exists and the file carries a LUKS header."""

        managed = []
        for name in self.list_containers() if names is None else names:
            if not self.keys.key_pair_exists(name):
                trace("lifecycle.list.unmanaged", target=name, reason="no_key_pair")
                continue
            if not luks.is_luks(self.handle(name).path):
                trace("lifecycle.list.unmanaged", target=name, reason="not_luks")
                continue
            managed.append(name)
        return managed

    def list_sealed(self) -> list[str]:
        return storage.list_sealed(self.settings.container_root, self.settings.container_suffix)

    def _managed_mount(self, source: str, target: str) -> bool:
        if not source.startswith("/dev/mapper/"):
            return False
        if source.endswith(MAPPER_SUFFIX):
            return True
        root = os.path.normpath(self.settings.mount_root)
        return os.path.normpath(target).startswith(root + os.sep)

    def list_mounted(self) -> list[tuple[str, str]]:
        return [(s, t) for s, t in mounts.list_mounts() if self._managed_mount(s, t)]

    def unmount_all_volumes(self) -> BulkReport:
        """Detach every managed mount found in the live mount table."""

        report = BulkReport("unmount_all")
        with _operation("unmount_all", "*"):
            for source, target in self.list_mounted():
                try:
                    mounts.unmount(target, self.prompter.confirm)
                except VaultError as exc:
                    report.failed[target] = str(exc)
                    log("ERROR", "lifecycle.unmount_all.item_failed", target=target, **exc.payload())
                    audit("unmount", target, False, **exc.payload())
                    continue
                report.succeeded.append(target)
                audit("unmount", target, True, source=source)
            trace("lifecycle.unmount_all.summary", **report.summary())
        return report

    def close_all_mappings(self) -> BulkReport:
        """Unmount and close every live ``*_mapper`` mapping reported by the kernel."""

        report = BulkReport("close_all")
        with _operation("close_all", "*"):
            live = luks.list_active_mappings()
            table = mounts.list_mounts()
            for mapping in live:
                device = f"/dev/mapper/{mapping}"
                try:
                    for source, target in table:
                        if source == device:
                            mounts.unmount(target, self.prompter.confirm)
                    luks.close_mapping(mapping)
                except VaultError as exc:
                    report.failed[mapping] = str(exc)
                    log("ERROR", "lifecycle.close_all.item_failed", target=mapping, **exc.payload())
                    audit("close", mapping, False, **exc.payload())
                    continue
                report.succeeded.append(mapping)
                audit("close", mapping, True)
            trace("lifecycle.close_all.summary", **report.summary())
        return report
