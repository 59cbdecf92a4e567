"""CLI entrypoint for vault container management."""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import VaultError
from .executil import append_jsonl, resolve_log_path, trace
from .lifecycle import LifecycleManager
from .model import Settings
from .prompts import TerminalPrompter

RESULT_CODES: Dict[str, int] = {
    "CREATE_OK": 0,
    "KEYGEN_OK": 0,
    "MASTER_KEY_OK": 0,
    "SEAL_OK": 0,
    "UNSEAL_OK": 0,
    "OPEN_OK": 0,
    "MOUNT_OK": 0,
    "UNMOUNT_OK": 0,
    "CLOSE_OK": 0,
    "ROTATE_OK": 0,
    "ROTATE_PARTIAL_OK": 0,
    "ADD_KEY_OK": 0,
    "REMOVE_KEY_OK": 0,
    "KEYSLOTS_OK": 0,
    "LIST_OK": 0,
    "STATUS_OK": 0,
    "BULK_OK": 0,
    "FAIL_PATH_CONFLICT": 2,
    "FAIL_INVALID_NAME": 2,
    "FAIL_INVALID_SIZE": 2,
    "FAIL_CONTAINER_NOT_FOUND": 3,
    "FAIL_KEY_NOT_FOUND": 3,
    "FAIL_KEYFILE_NOT_FOUND": 3,
    "FAIL_INSUFFICIENT_SPACE": 4,
    "FAIL_OPEN": 5,
    "FAIL_MOUNT": 6,
    "FAIL_UNMOUNT_BUSY": 6,
    "FAIL_USER_DECLINED": 7,
    "FAIL_ROTATION_INCONSISTENT": 8,
    "FAIL_LAST_KEYSLOT": 9,
    "FAIL_PROVIDER": 10,
    "FAIL_BULK_PARTIAL": 11,
    "FAIL_UNHANDLED": 12,
}

FAILURE_RESULTS: Dict[str, str] = {
    "PathConflict": "FAIL_PATH_CONFLICT",
    "InvalidName": "FAIL_INVALID_NAME",
    "InvalidSize": "FAIL_INVALID_SIZE",
    "ContainerNotFound": "FAIL_CONTAINER_NOT_FOUND",
    "KeyNotFound": "FAIL_KEY_NOT_FOUND",
    "KeyFileNotFound": "FAIL_KEYFILE_NOT_FOUND",
    "InsufficientSpace": "FAIL_INSUFFICIENT_SPACE",
    "OpenFailed": "FAIL_OPEN",
    "MountFailed": "FAIL_MOUNT",
    "UnmountBusy": "FAIL_UNMOUNT_BUSY",
    "UserDeclined": "FAIL_USER_DECLINED",
    "RotationInconsistent": "FAIL_ROTATION_INCONSISTENT",
    "LastKeyslot": "FAIL_LAST_KEYSLOT",
    "ProviderError": "FAIL_PROVIDER",
}

CommandResult = Tuple[str, Dict[str, Any]]


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None, exit_code: Optional[int] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def failure_result(exc: VaultError) -> CommandResult:
    return FAILURE_RESULTS.get(exc.kind, "FAIL_UNHANDLED"), exc.payload()


def _handle_payload(handle) -> Dict[str, Any]:
    return {
        "container": handle.name,
        "path": handle.path,
        "mapping": handle.mapping,
        "mount_path": handle.mount_path,
    }


def _bulk_result(report) -> CommandResult:
    return ("BULK_OK" if report.ok else "FAIL_BULK_PARTIAL"), report.summary()


def _cmd_create(mgr: LifecycleManager, args) -> CommandResult:
    handle = mgr.create(args.name, args.size)
    return "CREATE_OK", dict(_handle_payload(handle), size_units=args.size)


def _cmd_keygen(mgr: LifecycleManager, args) -> CommandResult:
    return "KEYGEN_OK", {"container": args.name, "private": mgr.create_key_pair(args.name)}


def _cmd_master_key(mgr: LifecycleManager, args) -> CommandResult:
    return "MASTER_KEY_OK", {"private": mgr.create_master_key()}


def _cmd_seal(mgr: LifecycleManager, args) -> CommandResult:
    return "SEAL_OK", {"container": args.name, "sealed": mgr.seal(args.name)}


def _cmd_unseal(mgr: LifecycleManager, args) -> CommandResult:
    path = mgr.unseal(args.name, use_master=args.master)
    return "UNSEAL_OK", {"container": args.name, "path": path}


def _cmd_open(mgr: LifecycleManager, args) -> CommandResult:
    if args.no_mount:
        handle = mgr.open(args.name, args.key_file)
    else:
        handle = mgr.open_and_mount(args.name, args.key_file)
    return "OPEN_OK", _handle_payload(handle)


def _cmd_open_master(mgr: LifecycleManager, args) -> CommandResult:
    return "OPEN_OK", _handle_payload(mgr.open_with_master(args.name))


def _cmd_mount(mgr: LifecycleManager, args) -> CommandResult:
    target = mgr.mount(mgr.handle(args.name))
    return "MOUNT_OK", {"container": args.name, "mount_path": target}


def _cmd_unmount(mgr: LifecycleManager, args) -> CommandResult:
    return "UNMOUNT_OK", {"container": args.name, "detached": mgr.unmount(args.name)}


def _cmd_close(mgr: LifecycleManager, args) -> CommandResult:
    mgr.unmount_and_close(args.name)
    return "CLOSE_OK", {"container": args.name}


def _cmd_rotate(mgr: LifecycleManager, args) -> CommandResult:
    result = mgr.rotate_master(args.names or None)
    payload = {
        "completed": result.completed,
        "pending": result.pending,
        "skipped": result.skipped,
        "promoted": result.promoted,
        "master": result.master_path,
    }
    return ("ROTATE_OK" if result.promoted else "ROTATE_PARTIAL_OK"), payload


def _cmd_add_key(mgr: LifecycleManager, args) -> CommandResult:
    slot = mgr.enroll_key(args.name, args.auth_key, args.new_key)
    return "ADD_KEY_OK", {"container": args.name, "slot": slot}


def _cmd_remove_key(mgr: LifecycleManager, args) -> CommandResult:
    mgr.remove_key(args.name, args.key_file)
    return "REMOVE_KEY_OK", {"container": args.name, "key_file": args.key_file}


def _cmd_keyslots(mgr: LifecycleManager, args) -> CommandResult:
    report = mgr.dump_keyslots(args.name)
    extra: Dict[str, Any] = {"container": args.name, "slots": report.slots}
    if args.raw:
        extra["raw"] = report.raw
    return "KEYSLOTS_OK", extra


def _cmd_mounted(mgr: LifecycleManager, args) -> CommandResult:
    entries = [{"device": s, "mount_path": t} for s, t in mgr.list_mounted()]
    return "LIST_OK", {"mounted": entries}


def _cmd_containers(mgr: LifecycleManager, args) -> CommandResult:
    return "LIST_OK", {"containers": mgr.list_containers(), "sealed": mgr.list_sealed()}


def _cmd_status(mgr: LifecycleManager, args) -> CommandResult:
    names = [args.name] if args.name else mgr.list_containers()
    return "STATUS_OK", {"states": {name: mgr.state(name) for name in names}}


def _cmd_unmount_all(mgr: LifecycleManager, args) -> CommandResult:
    return _bulk_result(mgr.unmount_all_volumes())


def _cmd_close_all(mgr: LifecycleManager, args) -> CommandResult:
    return _bulk_result(mgr.close_all_mappings())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vaultctl", add_help=True)
    parser.add_argument("--keys-dir", default=None)
    parser.add_argument("--container-root", default=None)
    parser.add_argument("--mount-root", default=None)
    parser.add_argument("--rollback", action="store_true", help="remove artifacts of a failed create")
    parser.add_argument("--yes", dest="assume_yes", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    def add(name: str, func: Callable[[LifecycleManager, Any], CommandResult], help_text: str,
            with_name: bool = True) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        if with_name:
            p.add_argument("name")
        p.set_defaults(func=func)
        return p

    p = add("create", _cmd_create, "allocate, format, enroll the master key and mount")
    p.add_argument("size", type=int, help="size in MiB")
    add("keygen", _cmd_keygen, "generate a container key pair")
    add("master-key", _cmd_master_key, "generate the master key pair", with_name=False)
    add("seal", _cmd_seal, "encrypt a closed container file")
    p = add("unseal", _cmd_unseal, "decrypt a sealed container file")
    p.add_argument("--master", action="store_true")
    p = add("open", _cmd_open, "open and mount a container")
    p.add_argument("--key-file", default=None)
    p.add_argument("--no-mount", action="store_true")
    add("open-master", _cmd_open_master, "open and mount with the master key")
    add("mount", _cmd_mount, "mount an opened container")
    add("unmount", _cmd_unmount, "unmount a container")
    add("close", _cmd_close, "unmount and close a container")
    p = add("rotate-master", _cmd_rotate, "replace the master key in every container", with_name=False)
    p.add_argument("names", nargs="*")
    p = add("add-key", _cmd_add_key, "enroll an additional keyfile")
    p.add_argument("auth_key")
    p.add_argument("new_key")
    p = add("remove-key", _cmd_remove_key, "remove the keyslot a keyfile unlocks")
    p.add_argument("key_file")
    p = add("keyslots", _cmd_keyslots, "show active keyslots")
    p.add_argument("--raw", action="store_true")
    add("mounted", _cmd_mounted, "list mounted vaults", with_name=False)
    add("containers", _cmd_containers, "list container files", with_name=False)
    p = add("status", _cmd_status, "report lifecycle state", with_name=False)
    p.add_argument("name", nargs="?")
    add("unmount-all", _cmd_unmount_all, "unmount every mounted vault", with_name=False)
    add("close-all", _cmd_close_all, "unmount and close every vault mapping", with_name=False)
    return parser


def settings_from_args(args) -> Settings:
    settings = Settings(rollback_on_failure=bool(args.rollback))
    if args.keys_dir:
        settings.keys_root = args.keys_dir
    if args.container_root:
        settings.container_root = args.container_root
    if args.mount_root:
        settings.mount_root = args.mount_root
    return settings


def _main_impl(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    mgr = LifecycleManager(settings, TerminalPrompter(assume_yes=args.assume_yes))
    trace("cli.start", command=args.command, keys_root=settings.keys_root,
          container_root=settings.container_root, mount_root=settings.mount_root)
    try:
        kind, extra = args.func(mgr, args)
    except VaultError as exc:
        kind, extra = failure_result(exc)
    _emit_result(kind, extra)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
