import ast
import json
import os
import sys
from collections import defaultdict
from pathlib import Path
from typing import Dict, Set

import pytest

from vaultctl import executil, luks, mounts, storage
from vaultctl.executil import Result
from vaultctl.lifecycle import LifecycleManager
from vaultctl.model import Settings
from vaultctl.prompts import ScriptedPrompter

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "vaultctl").absolute()

_STATEMENTS: Dict[Path, Set[int]] = {
    path: {node.lineno for node in ast.walk(ast.parse(path.read_text(encoding="utf-8"))) if isinstance(node, ast.stmt)}
    for path in sorted(_PACKAGE_DIR.glob("*.py"))
}
_HITS: Dict[Path, Set[int]] = defaultdict(set)
_PREVIOUS_TRACE = None


def _record_line(frame, event, arg):
    path = Path(frame.f_code.co_filename).absolute()
    if path not in _STATEMENTS:
        return None
    if event == "line":
        _HITS[path].add(frame.f_lineno)
    return _record_line


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE
    _PREVIOUS_TRACE = sys.gettrace()
    sys.settrace(_record_line)


def pytest_sessionfinish(session, exitstatus):
    sys.settrace(_PREVIOUS_TRACE)
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print
    write_line("")
    write_line("Statement coverage for 'vaultctl':")
    total = covered_total = 0
    for path, statements in _STATEMENTS.items():
        if not statements:
            continue
        covered = len(_HITS[path] & statements)
        total += len(statements)
        covered_total += covered
        write_line(f"  {path.name:<16} {covered:>5}/{len(statements):<5} {covered / len(statements):>7.1%}")
    if total:
        write_line(f"  {'TOTAL':<16} {covered_total:>5}/{total:<5} {covered_total / total:>7.1%}")


def _escape(field: str) -> str:
    return field.replace(" ", "\\x20")


class FakeHost:
    """In-memory stand-in for cryptsetup, dmsetup and the mount table.

    Keyslots hold the bytes of the keyfile that enrolled them, so a keyfile
    unlocks a container exactly when its content matches some slot.
    """

    def __init__(self) -> None:
        self.keyslots: Dict[str, Dict[int, bytes]] = {}
        self.mappings: Dict[str, str] = {}
        self.mounted: list = []
        self.filesystems: Dict[str, str] = {}
        self.busy: Set[str] = set()
        self.failures: Dict[str, tuple] = {}
        self.commands: list = []

    def fail_once(self, verb: str, rc: int = 1, err: str = "simulated failure") -> None:
        self.failures[verb] = (rc, err)

    def slots(self, path) -> list:
        return sorted(self.keyslots.get(str(path), {}))

    def unlocks(self, path, key_file) -> bool:
        return _read_key(key_file) in self.keyslots.get(str(path), {}).values()

    def __call__(self, cmd, check=False, **_kwargs):  # noqa: ARG002 - signature compatibility
        cmd = list(cmd)
        self.commands.append(cmd)
        prog = cmd[0]
        if prog == "cryptsetup":
            opts, flags, positional = _split_args(cmd[1:])
            verb = positional[0]
        else:
            opts, flags, positional = {}, set(), cmd[1:]
            verb = prog
        if verb in self.failures:
            rc, err = self.failures.pop(verb)
            return Result(rc, "", err, 0.0)
        handler = getattr(self, "_" + verb.replace(".", "_").replace("-", "_"), None)
        if handler is None:
            return Result(0, "", "", 0.0)
        if prog == "cryptsetup":
            return handler(opts, flags, positional[1:])
        return handler(positional)

    # cryptsetup

    def _luksFormat(self, opts, flags, args):
        self.keyslots[args[0]] = {0: _read_key(opts["--key-file"])}
        return Result(0, "", "", 0.0)

    def _isLuks(self, opts, flags, args):
        return Result(0 if args[0] in self.keyslots else 1, "", "", 0.0)

    def _open(self, opts, flags, args):
        path = args[0]
        key = _read_key(opts.get("--key-file"))
        if key is None or key not in self.keyslots.get(path, {}).values():
            return Result(2, "", "No key available with this passphrase.", 0.0)
        if "--test-passphrase" in flags:
            return Result(0, "", "", 0.0)
        mapping = args[1]
        if mapping in self.mappings:
            return Result(5, "", f"Device {mapping} already exists.", 0.0)
        self.mappings[mapping] = path
        return Result(0, "", "", 0.0)

    def _close(self, opts, flags, args):
        mapping = args[0]
        if mapping not in self.mappings:
            return Result(4, "", f"Device {mapping} is not active.", 0.0)
        if any(src == f"/dev/mapper/{mapping}" for src, _t in self.mounted):
            return Result(5, "", f"Device {mapping} is still in use.", 0.0)
        del self.mappings[mapping]
        return Result(0, "", "", 0.0)

    def _status(self, opts, flags, args):
        if args[0] in self.mappings:
            return Result(0, f"/dev/mapper/{args[0]} is active.", "", 0.0)
        return Result(4, f"/dev/mapper/{args[0]} is inactive.", "", 0.0)

    def _luksAddKey(self, opts, flags, args):
        path, new_key = args
        table = self.keyslots.get(path, {})
        if _read_key(opts.get("--key-file")) not in table.values():
            return Result(2, "", "No key available with this passphrase.", 0.0)
        slot = min(i for i in range(32) if i not in table)
        table[slot] = _read_key(new_key)
        return Result(0, f"Key slot {slot} created.\nCommand successful.", "", 0.0)

    def _luksRemoveKey(self, opts, flags, args):
        table = self.keyslots.get(args[0], {})
        key = _read_key(opts.get("--key-file"))
        for slot, content in sorted(table.items()):
            if content == key:
                del table[slot]
                return Result(0, "", "", 0.0)
        return Result(2, "", "No key available with this passphrase.", 0.0)

    def _luksDump(self, opts, flags, args):
        path = args[0]
        if path not in self.keyslots:
            return Result(1, "", f"Device {path} is not a valid LUKS device.", 0.0)
        slots = sorted(self.keyslots[path])
        if "--dump-json-metadata" in flags:
            meta = {"keyslots": {str(s): {"type": "luks2"} for s in slots}}
            return Result(0, json.dumps(meta), "", 0.0)
        text = "LUKS header information\nKeyslots:\n" + "".join(f"  {s}: luks2\n" for s in slots)
        return Result(0, text, "", 0.0)

    # dm / mount table

    def _dmsetup(self, args):
        if not self.mappings:
            return Result(0, "No devices found\n", "", 0.0)
        lines = [f"{name}\t(253:{i})" for i, name in enumerate(sorted(self.mappings))]
        return Result(0, "\n".join(lines) + "\n", "", 0.0)

    def _findmnt(self, args):
        if not self.mounted:
            return Result(1, "", "", 0.0)
        lines = [f"{_escape(src)} {_escape(tgt)}" for src, tgt in self.mounted]
        return Result(0, "\n".join(lines) + "\n", "", 0.0)

    def _mount(self, args):
        device, target = args
        if device[len("/dev/mapper/"):] not in self.mappings:
            return Result(32, "", f"mount: {target}: special device {device} does not exist.", 0.0)
        self.mounted.append((device, target))
        return Result(0, "", "", 0.0)

    def _umount(self, args):
        lazy = "-l" in args
        target = args[-1]
        entries = [entry for entry in self.mounted if entry[1] == target]
        if not entries:
            return Result(32, "", f"umount: {target}: not mounted.", 0.0)
        if target in self.busy and not lazy:
            return Result(32, "", f"umount: {target}: target is busy.", 0.0)
        self.busy.discard(target)
        self.mounted.remove(entries[0])
        return Result(0, "", "", 0.0)

    def _fuser(self, args):
        return Result(0, "", f"{args[-1]}: root 4242 ..c.. bash", 0.0)

    def _mkdir(self, args):
        os.makedirs(args[-1], exist_ok=True)
        return Result(0, "", "", 0.0)

    def _mkfs_ext4(self, args):
        self.filesystems[args[-1]] = "ext4"
        return Result(0, "", "", 0.0)

    def _blkid(self, args):
        return Result(0 if args[-1] in self.filesystems else 2, self.filesystems.get(args[-1], ""), "", 0.0)

    def _fallocate(self, args):
        size, path = int(args[1]), args[2]
        with open(path, "wb") as fh:
            fh.truncate(size)
        return Result(0, "", "", 0.0)


def _split_args(args):
    opts, flags, positional = {}, set(), []
    it = iter(args)
    for arg in it:
        if arg in ("--key-file", "--type"):
            opts[arg] = next(it)
        elif arg.startswith("-"):
            flags.add(arg)
        else:
            positional.append(arg)
    return opts, flags, positional


def _read_key(path):
    if not path or not os.path.isfile(path):
        return None
    with open(path, "rb") as fh:
        return fh.read()


@pytest.fixture(autouse=True)
def log_file(tmp_path, monkeypatch):
    path = tmp_path / "logs" / "vaultctl.jsonl"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(path.parent)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return path


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    for module in (luks, mounts, storage):
        monkeypatch.setattr(module, "run", fake)
    monkeypatch.setattr(luks, "udev_settle", lambda: None)
    return fake


@pytest.fixture
def settings(tmp_path):
    return Settings(
        keys_root=str(tmp_path / "keys"),
        container_root=str(tmp_path / "containers"),
        mount_root=str(tmp_path / "mnt"),
        journal_path=str(tmp_path / "state" / "rotation.json"),
        unit_bytes=4096,
        key_bits=1024,
        owner="tester",
    )


@pytest.fixture
def prompter():
    return ScriptedPrompter(default_confirm=True)


@pytest.fixture
def manager(settings, prompter, host):
    return LifecycleManager(settings, prompter)
