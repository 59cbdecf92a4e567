from __future__ import annotations

"""Subprocess wrapper, JSONL trace log and audit trail."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .paths import vault_logs_dir

LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "vaultctl.jsonl"

TIMEOUT_RC = 124


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        vault_logs_dir(),
        "/var/log/vaultctl",
        "/tmp/vaultctl-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
        except OSError:
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0

    def message(self) -> str:
        return (self.err or self.out or "").strip() or f"exit status {self.rc}"


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("VAULT_LOG_LEVEL", "TRACE").upper()


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if path:
        append_jsonl(path, obj)


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def audit(op: str, target: str, ok: bool, **fields):
    """Append one record of a state-changing operation.

    Audit records bypass ``VAULT_LOG_LEVEL`` so the trail stays complete even
    when tracing is silenced.
    """

    rec = {"ts": _now(), "level": "INFO" if ok else "ERROR", "event": "audit",
           "op": op, "target": target, "ok": ok}
    rec.update(fields)
    _write_jsonl(rec)


def run(
    cmd: Sequence[str],
    check: bool = False,
    dry_run: bool = False,
    timeout: float = 120.0,
    env: dict | None = None,
) -> Result:
    trace("exec.start", cmd=list(cmd))
    started = time.time()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text, "", 0.0)
    env2 = (env or os.environ).copy()
    env2.setdefault("VAULT_LOG_LEVEL", LOG_LEVEL)
    try:
        proc = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout, env=env2)
    except subprocess.TimeoutExpired:
        dur = time.time() - started
        trace("exec.timeout", cmd=list(cmd), timeout=timeout, dur=dur)
        result = Result(TIMEOUT_RC, "", f"timed out after {timeout:.0f}s", dur)
    except FileNotFoundError as exc:
        dur = time.time() - started
        trace("exec.missing", cmd=list(cmd), error=str(exc))
        result = Result(127, "", f"{cmd[0]}: command not found", dur)
    else:
        dur = time.time() - started
        trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur,
              out=proc.stdout, err=proc.stderr)
        result = Result(proc.returncode, proc.stdout, proc.stderr, dur)
    if check and result.rc != 0:
        raise subprocess.CalledProcessError(result.rc, list(cmd), result.out, result.err)
    return result


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass
