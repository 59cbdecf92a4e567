import json
from types import SimpleNamespace

import pytest

from vaultctl import executil


def _records(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_trace_creates_log(log_file, monkeypatch):
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")
    executil.trace("unit.event", target="vaultA")
    data = _records(log_file)
    assert data and data[0]["event"] == "unit.event"
    assert data[0]["level"] == "TRACE"
    assert data[0]["ts"].endswith("Z")


def test_log_respects_threshold(log_file, monkeypatch):
    monkeypatch.setattr(executil, "LOG_LEVEL", "WARN")
    executil.trace("quiet")
    executil.log("ERROR", "loud", why="boom")
    events = [rec["event"] for rec in _records(log_file)]
    assert events == ["loud"]


def test_audit_bypasses_threshold(log_file, monkeypatch):
    monkeypatch.setattr(executil, "LOG_LEVEL", "NONE")
    executil.audit("create", "vaultA", False, kind="OpenFailed")
    (rec,) = _records(log_file)
    assert rec["event"] == "audit"
    assert rec["ok"] is False
    assert rec["level"] == "ERROR"
    assert rec["kind"] == "OpenFailed"


def test_log_dirs_fall_through(tmp_path, monkeypatch):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    monkeypatch.setattr(executil, "LOG_DIRS", [str(blocker / "logs"), str(tmp_path / "second")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    assert executil.resolve_log_path() == str(tmp_path / "second" / executil.LOG_NAME)


def test_run_handles_dry_run_and_timeout(monkeypatch):
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)

    dry = executil.run(["echo", "hi"], dry_run=True)
    assert dry.out.startswith("DRY-RUN:")

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None):
        raise executil.subprocess.TimeoutExpired(cmd, timeout)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["sleep", "9"], timeout=1.0)
    assert result.rc == executil.TIMEOUT_RC
    assert "timed out" in result.message()


def test_run_reports_missing_binary(monkeypatch):
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["cryptsetup", "status", "x"])
    assert result.rc == 127
    assert not result.ok


def test_run_raises_on_failure(monkeypatch):
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None):
        return SimpleNamespace(returncode=1, stdout="bad", stderr="oops")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    with pytest.raises(executil.subprocess.CalledProcessError):
        executil.run(["false"], check=True)
    result = executil.run(["false"])
    assert result.rc == 1
    assert result.message() == "oops"


def test_append_jsonl(tmp_path):
    path = tmp_path / "data" / "log.jsonl"
    executil.append_jsonl(str(path), {"foo": "bar"})
    text = path.read_text(encoding="utf-8").strip()
    assert json.loads(text) == {"foo": "bar"}


def test_udev_settle(monkeypatch):
    calls = []

    def fake_run(cmd, check=False):
        calls.append(cmd)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    executil.udev_settle()
    assert calls[0][0] == "udevadm"
