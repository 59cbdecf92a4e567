import json

import pytest

from vaultctl import cli
from vaultctl.errors import LastKeyslot


@pytest.fixture
def roots(tmp_path, monkeypatch, host):
    monkeypatch.setenv("VAULT_BASE_PATH", str(tmp_path / "base"))
    monkeypatch.setenv("SUDO_USER", "tester")
    return [
        "--keys-dir", str(tmp_path / "keys"),
        "--container-root", str(tmp_path / "containers"),
        "--mount-root", str(tmp_path / "mnt"),
    ]


def _invoke(capsys, argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return excinfo.value.code, json.loads(lines[-1])


def test_parser_overrides_environment():
    args = cli.build_parser().parse_args(
        ["--keys-dir", "/k", "--mount-root", "/m", "--rollback", "--yes", "open", "vaultA", "--no-mount"]
    )
    settings = cli.settings_from_args(args)
    assert settings.keys_root == "/k"
    assert settings.mount_root == "/m"
    assert settings.rollback_on_failure is True
    assert args.assume_yes and args.no_mount
    assert args.func is cli._cmd_open


def test_create_keyslots_and_close_all(capsys, roots, host):
    code, payload = _invoke(capsys, roots + ["create", "vaultA", "2"])
    assert code == 0
    assert payload["result"] == "CREATE_OK"
    assert payload["mapping"] == "vaultA_mapper"

    code, payload = _invoke(capsys, roots + ["keyslots", "vaultA"])
    assert payload["slots"] == [0, 1]

    code, payload = _invoke(capsys, roots + ["status"])
    assert payload["states"] == {"vaultA": "Mounted"}

    code, payload = _invoke(capsys, roots + ["close-all"])
    assert code == 0
    assert payload["result"] == "BULK_OK"
    assert payload["succeeded"] == ["vaultA_mapper"]
    assert set(payload) >= {"operation", "failed", "ok"} and "skipped" not in payload
    assert host.mappings == {}


def test_failure_maps_kind_to_exit_code(capsys, roots):
    code, payload = _invoke(capsys, roots + ["open", "ghost"])
    assert code == cli.RESULT_CODES["FAIL_CONTAINER_NOT_FOUND"]
    assert payload["result"] == "FAIL_CONTAINER_NOT_FOUND"
    assert payload["kind"] == "ContainerNotFound"
    assert payload["path"].endswith("ghost.img")


def test_invalid_name(capsys, roots):
    code, payload = _invoke(capsys, roots + ["create", "master", "2"])
    assert code == 2
    assert payload["result"] == "FAIL_INVALID_NAME"


def test_every_kind_has_a_result():
    for kind, result in cli.FAILURE_RESULTS.items():
        assert result in cli.RESULT_CODES
    assert cli.failure_result(LastKeyslot("last"))[0] == "FAIL_LAST_KEYSLOT"


def test_unhandled_exception(capsys, roots, monkeypatch):
    def boom(self):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(cli.LifecycleManager, "list_containers", boom)
    code, payload = _invoke(capsys, roots + ["containers"])
    assert code == cli.RESULT_CODES["FAIL_UNHANDLED"]
    assert payload["error"] == "kaboom"


def test_create_rejects_zero_size(capsys, roots):
    code, payload = _invoke(capsys, roots + ["create", "vaultA", "0"])
    assert code == 2
    assert payload["result"] == "FAIL_INVALID_SIZE"
    assert payload["kind"] == "InvalidSize"


def test_listing_skips_foreign_files(capsys, roots, tmp_path):
    _invoke(capsys, roots + ["create", "vaultA", "2"])
    _invoke(capsys, roots + ["close", "vaultA"])
    _invoke(capsys, roots + ["seal", "vaultA"])
    (tmp_path / "containers" / "My Disk.img").write_bytes(b"")
    (tmp_path / "containers" / "raspios.img").write_bytes(b"\0" * 4096)

    code, payload = _invoke(capsys, roots + ["status"])
    assert code == 0
    assert payload["states"] == {"raspios": "Unprovisioned", "vaultA": "Formatted"}

    code, payload = _invoke(capsys, roots + ["containers"])
    assert payload["containers"] == ["raspios", "vaultA"]
    assert payload["sealed"] == ["vaultA.img.enc"]

    code, payload = _invoke(capsys, roots + ["rotate-master"])
    assert payload["result"] == "ROTATE_OK"
    assert payload["completed"] == ["vaultA"]
    assert payload["skipped"] == ["raspios"]
