from vaultctl import errors


def test_custom_errors_are_distinct():
    excs = [
        errors.PathConflict,
        errors.InvalidName,
        errors.InvalidSize,
        errors.ContainerNotFound,
        errors.KeyNotFound,
        errors.KeyFileNotFound,
        errors.InsufficientSpace,
        errors.OpenFailed,
        errors.MountFailed,
        errors.UnmountBusy,
        errors.UserDeclined,
        errors.RotationInconsistent,
        errors.LastKeyslot,
        errors.ProviderError,
    ]
    instances = [exc("message") for exc in excs]
    assert all(isinstance(inst, errors.VaultError) for inst in instances)
    assert len({inst.kind for inst in instances}) == len(excs)


def test_payload_names_step_and_path():
    exc = errors.OpenFailed("cannot open", step="luks.open", path="/srv/a.img", state={"rc": 2})
    assert exc.payload() == {
        "kind": "OpenFailed",
        "why": "cannot open",
        "step": "luks.open",
        "path": "/srv/a.img",
        "state": {"rc": 2},
    }
    assert errors.KeyNotFound("gone").payload() == {"kind": "KeyNotFound", "why": "gone"}
