"""Typed failures raised by the vault lifecycle."""

from __future__ import annotations


class VaultError(RuntimeError):
    """Base failure carrying a stable ``kind`` and diagnostic ``state``."""

    kind = "VaultError"

    def __init__(self, message: str, *, step: str | None = None, path: str | None = None,
                 state: dict | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.path = path
        self.state = state or {}

    def payload(self) -> dict:
        data = {"kind": self.kind, "why": str(self)}
        if self.step:
            data["step"] = self.step
        if self.path:
            data["path"] = self.path
        if self.state:
            data["state"] = self.state
        return data


class PathConflict(VaultError):
    kind = "PathConflict"


class InvalidName(VaultError):
    kind = "InvalidName"


class InvalidSize(VaultError):
    kind = "InvalidSize"


class ContainerNotFound(VaultError):
    kind = "ContainerNotFound"


class KeyNotFound(VaultError):
    kind = "KeyNotFound"


class KeyFileNotFound(VaultError):
    kind = "KeyFileNotFound"


class InsufficientSpace(VaultError):
    kind = "InsufficientSpace"


class OpenFailed(VaultError):
    kind = "OpenFailed"


class MountFailed(VaultError):
    kind = "MountFailed"


class UnmountBusy(VaultError):
    kind = "UnmountBusy"


class UserDeclined(VaultError):
    kind = "UserDeclined"


class RotationInconsistent(VaultError):
    kind = "RotationInconsistent"


class LastKeyslot(VaultError):
    kind = "LastKeyslot"


class ProviderError(VaultError):
    """Nonzero exit from a provider call that has no dedicated kind."""

    kind = "ProviderError"
