from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Sequence

import click


class OsvCapsuleError(click.ClickException):
    """Base class for every condition that aborts a launch."""


class UnmappableHostPathError(OsvCapsuleError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"Unexpected file {path}: no guest location is known for it")
        self.path = path


class GuestPathCollisionError(OsvCapsuleError):
    def __init__(self, guest_path: PurePosixPath, first: Path, second: Path) -> None:
        super().__init__(f"Guest path {guest_path} is claimed by both {first} and {second}")
        self.guest_path = guest_path
        self.first = first
        self.second = second


class UnsupportedRuntimeVersionError(OsvCapsuleError):
    def __init__(self, version: str, reason: str | None = None) -> None:
        super().__init__(reason or f"No known OSv image for Java version {version}")
        self.version = version


class ManifestIOError(OsvCapsuleError):
    def __init__(self, message: str, cause: Exception) -> None:
        super().__init__(f"{message}: {cause}")
        self.cause = cause


class ExternalBuildFailure(OsvCapsuleError):
    def __init__(self, command: Sequence[str], returncode: int) -> None:
        super().__init__(f"Image build failed with exit code {returncode}: {' '.join(command)}")
        self.command = list(command)
        self.returncode = returncode


class LaunchDescriptorError(OsvCapsuleError):
    pass
