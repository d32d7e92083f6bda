"""Generation of the Capstanfile describing the guest image.

The rendered text has three sections::

    base: cloudius/osv-openjdk8

    cmdline: /java.so -cp /app.jar com.example.Main

    files:
      /app.jar: /home/user/app.jar

It is compared byte for byte against the persisted copy to decide whether the
image must be rebuilt, so rendering has to be deterministic for unchanged
inputs: the app cache is walked in sorted order and dependencies are sorted.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable

from osv_capsule.errors import GuestPathCollisionError, ManifestIOError, UnsupportedRuntimeVersionError
from osv_capsule.remap import PathLike, PathRemapper, normalize_host_path


LOGGER = logging.getLogger("osv_capsule.manifest")

BASE_IMAGE_JAVA7 = "cloudius/osv-openjdk"
BASE_IMAGE_JAVA8 = "cloudius/osv-openjdk8"
BASE_IMAGES_BY_JAVA_VERSION = {
    7: BASE_IMAGE_JAVA7,
    8: BASE_IMAGE_JAVA8,
}
DEFAULT_BASE_IMAGE = BASE_IMAGE_JAVA8
MIN_BARE_JAVA_VERSION = 5
EXECUTION_MODE_FLAGS = frozenset({"-server", "-client"})


@dataclass(frozen=True)
class FileMapping:
    guest_path: PurePosixPath
    host_path: Path

    def render(self) -> str:
        return f"  {self.guest_path}: {self.host_path}"


@dataclass(frozen=True)
class Manifest:
    base_image: str
    cmdline: str
    file_mappings: tuple[FileMapping, ...]

    def render(self) -> str:
        lines = [
            f"base: {self.base_image}",
            "",
            f"cmdline: {self.cmdline}",
            "",
            "files:",
        ]
        lines.extend(mapping.render() for mapping in self.file_mappings)
        return "\n".join(lines) + "\n"


def java_major_version(value: str) -> int:
    """Parse a declared Java version.

    ``"8"`` and ``"1.8"`` both mean 8: a dotted value is read from its second
    component. A bare value below 5 is not a Java major version.
    """
    raw = str(value or "").strip()
    parts = raw.split(".")
    try:
        if len(parts) == 1:
            major = int(parts[0])
            if major < MIN_BARE_JAVA_VERSION:
                raise UnsupportedRuntimeVersionError(raw, f"Unrecognized major Java version: {raw}")
            return major
        return int(parts[1])
    except ValueError as exc:
        raise UnsupportedRuntimeVersionError(raw, f"Unrecognized major Java version: {raw}") from exc


def select_base_image(java_version: str | None) -> str:
    if java_version is None:
        return DEFAULT_BASE_IMAGE
    major = java_major_version(java_version)
    try:
        return BASE_IMAGES_BY_JAVA_VERSION[major]
    except KeyError:
        raise UnsupportedRuntimeVersionError(java_version) from None


def boot_command_line(command: Iterable[str]) -> str:
    return " ".join(str(token) for token in command if str(token) not in EXECUTION_MODE_FLAGS)


def list_app_cache(app_cache_dir: PathLike, *, excluded_dirs: Iterable[PathLike] = ()) -> list[Path]:
    """Regular files under ``app_cache_dir``.

    Each directory contributes its own files in sorted order before its
    subdirectories are visited, also in sorted order.
    """
    root = normalize_host_path(app_cache_dir)
    excluded = {normalize_host_path(path) for path in excluded_dirs}
    files: list[Path] = []
    _walk_sorted(root, excluded, files)
    return files


def _walk_sorted(directory: Path, excluded: set[Path], files: list[Path]) -> None:
    try:
        with os.scandir(directory) as entries:
            ordered = sorted(entries, key=lambda entry: entry.name)
            regular = [Path(entry.path) for entry in ordered if entry.is_file()]
            subdirs = [Path(entry.path) for entry in ordered if entry.is_dir()]
    except OSError as exc:
        raise ManifestIOError(f"Unable to list application cache directory {directory}", exc) from exc

    files.extend(regular)
    for subdir in subdirs:
        if subdir in excluded:
            continue
        _walk_sorted(subdir, excluded, files)


class _MappingTable:
    def __init__(self, remapper: PathRemapper) -> None:
        self._remapper = remapper
        self._owners: dict[PurePosixPath, Path] = {}
        self.mappings: list[FileMapping] = []

    def add(self, value: PathLike) -> None:
        host_path = normalize_host_path(value)
        guest_path = self._remapper.remap(host_path)
        owner = self._owners.get(guest_path)
        if owner == host_path:
            return
        if owner is not None:
            raise GuestPathCollisionError(guest_path, owner, host_path)
        self._owners[guest_path] = host_path
        self.mappings.append(FileMapping(guest_path, host_path))


def generate_manifest(
    remapper: PathRemapper,
    app_jar: PathLike | None,
    app_cache_dir: PathLike | None,
    dependencies: Iterable[PathLike],
    boot_command: Iterable[str],
    java_version: str | None = None,
    *,
    excluded_dirs: Iterable[PathLike] = (),
) -> Manifest:
    base_image = select_base_image(java_version)
    table = _MappingTable(remapper)
    if app_jar is not None:
        table.add(app_jar)
    if app_cache_dir is not None:
        for path in list_app_cache(app_cache_dir, excluded_dirs=excluded_dirs):
            table.add(path)
    for path in sorted(normalize_host_path(dep) for dep in dependencies):
        table.add(path)

    manifest = Manifest(
        base_image=base_image,
        cmdline=boot_command_line(boot_command),
        file_mappings=tuple(table.mappings),
    )
    LOGGER.debug("Generated manifest base=%s files=%d", manifest.base_image, len(manifest.file_mappings))
    return manifest
