from __future__ import annotations

import logging
from pathlib import Path

from osv_capsule.errors import ManifestIOError


LOGGER = logging.getLogger("osv_capsule.staleness")

CONF_DIR_NAME = "osv"
CONF_FILE_NAME = "Capstanfile"
MANIFEST_ENCODING = "utf-8"


def conf_dir(parent: Path) -> Path:
    """The configuration directory under ``parent``, created on first use."""
    path = parent / CONF_DIR_NAME
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ManifestIOError(f"Unable to create configuration directory {path}", exc) from exc
    return path


def conf_file(directory: Path) -> Path:
    return directory / CONF_FILE_NAME


def read_manifest(path: Path) -> str | None:
    try:
        return path.read_bytes().decode(MANIFEST_ENCODING)
    except FileNotFoundError:
        return None
    except (OSError, UnicodeError) as exc:
        raise ManifestIOError(f"Unable to read manifest {path}", exc) from exc


def write_manifest(text: str, path: Path) -> None:
    try:
        path.write_bytes(text.encode(MANIFEST_ENCODING))
    except OSError as exc:
        raise ManifestIOError(f"Unable to write manifest {path}", exc) from exc
    LOGGER.info("Conf file written: %s", path)


def _mtime_ns(path: Path, label: str) -> int:
    try:
        return path.stat().st_mtime_ns
    except OSError as exc:
        raise ManifestIOError(f"Unable to read modification time of {label} {path}", exc) from exc


def is_build_needed(
    manifest_text: str,
    persisted: Path,
    app_jar: Path | None,
    wrapper_jar: Path | None = None,
) -> bool:
    """Whether the image must be rebuilt for ``manifest_text``.

    True when nothing is persisted yet, when the persisted text differs, or
    when the application jar (or the wrapper, whichever is newer) was modified
    after the persisted manifest was written.
    """
    previous = read_manifest(persisted)
    if previous is None:
        LOGGER.info("Conf file %s is not present", persisted)
        return True

    if previous != manifest_text:
        LOGGER.info("Conf file content %s has changed", persisted)
        return True

    artifact_times = []
    if app_jar is not None:
        artifact_times.append(_mtime_ns(app_jar, "application"))
    if wrapper_jar is not None:
        artifact_times.append(_mtime_ns(wrapper_jar, "wrapper"))
    if not artifact_times:
        return False

    build_needed = _mtime_ns(persisted, "manifest") < max(artifact_times)
    if build_needed:
        LOGGER.info("Application %s has changed", app_jar or wrapper_jar)
    return build_needed
