"""The narrow view of the generic launcher this package consumes.

A launch is described by :class:`LaunchInputs`: the application jar, the app
cache directory, the resolved classpath and JVM arguments and the declared
attributes. The local dependency repository belongs to whichever collaborator
resolved the dependencies and is looked up through the
:class:`LocalRepositoryProvider` capability.
"""

from __future__ import annotations

import abc
import functools
import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Mapping

from osv_capsule.errors import LaunchDescriptorError
from osv_capsule.remap import (
    GUEST_JAVA_EXECUTABLE,
    PathLike,
    PathRemapper,
    RemapRoots,
    normalize_host_path,
)


LOGGER = logging.getLogger("osv_capsule.launcher")

ENV_WRAPPER_JAR = "CAPSULE_JAR"
ENV_LOCAL_REPO = "CAPSULE_LOCAL_REPO"

ATTR_IMAGE_ONLY = "Image-Only"
ATTR_PORT_FORWARD = "Port-Forward"
ATTR_NETWORK_TYPE = "Network-Type"
ATTR_PHYSICAL_NIC_NAME = "Physical-NIC-Name"
ATTR_JAVA_VERSION = "Java-Version"

PROP_CAPSULE_APP = "capsule.app"
PROP_CAPSULE_DIR = "capsule.dir"
PROP_LIBRARY_PATH = "java.library.path"


class LocalRepositoryProvider(abc.ABC):
    @abc.abstractmethod
    def local_repository(self) -> Path | None:
        """The root of the local repository dependencies are resolved into, if any."""
        pass


class ConfiguredLocalRepository(LocalRepositoryProvider):
    def __init__(self, path: PathLike | None) -> None:
        self._path = None if path is None else normalize_host_path(path)

    def local_repository(self) -> Path | None:
        return self._path


def find_local_repository(collaborators: Iterable[object]) -> Path | None:
    for collaborator in collaborators:
        if not isinstance(collaborator, LocalRepositoryProvider):
            continue
        repo = collaborator.local_repository()
        if repo is not None:
            return normalize_host_path(repo)
    return None


@functools.lru_cache(maxsize=None)
def own_wrapper_jar() -> Path | None:
    """Location of the wrapper artifact this process was started from.

    Resolved once per process from ``CAPSULE_JAR``; ``cache_clear()`` resets it.
    """
    return _wrapper_jar_from(os.environ)


def _wrapper_jar_from(source: Mapping[str, str]) -> Path | None:
    value = str(source.get(ENV_WRAPPER_JAR, "")).strip()
    if not value:
        return None
    return normalize_host_path(Path(value).expanduser())


@dataclass(frozen=True)
class LaunchAttributes:
    image_only: bool = False
    port_forward: str | None = None
    network_type: str | None = None
    physical_nic_name: str | None = None
    java_version: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> LaunchAttributes:
        image_only = raw.get(ATTR_IMAGE_ONLY, False)
        if not isinstance(image_only, bool):
            raise LaunchDescriptorError(f"Attribute {ATTR_IMAGE_ONLY} must be a boolean, got {image_only!r}")
        java_version = raw.get(ATTR_JAVA_VERSION)
        # TOML floats lose digits: 1.10 reads as 1.1
        if isinstance(java_version, int) and not isinstance(java_version, bool):
            java_version = str(java_version)
        return cls(
            image_only=image_only,
            port_forward=_optional_string(raw, ATTR_PORT_FORWARD),
            network_type=_optional_string(raw, ATTR_NETWORK_TYPE),
            physical_nic_name=_optional_string(raw, ATTR_PHYSICAL_NIC_NAME),
            java_version=_optional_string({ATTR_JAVA_VERSION: java_version}, ATTR_JAVA_VERSION),
        )


def _optional_string(raw: Mapping[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise LaunchDescriptorError(f"Attribute {key} must be a string, got {value!r}")
    return value.strip() or None


@dataclass(frozen=True)
class LaunchInputs:
    app_id: str
    app_jar: Path | None = None
    app_cache_dir: Path | None = None
    java_home: Path | None = None
    java_executable: Path | None = None
    classpath: tuple[Path, ...] = ()
    jvm_args: tuple[str, ...] = ()
    main_class: str | None = None
    args: tuple[str, ...] = ()
    native_library_path: tuple[Path, ...] = ()
    wrapper_jar: Path | None = None
    attributes: LaunchAttributes = field(default_factory=LaunchAttributes)
    collaborators: tuple[object, ...] = ()

    @property
    def is_wrapper(self) -> bool:
        return self.wrapper_jar is not None and self.wrapper_jar != self.app_jar

    def local_repository(self) -> Path | None:
        return find_local_repository(self.collaborators)

    def remap_roots(self, native_library_roots: Iterable[Path] | None = None) -> RemapRoots:
        extra: dict[str, Any] = {}
        if native_library_roots is not None:
            extra["native_library_roots"] = tuple(native_library_roots)
        return RemapRoots(
            app_jar=self.app_jar,
            app_cache_dir=self.app_cache_dir,
            local_repo=self.local_repository(),
            java_home=self.java_home,
            java_executable=self.java_executable,
            wrapper_jar=self.wrapper_jar if self.is_wrapper else None,
            **extra,
        )


class DependencyRecorder:
    """Remaps launch paths, remembering those drawn from the local repository."""

    def __init__(self, remapper: PathRemapper) -> None:
        self.remapper = remapper
        self.dependencies: set[Path] = set()

    def resolve(self, value: PathLike) -> PurePosixPath:
        path = normalize_host_path(value)
        local_repo = self.remapper.roots.local_repo
        if local_repo is not None and local_repo in path.parents:
            self.dependencies.add(path)
        return self.remapper.remap(path)


def host_boot_command(inputs: LaunchInputs, recorder: DependencyRecorder) -> list[str]:
    """The JVM command line for the launch, with every path already in guest form."""
    if inputs.java_executable is not None:
        command = [str(recorder.resolve(inputs.java_executable))]
    else:
        command = [str(GUEST_JAVA_EXECUTABLE)]
    command.extend(inputs.jvm_args)
    command.append(f"-D{PROP_CAPSULE_APP}={inputs.app_id}")
    if inputs.app_cache_dir is not None:
        command.append(f"-D{PROP_CAPSULE_DIR}={recorder.resolve(inputs.app_cache_dir)}")
    if inputs.native_library_path:
        library_path = ":".join(str(recorder.resolve(path)) for path in inputs.native_library_path)
        command.append(f"-D{PROP_LIBRARY_PATH}={library_path}")

    if inputs.main_class:
        entries = ([inputs.app_jar] if inputs.app_jar is not None else []) + list(inputs.classpath)
        command.extend(["-classpath", ":".join(str(recorder.resolve(entry)) for entry in entries)])
        command.append(inputs.main_class)
    else:
        if inputs.app_jar is None:
            raise LaunchDescriptorError(f"Application '{inputs.app_id}' declares neither a jar nor a main class")
        if inputs.classpath:
            raise LaunchDescriptorError("A classpath requires an explicit main class")
        command.extend(["-jar", str(recorder.resolve(inputs.app_jar))])
    command.extend(inputs.args)
    return command


def _to_absolute(value: str, cwd: Path) -> Path:
    path = Path(value).expanduser()
    return normalize_host_path(path if path.is_absolute() else cwd / path)


def _string_list(table: Mapping[str, Any], key: str) -> list[str]:
    value = table.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise LaunchDescriptorError(f"Descriptor key '{key}' must be a list of strings")
    return list(value)


def _optional_path(table: Mapping[str, Any], key: str, base: Path) -> Path | None:
    value = table.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise LaunchDescriptorError(f"Descriptor key '{key}' must be a non-empty path string")
    return _to_absolute(value.strip(), base)


def load_descriptor(path: Path, *, env: Mapping[str, str] | None = None) -> LaunchInputs:
    """Read a TOML application descriptor.

    Relative paths are resolved against the descriptor's directory. Without a
    ``local-repo`` entry the repository comes from ``CAPSULE_LOCAL_REPO``. An
    explicit ``env`` also supplies ``CAPSULE_JAR``; otherwise the memoized
    process-wide wrapper location is used.
    """
    source = os.environ if env is None else env
    try:
        parsed = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeError) as exc:
        raise LaunchDescriptorError(f"Unable to read application descriptor {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise LaunchDescriptorError(f"Unable to parse application descriptor {path}: {exc}") from exc

    application = parsed.get("application")
    if not isinstance(application, dict):
        raise LaunchDescriptorError(f"Application descriptor {path} has no [application] table")
    attributes = parsed.get("attributes", {})
    if not isinstance(attributes, dict):
        raise LaunchDescriptorError(f"Application descriptor {path} has an invalid [attributes] table")

    base = normalize_host_path(path).parent
    app_id = str(application.get("id") or "").strip()
    if not app_id:
        raise LaunchDescriptorError(f"Application descriptor {path} does not declare an id")

    main_class = application.get("main-class")
    if main_class is not None and not isinstance(main_class, str):
        raise LaunchDescriptorError("Descriptor key 'main-class' must be a string")

    local_repo = _optional_path(application, "local-repo", base)
    if local_repo is None and str(source.get(ENV_LOCAL_REPO, "")).strip():
        local_repo = _to_absolute(str(source[ENV_LOCAL_REPO]).strip(), base)

    inputs = LaunchInputs(
        app_id=app_id,
        app_jar=_optional_path(application, "jar", base),
        app_cache_dir=_optional_path(application, "app-cache-dir", base),
        java_home=_optional_path(application, "java-home", base),
        java_executable=_optional_path(application, "java-executable", base),
        classpath=tuple(_to_absolute(entry, base) for entry in _string_list(application, "classpath")),
        jvm_args=tuple(_string_list(application, "jvm-args")),
        main_class=(main_class or "").strip() or None,
        args=tuple(_string_list(application, "args")),
        native_library_path=tuple(
            _to_absolute(entry, base) for entry in _string_list(application, "native-library-path")
        ),
        wrapper_jar=own_wrapper_jar() if env is None else _wrapper_jar_from(env),
        attributes=LaunchAttributes.from_mapping(attributes),
        collaborators=(ConfiguredLocalRepository(local_repo),),
    )
    LOGGER.debug("Loaded descriptor %s for application %s", path, app_id)
    return inputs
