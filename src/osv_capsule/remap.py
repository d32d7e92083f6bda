"""Mapping of host filesystem locations into the guest image namespace.

Every file the launch needs is classified against the known host roots by an
ordered rule list. The first rule that matches decides the guest location, so
rule order is the tie-break whenever roots nest or overlap (an application jar
kept inside the app cache is placed at the guest root, a dependency kept inside
the runtime home is flattened into the dependency directory, and so on).
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable

from osv_capsule.errors import UnmappableHostPathError


LOGGER = logging.getLogger("osv_capsule.remap")

GUEST_ROOT = PurePosixPath("/")
GUEST_APP_ROOT = PurePosixPath("/capsule/app")
GUEST_DEP_ROOT = PurePosixPath("/capsule/dep")
GUEST_WRAPPER_ROOT = PurePosixPath("/capsule/wrapper")
GUEST_JAVA_EXECUTABLE = PurePosixPath("/java.so")
LEGACY_GUEST_ROOTS = (PurePosixPath("/app"), PurePosixPath("/dep"))
GUEST_ROOTED_PREFIXES = LEGACY_GUEST_ROOTS + (GUEST_APP_ROOT, GUEST_DEP_ROOT, GUEST_WRAPPER_ROOT)
DEFAULT_PLATFORM_NATIVE_LIBRARY_PATH = "/usr/java/packages/lib/amd64:/usr/lib64:/lib64:/lib:/usr/lib"

PathLike = str | os.PathLike[str]


class Role(enum.Enum):
    ALREADY_GUEST_ROOTED = "already-guest-rooted"
    JAVA_RUNTIME_ROOT = "java-runtime-root"
    APPLICATION_JAR = "application-jar"
    OWN_WRAPPER_JAR = "own-wrapper-jar"
    APP_CACHE_TREE = "app-cache-tree"
    DEPENDENCY_REPO_ROOT = "dependency-repo-root"
    NATIVE_LIBRARY_ROOT = "native-library-root"
    UNCLASSIFIED = "unclassified"


def normalize_host_path(value: PathLike) -> Path:
    return Path(os.path.normpath(os.path.abspath(os.fspath(value))))


def split_search_path(value: str) -> tuple[Path, ...]:
    return tuple(Path(part) for part in value.split(os.pathsep) if part)


def _path_is_within(path: PurePosixPath, root: PurePosixPath) -> bool:
    if path == root:
        return True
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _optional_host_path(value: PathLike | None) -> Path | None:
    if value is None:
        return None
    return normalize_host_path(value)


@dataclass(frozen=True)
class RemapRoots:
    """The host-side roots a launch knows about. Any of them may be absent."""

    app_jar: Path | None = None
    app_cache_dir: Path | None = None
    local_repo: Path | None = None
    java_home: Path | None = None
    java_executable: Path | None = None
    wrapper_jar: Path | None = None
    native_library_roots: tuple[Path, ...] = field(
        default_factory=lambda: split_search_path(DEFAULT_PLATFORM_NATIVE_LIBRARY_PATH)
    )

    def __post_init__(self) -> None:
        for name in ("app_jar", "app_cache_dir", "local_repo", "java_home", "java_executable", "wrapper_jar"):
            object.__setattr__(self, name, _optional_host_path(getattr(self, name)))
        object.__setattr__(
            self,
            "native_library_roots",
            tuple(normalize_host_path(root) for root in self.native_library_roots),
        )


@dataclass(frozen=True)
class RemapRule:
    name: str
    role: Role
    matches: Callable[[PurePosixPath], bool]
    target: Callable[[PurePosixPath], PurePosixPath]


class PathRemapper:
    def __init__(self, roots: RemapRoots) -> None:
        self.roots = roots
        self.rules: tuple[RemapRule, ...] = tuple(self._build_rules())

    def _build_rules(self) -> Iterable[RemapRule]:
        roots = self.roots

        def guest_rooted(path: PurePosixPath) -> bool:
            if path == GUEST_JAVA_EXECUTABLE:
                return True
            return any(_path_is_within(path, prefix) for prefix in GUEST_ROOTED_PREFIXES)

        def equals(root: Path | None) -> Callable[[PurePosixPath], bool]:
            return lambda path: root is not None and path == PurePosixPath(root)

        def within(root: Path | None) -> Callable[[PurePosixPath], bool]:
            return lambda path: root is not None and _path_is_within(path, PurePosixPath(root))

        def unchanged(path: PurePosixPath) -> PurePosixPath:
            return path

        def under_app_root(path: PurePosixPath) -> PurePosixPath:
            assert roots.app_cache_dir is not None
            return GUEST_APP_ROOT / path.relative_to(PurePosixPath(roots.app_cache_dir))

        def under_dep_root(path: PurePosixPath) -> PurePosixPath:
            # flattened to the file name; same-named artifacts collide
            if path == PurePosixPath(roots.local_repo or GUEST_ROOT):
                return GUEST_DEP_ROOT
            return GUEST_DEP_ROOT / path.name

        def flattened_into(root: PurePosixPath) -> Callable[[PurePosixPath], PurePosixPath]:
            return lambda path: root / path.name

        yield RemapRule("guest-rooted", Role.ALREADY_GUEST_ROOTED, guest_rooted, unchanged)
        yield RemapRule(
            "java-executable",
            Role.JAVA_RUNTIME_ROOT,
            equals(roots.java_executable),
            lambda _path: GUEST_JAVA_EXECUTABLE,
        )
        yield RemapRule("application-jar", Role.APPLICATION_JAR, equals(roots.app_jar), flattened_into(GUEST_ROOT))
        yield RemapRule(
            "wrapper-jar",
            Role.OWN_WRAPPER_JAR,
            equals(roots.wrapper_jar),
            flattened_into(GUEST_WRAPPER_ROOT),
        )
        yield RemapRule("app-cache", Role.APP_CACHE_TREE, within(roots.app_cache_dir), under_app_root)
        yield RemapRule("local-repository", Role.DEPENDENCY_REPO_ROOT, within(roots.local_repo), under_dep_root)
        native_roots = frozenset(PurePosixPath(root) for root in roots.native_library_roots)
        yield RemapRule("native-library", Role.NATIVE_LIBRARY_ROOT, lambda path: path in native_roots, unchanged)
        # the runtime home was already chosen as a guest location
        yield RemapRule("java-home", Role.JAVA_RUNTIME_ROOT, within(roots.java_home), unchanged)

    def _match(self, value: PathLike) -> tuple[PurePosixPath, RemapRule | None]:
        path = PurePosixPath(normalize_host_path(value))
        for rule in self.rules:
            if rule.matches(path):
                return path, rule
        return path, None

    def classify(self, value: PathLike) -> Role:
        _, rule = self._match(value)
        return rule.role if rule is not None else Role.UNCLASSIFIED

    def remap(self, value: PathLike) -> PurePosixPath:
        path, rule = self._match(value)
        if rule is None:
            raise UnmappableHostPathError(Path(path))
        guest = rule.target(path)
        LOGGER.debug("Remapped %s -> %s (rule=%s)", path, guest, rule.name)
        return guest
