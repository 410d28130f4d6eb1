"""Per-platform library naming and runtime-path policy.

One :class:`PlatformPolicy` value exists per supported platform. Callers pick
it once through :func:`detect_platform` and query it instead of branching on
the host operating system.
"""

from __future__ import annotations

import os
import platform as _host
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from cmakebind.errors import ConfigurationError
from cmakebind.models import ArtifactKind

PlatformName = Literal["linux", "macos", "windows"]

_SO_PATTERN = re.compile(r"^(?P<stem>.+?)\.so(?P<version>(\.\d+)*)$")
_DYLIB_PATTERN = re.compile(r"^(?P<stem>.+?)(?P<version>(\.\d+)*)\.dylib$")
# libtool archives share the static suffix but are not linkable.
_IGNORED_SUFFIXES = (".la",)


@dataclass(frozen=True, slots=True)
class LibraryFile:
    kind: ArtifactKind
    name: str
    versioned: bool = False


@dataclass(frozen=True, slots=True)
class PlatformPolicy:
    name: PlatformName
    library_prefix: str
    static_suffix: str
    shared_suffix: str
    executable_suffix: str
    rpath_origin: str | None
    shared_libraries_in_bin: bool
    default_library_dirs: tuple[str, ...]

    def static_library_name(self, name: str) -> str:
        return f"{self.library_prefix}{name}{self.static_suffix}"

    def shared_library_name(self, name: str) -> str:
        return f"{self.library_prefix}{name}{self.shared_suffix}"

    def classify_library(self, filename: str) -> LibraryFile | None:
        """Classify a library file name, or return ``None`` if it is not a library."""
        if filename.endswith(_IGNORED_SUFFIXES):
            return None
        if filename.endswith(self.static_suffix):
            stem = filename[: -len(self.static_suffix)]
            return LibraryFile(ArtifactKind.STATIC_LIBRARY, self._strip_prefix(stem))
        if self.name == "linux":
            match = _SO_PATTERN.fullmatch(filename)
        elif self.name == "macos":
            match = _DYLIB_PATTERN.fullmatch(filename)
        else:
            match = None
            if filename.endswith(self.shared_suffix):
                stem = filename[: -len(self.shared_suffix)]
                return LibraryFile(ArtifactKind.SHARED_LIBRARY, self._strip_prefix(stem))
        if match is None:
            return None
        return LibraryFile(
            ArtifactKind.SHARED_LIBRARY,
            self._strip_prefix(match.group("stem")),
            versioned=bool(match.group("version")),
        )

    def runtime_path_directive(self) -> str | None:
        if self.rpath_origin is None:
            return None
        return f"-Wl,-rpath,{self.rpath_origin}"

    def _strip_prefix(self, stem: str) -> str:
        if self.library_prefix and stem.startswith(self.library_prefix) and len(stem) > len(
            self.library_prefix
        ):
            return stem[len(self.library_prefix) :]
        return stem


def _linux_library_dirs() -> tuple[str, ...]:
    machine = _host.machine() or "x86_64"
    return (
        "/usr/local/lib",
        "/usr/local/lib64",
        f"/usr/lib/{machine}-linux-gnu",
        f"/lib/{machine}-linux-gnu",
        "/usr/lib64",
        "/usr/lib",
        "/lib64",
        "/lib",
    )


LINUX = PlatformPolicy(
    name="linux",
    library_prefix="lib",
    static_suffix=".a",
    shared_suffix=".so",
    executable_suffix="",
    rpath_origin="$ORIGIN",
    shared_libraries_in_bin=False,
    default_library_dirs=_linux_library_dirs(),
)

MACOS = PlatformPolicy(
    name="macos",
    library_prefix="lib",
    static_suffix=".a",
    shared_suffix=".dylib",
    executable_suffix="",
    rpath_origin="@loader_path",
    shared_libraries_in_bin=False,
    default_library_dirs=("/opt/homebrew/lib", "/usr/local/lib", "/usr/lib"),
)

# Windows has no naming convention for libraries, so the prefix is omitted.
WINDOWS = PlatformPolicy(
    name="windows",
    library_prefix="",
    static_suffix=".lib",
    shared_suffix=".dll",
    executable_suffix=".exe",
    rpath_origin=None,
    shared_libraries_in_bin=True,
    default_library_dirs=(),
)

PLATFORMS: dict[PlatformName, PlatformPolicy] = {
    "linux": LINUX,
    "macos": MACOS,
    "windows": WINDOWS,
}


def detect_platform(
    target: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> PlatformPolicy:
    """Select the policy for a target triple, ``$TARGET``, or the host."""
    env = os.environ if environ is None else environ
    triple = target or env.get("TARGET")
    if triple:
        if "windows" in triple:
            return WINDOWS
        if "linux" in triple:
            return LINUX
        if "apple-darwin" in triple or "darwin" in triple:
            return MACOS
        raise ConfigurationError(
            f"Platform not supported: {triple}",
            cause="unsupported_platform",
            context={"target": triple},
        )
    if sys.platform.startswith("linux"):
        return LINUX
    if sys.platform == "darwin":
        return MACOS
    if sys.platform in {"win32", "cygwin"}:
        return WINDOWS
    raise ConfigurationError(
        f"Platform not supported: {sys.platform}",
        cause="unsupported_platform",
        context={"platform": sys.platform},
    )
