"""Immutable CMake build configuration with a single validating finalize step."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import cbor2

from cmakebind.errors import ConfigurationError

if TYPE_CHECKING:
    from cmakebind.platforms import PlatformPolicy

DefineValue = str | bool | int

BUILD_TYPES = ("Debug", "Release", "RelWithDebInfo", "MinSizeRel")

# Keys owned by dedicated BuildConfig fields.
RESERVED_DEFINES = frozenset(
    {"CMAKE_BUILD_TYPE", "CMAKE_INSTALL_PREFIX", "CMAKE_GENERATOR", "CMAKE_PREFIX_PATH"}
)

_DEFINE_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_STANDARD = re.compile(r"^(?P<lang>c\+\+|gnu\+\+|c|gnu)?(?P<version>\d{2})$", re.IGNORECASE)
_C_STANDARDS = frozenset({"90", "99", "11", "17", "23"})
_CXX_STANDARDS = frozenset({"98", "11", "14", "17", "20", "23", "26"})


@dataclass(frozen=True, slots=True)
class Generator:
    name: str
    tool: str | None
    multi_config: bool
    platforms: tuple[str, ...]


_ALL = ("linux", "macos", "windows")

GENERATORS: dict[str, Generator] = {
    generator.name: generator
    for generator in (
        Generator("Ninja", "ninja", False, _ALL),
        Generator("Ninja Multi-Config", "ninja", True, _ALL),
        Generator("Unix Makefiles", "make", False, ("linux", "macos")),
        Generator("MinGW Makefiles", "mingw32-make", False, ("windows",)),
        Generator("NMake Makefiles", "nmake", False, ("windows",)),
        Generator("Xcode", "xcodebuild", True, ("macos",)),
        Generator("Visual Studio 17 2022", None, True, ("windows",)),
        Generator("Visual Studio 16 2019", None, True, ("windows",)),
    )
}


@dataclass(frozen=True, slots=True)
class LanguageStandard:
    language: str
    version: str
    extensions: bool

    def defines(self) -> tuple[tuple[str, DefineValue], ...]:
        return (
            (f"CMAKE_{self.language}_STANDARD", self.version),
            (f"CMAKE_{self.language}_STANDARD_REQUIRED", True),
            (f"CMAKE_{self.language}_EXTENSIONS", self.extensions),
        )


def parse_standard(value: str) -> LanguageStandard:
    """Parse ``c11``, ``c++20``, ``gnu++17`` or a bare ``17`` (C++)."""
    match = _STANDARD.fullmatch(value.strip())
    if match is None:
        raise ConfigurationError(
            f"Unsupported language standard: {value}",
            hint="Use forms like 'c11', 'c++17', 'gnu++20' or '17'.",
            context={"standard": value},
        )
    lang = (match.group("lang") or "c++").lower()
    version = match.group("version")
    language = "CXX" if lang.endswith("++") else "C"
    allowed = _CXX_STANDARDS if language == "CXX" else _C_STANDARDS
    if version not in allowed:
        raise ConfigurationError(
            f"Unsupported language standard: {value}",
            hint=f"Known {language} standards: {', '.join(sorted(allowed))}.",
            context={"standard": value},
        )
    return LanguageStandard(language=language, version=version, extensions=lang.startswith("gnu"))


@dataclass(frozen=True, slots=True)
class BuildConfig:
    generator: str = "Ninja"
    build_type: str = "Release"
    standard: str | None = None
    defines: tuple[tuple[str, DefineValue], ...] = ()
    install_prefix: Path | None = None
    build_target: str | None = None
    c_flags: tuple[str, ...] = ()
    cxx_flags: tuple[str, ...] = ()
    toolset: str | None = None
    configure_args: tuple[str, ...] = ()
    build_args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    jobs: int | None = None
    include_subdirs: tuple[str, ...] = ()
    library_subdirs: tuple[str, ...] = ()
    prefix_paths: tuple[Path, ...] = ()
    finalized: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.env, MappingProxyType):
            object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def with_generator(self, generator: str) -> BuildConfig:
        return self._evolve(generator=generator)

    def with_build_type(self, build_type: str) -> BuildConfig:
        return self._evolve(build_type=build_type)

    def with_standard(self, standard: str) -> BuildConfig:
        return self._evolve(standard=standard)

    def with_define(self, key: str, value: DefineValue) -> BuildConfig:
        kept = tuple((k, v) for k, v in self.defines if k != key)
        return self._evolve(defines=(*kept, (key, value)))

    def with_defines(self, defines: Mapping[str, DefineValue]) -> BuildConfig:
        config = self
        for key, value in defines.items():
            config = config.with_define(key, value)
        return config

    def with_install_prefix(self, prefix: str | Path) -> BuildConfig:
        return self._evolve(install_prefix=Path(prefix))

    def with_build_target(self, target: str) -> BuildConfig:
        return self._evolve(build_target=target)

    def with_c_flag(self, flag: str) -> BuildConfig:
        return self._evolve(c_flags=(*self.c_flags, flag))

    def with_cxx_flag(self, flag: str) -> BuildConfig:
        return self._evolve(cxx_flags=(*self.cxx_flags, flag))

    def with_toolset(self, toolset: str) -> BuildConfig:
        return self._evolve(toolset=toolset)

    def with_configure_arg(self, arg: str) -> BuildConfig:
        return self._evolve(configure_args=(*self.configure_args, arg))

    def with_build_arg(self, arg: str) -> BuildConfig:
        return self._evolve(build_args=(*self.build_args, arg))

    def with_env(self, key: str, value: str) -> BuildConfig:
        return self._evolve(env={**self.env, key: value})

    def with_jobs(self, jobs: int) -> BuildConfig:
        return self._evolve(jobs=jobs)

    def with_include_subdir(self, subdir: str | Path) -> BuildConfig:
        """Also export ``<prefix>/<subdir>`` as a header directory when it exists."""
        return self._evolve(include_subdirs=(*self.include_subdirs, Path(subdir).as_posix()))

    def with_library_subdir(self, subdir: str | Path) -> BuildConfig:
        """Also scan ``<prefix>/<subdir>`` for libraries when it exists."""
        return self._evolve(library_subdirs=(*self.library_subdirs, Path(subdir).as_posix()))

    def with_prefix_path(self, prefix: str | Path) -> BuildConfig:
        """Let ``find_package`` see a dependency installed under ``prefix``."""
        return self._evolve(prefix_paths=(*self.prefix_paths, Path(prefix)))

    @property
    def generator_info(self) -> Generator:
        info = GENERATORS.get(self.generator)
        if info is None:
            raise ConfigurationError(
                f"Unknown CMake generator: {self.generator}",
                cause="unsupported_generator",
                hint=f"Supported generators: {', '.join(sorted(GENERATORS))}.",
                context={"generator": self.generator},
            )
        return info

    @property
    def language_standard(self) -> LanguageStandard | None:
        return parse_standard(self.standard) if self.standard else None

    def finalize(self, platform: PlatformPolicy | None = None) -> BuildConfig:
        """Validate every field and return a frozen, normalised copy."""
        generator = self.generator_info
        if platform is not None and platform.name not in generator.platforms:
            raise ConfigurationError(
                f"Generator `{self.generator}` is not available on {platform.name}.",
                cause="unsupported_generator",
                context={"generator": self.generator, "platform": platform.name},
            )
        if self.build_type not in BUILD_TYPES:
            raise ConfigurationError(
                f"Unknown build type: {self.build_type}",
                hint=f"Use one of {', '.join(BUILD_TYPES)}.",
                context={"build_type": self.build_type},
            )
        standard = self.language_standard
        for key, value in self.defines:
            if not _DEFINE_KEY.fullmatch(key):
                raise ConfigurationError(
                    f"Invalid CMake define name: {key!r}",
                    context={"define": key},
                )
            if key in RESERVED_DEFINES:
                raise ConfigurationError(
                    f"`{key}` is set through a dedicated BuildConfig field.",
                    hint="Use with_build_type()/with_install_prefix()/with_generator()/with_prefix_path().",
                    context={"define": key},
                )
            if not isinstance(value, (str, bool, int)):
                raise ConfigurationError(
                    f"Unsupported value type for define `{key}`.",
                    context={"define": key, "type": type(value).__name__},
                )
        if self.jobs is not None and self.jobs < 1:
            raise ConfigurationError("jobs must be a positive integer.", context={"jobs": str(self.jobs)})
        for subdir in (*self.include_subdirs, *self.library_subdirs):
            parts = Path(subdir).parts
            if not parts or Path(subdir).is_absolute() or ".." in parts:
                raise ConfigurationError(
                    f"Scan directory `{subdir}` must be a relative path inside the install prefix.",
                    context={"subdir": subdir},
                )
        for prefix in self.prefix_paths:
            if not prefix.is_absolute():
                raise ConfigurationError(
                    f"Dependency prefix `{prefix}` must be an absolute path.",
                    context={"prefix": str(prefix)},
                )
        if standard is not None:
            user_keys = {key for key, _ in self.defines}
            clashes = sorted(user_keys & {key for key, _ in standard.defines()})
            if clashes:
                raise ConfigurationError(
                    "Language standard defines conflict with explicit defines.",
                    context={"defines": ", ".join(clashes)},
                )
        return replace(
            self,
            defines=tuple(sorted(self.defines, key=lambda item: item[0])),
            env=dict(sorted(self.env.items())),
            include_subdirs=tuple(dict.fromkeys(self.include_subdirs)),
            library_subdirs=tuple(dict.fromkeys(self.library_subdirs)),
            prefix_paths=tuple(dict.fromkeys(self.prefix_paths)),
            finalized=True,
        )

    def fingerprint(self) -> str:
        """Stable digest of a finalized config, used for build/cache scoping."""
        if not self.finalized:
            raise ConfigurationError(
                "BuildConfig must be finalized before it is fingerprinted.",
                hint="Call finalize() first.",
            )
        encoded = cbor2.dumps(self._payload(), canonical=True)
        return hashlib.sha256(encoded).hexdigest()

    def _payload(self) -> dict[str, Any]:
        return {
            "generator": self.generator,
            "build_type": self.build_type,
            "standard": self.standard,
            "defines": [[key, value] for key, value in self.defines],
            "install_prefix": str(self.install_prefix) if self.install_prefix else None,
            "build_target": self.build_target,
            "c_flags": list(self.c_flags),
            "cxx_flags": list(self.cxx_flags),
            "toolset": self.toolset,
            "configure_args": list(self.configure_args),
            "build_args": list(self.build_args),
            "env": dict(sorted(self.env.items())),
            "jobs": self.jobs,
            "include_subdirs": list(self.include_subdirs),
            "library_subdirs": list(self.library_subdirs),
            "prefix_paths": [str(prefix) for prefix in self.prefix_paths],
        }

    def _evolve(self, **changes: Any) -> BuildConfig:
        return replace(self, finalized=False, **changes)
