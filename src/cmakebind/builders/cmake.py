"""CMake configure and build steps."""

from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass
from pathlib import Path

from cmakebind.config import BuildConfig, DefineValue
from cmakebind.errors import BuildError, ConfigurationError
from cmakebind.platforms import PlatformPolicy
from cmakebind.policy import Policy
from cmakebind.process import ToolResult, run_tool


@dataclass(frozen=True, slots=True)
class ConfiguredProject:
    source_dir: Path
    build_dir: Path
    install_prefix: Path
    config: BuildConfig
    cmake: str


def cmake_executable(policy: Policy) -> str:
    """Resolve the CMake binary, honouring ``Policy.cmake`` (``$CMAKE``)."""
    resolved = shutil.which(policy.cmake)
    if resolved is None:
        raise ConfigurationError(
            f"CMake executable `{policy.cmake}` was not found.",
            cause="missing_tool",
            hint="Install CMake or point the CMAKE environment variable at it.",
            context={"cmake": policy.cmake},
        )
    return resolved


def cmake_define(key: str, value: DefineValue) -> str:
    if isinstance(value, bool):
        return f"{key}:BOOL={'ON' if value else 'OFF'}"
    return f"{key}:STRING={value}"


def configure_arguments(
    *,
    source_dir: Path,
    build_dir: Path,
    install_prefix: Path,
    config: BuildConfig,
) -> list[str]:
    generator = config.generator_info
    args = ["-S", str(source_dir), "-B", str(build_dir), "-G", config.generator]
    if config.toolset:
        args.extend(["-T", config.toolset])

    defines: list[tuple[str, DefineValue]] = []
    # Multi-config generators pick the build type at build time.
    if not generator.multi_config:
        defines.append(("CMAKE_BUILD_TYPE", config.build_type))
    defines.append(("CMAKE_INSTALL_PREFIX", str(install_prefix)))
    defines.append(("CMAKE_SKIP_INSTALL_ALL_DEPENDENCY", True))
    if config.prefix_paths:
        # CMake list separator.
        defines.append(("CMAKE_PREFIX_PATH", ";".join(str(prefix) for prefix in config.prefix_paths)))
    standard = config.language_standard
    if standard is not None:
        defines.extend(standard.defines())
    if config.c_flags:
        defines.append(("CMAKE_C_FLAGS", " ".join(config.c_flags)))
    if config.cxx_flags:
        defines.append(("CMAKE_CXX_FLAGS", " ".join(config.cxx_flags)))
    defines.extend(config.defines)

    for key, value in defines:
        args.extend(["-D", cmake_define(key, value)])
    args.extend(config.configure_args)
    return args


def build_arguments(project: ConfiguredProject) -> list[str]:
    config = project.config
    args = ["--build", str(project.build_dir), "--parallel"]
    if config.jobs is not None:
        args.append(str(config.jobs))
    if config.generator_info.multi_config:
        args.extend(["--config", config.build_type])
    if config.build_target:
        args.extend(["--target", config.build_target])
    if config.build_args:
        args.extend(["--", *config.build_args])
    return args


def configure_project(
    source_dir: Path,
    *,
    config: BuildConfig,
    build_dir: Path,
    install_prefix: Path,
    platform: PlatformPolicy,
    policy: Policy | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> ConfiguredProject:
    """Run the CMake configure step for ``source_dir`` into ``build_dir``.

    Every validation failure raises :class:`ConfigurationError` before a
    subprocess is spawned.
    """
    policy = policy or Policy()
    if not config.finalized:
        config = config.finalize(platform)
    if config.install_prefix is not None:
        install_prefix = config.install_prefix
    generator = config.generator_info
    cmake = cmake_executable(policy)
    if generator.tool is not None and shutil.which(generator.tool) is None:
        raise ConfigurationError(
            f"Generator `{config.generator}` requires `{generator.tool}` on PATH.",
            cause="missing_tool",
            hint=f"Install `{generator.tool}` or choose another generator.",
            context={"generator": config.generator, "tool": generator.tool},
        )
    if not (source_dir / "CMakeLists.txt").is_file():
        raise ConfigurationError(
            "Source tree has no CMakeLists.txt.",
            cause="missing_project",
            context={"source_dir": str(source_dir)},
        )

    build_dir.mkdir(parents=True, exist_ok=True)
    argv = [
        cmake,
        *configure_arguments(
            source_dir=source_dir,
            build_dir=build_dir,
            install_prefix=install_prefix,
            config=config,
        ),
    ]
    run_tool(
        argv,
        error=ConfigurationError,
        operation="cmake configure",
        cwd=build_dir,
        env=config.env or None,
        timeout=timeout,
        cancel=cancel,
        verbose=policy.verbose,
        tail_lines=policy.output_tail_lines,
    )
    return ConfiguredProject(
        source_dir=source_dir,
        build_dir=build_dir,
        install_prefix=install_prefix,
        config=config,
        cmake=cmake,
    )


def build_project(
    project: ConfiguredProject,
    *,
    policy: Policy | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> ToolResult:
    """Compile a configured project; a non-zero exit raises :class:`BuildError`."""
    policy = policy or Policy()
    return run_tool(
        [project.cmake, *build_arguments(project)],
        error=BuildError,
        operation="cmake build",
        cwd=project.build_dir,
        env=project.config.env or None,
        timeout=timeout,
        cancel=cancel,
        verbose=policy.verbose,
        tail_lines=policy.output_tail_lines,
    )


def adopt_build_directory(
    build_dir: Path,
    *,
    config: BuildConfig,
    install_prefix: Path,
    source_dir: Path | None = None,
    platform: PlatformPolicy | None = None,
    policy: Policy | None = None,
) -> ConfiguredProject:
    """Wrap a build directory CMake already configured and built, ready for install."""
    policy = policy or Policy()
    if not config.finalized:
        config = config.finalize(platform)
    if not (build_dir / "CMakeCache.txt").is_file():
        raise ConfigurationError(
            "Build directory has not been configured by CMake.",
            cause="missing_build",
            hint="Run the CMake configure and build steps in it first.",
            context={"build_dir": str(build_dir)},
        )
    return ConfiguredProject(
        source_dir=source_dir or build_dir,
        build_dir=build_dir,
        install_prefix=config.install_prefix or install_prefix,
        config=config,
        cmake=cmake_executable(policy),
    )
