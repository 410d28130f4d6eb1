"""Install step and install-prefix artifact discovery."""

from __future__ import annotations

import os
import threading
from collections.abc import Sequence
from pathlib import Path

from cmakebind.builders.cmake import ConfiguredProject
from cmakebind.errors import InstallError
from cmakebind.models import Artifact, ArtifactKind, InstallManifest
from cmakebind.platforms import PlatformPolicy
from cmakebind.policy import Policy
from cmakebind.process import run_tool

LIBRARY_DIRS = ("lib", "lib64")
INCLUDE_DIR = "include"
BINARY_DIR = "bin"


def install_arguments(project: ConfiguredProject) -> list[str]:
    args = ["--install", str(project.build_dir), "--prefix", str(project.install_prefix)]
    if project.config.generator_info.multi_config:
        args.extend(["--config", project.config.build_type])
    return args


def install_project(
    project: ConfiguredProject,
    *,
    platform: PlatformPolicy,
    policy: Policy | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> InstallManifest:
    """Install into the project's private prefix and classify what landed there."""
    policy = policy or Policy()
    project.install_prefix.mkdir(parents=True, exist_ok=True)
    run_tool(
        [project.cmake, *install_arguments(project)],
        error=InstallError,
        operation="cmake install",
        cwd=project.build_dir,
        env=project.config.env or None,
        timeout=timeout,
        cancel=cancel,
        verbose=policy.verbose,
        tail_lines=policy.output_tail_lines,
    )
    manifest = scan_prefix(
        project.install_prefix,
        platform=platform,
        include_dirs=project.config.include_subdirs,
        library_dirs=project.config.library_subdirs,
    )
    if manifest.is_empty():
        raise InstallError(
            "Install step produced no artifacts.",
            cause="empty_manifest",
            hint="Check that the project declares install() rules for its targets.",
            context={"prefix": str(project.install_prefix)},
        )
    return manifest


def scan_prefix(
    prefix: Path,
    *,
    platform: PlatformPolicy,
    include_dirs: Sequence[str] = (),
    library_dirs: Sequence[str] = (),
) -> InstallManifest:
    """Walk the conventional prefix subdirectories and classify their files.

    ``include_dirs`` and ``library_dirs`` name further prefix-relative
    directories to export; those that do not exist are skipped.
    """
    root = prefix.resolve()
    artifacts: list[Artifact] = []
    seen: set[tuple[ArtifactKind, Path]] = set()

    scanned = list(LIBRARY_DIRS)
    if platform.shared_libraries_in_bin:
        scanned.append(BINARY_DIR)
    scanned.extend(name for name in library_dirs if name not in scanned)
    for name in scanned:
        for artifact in _scan_libraries(root / name, platform=platform):
            identity = (artifact.kind, artifact.path.resolve())
            if identity in seen:
                continue
            seen.add(identity)
            artifacts.append(artifact)

    include_dir = root / INCLUDE_DIR
    if include_dir.is_dir() and any(path.is_file() for path in include_dir.rglob("*")):
        artifacts.append(Artifact(ArtifactKind.HEADER_DIRECTORY, INCLUDE_DIR, include_dir))
    for name in include_dirs:
        extra = root / name
        if name != INCLUDE_DIR and extra.is_dir():
            artifacts.append(Artifact(ArtifactKind.HEADER_DIRECTORY, name, extra))

    artifacts.extend(_scan_executables(root / BINARY_DIR, platform=platform))
    return InstallManifest(prefix=root, artifacts=tuple(artifacts))


def _scan_libraries(directory: Path, *, platform: PlatformPolicy) -> list[Artifact]:
    if not directory.is_dir():
        return []
    static: list[Artifact] = []
    shared: dict[str, list[tuple[bool, Path]]] = {}
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        library = platform.classify_library(path.name)
        if library is None:
            continue
        if library.kind == ArtifactKind.STATIC_LIBRARY:
            static.append(Artifact(ArtifactKind.STATIC_LIBRARY, library.name, path))
        else:
            shared.setdefault(library.name, []).append((library.versioned, path))

    artifacts = list(static)
    for name, variants in shared.items():
        # Versioned aliases (libfoo.so.1, libfoo.so.1.2) collapse onto the link name.
        unversioned = [path for versioned, path in variants if not versioned]
        candidates = unversioned or [path for _, path in variants]
        kept: dict[Path, Path] = {}
        for path in candidates:
            kept.setdefault(path.resolve(), path)
        artifacts.extend(
            Artifact(ArtifactKind.SHARED_LIBRARY, name, path) for path in kept.values()
        )
    return artifacts


def _scan_executables(directory: Path, *, platform: PlatformPolicy) -> list[Artifact]:
    if not directory.is_dir():
        return []
    artifacts: list[Artifact] = []
    for path in sorted(directory.iterdir()):
        if not path.is_file() or platform.classify_library(path.name) is not None:
            continue
        if platform.executable_suffix:
            if path.suffix != platform.executable_suffix:
                continue
            name = path.stem
        else:
            if not os.access(path, os.X_OK):
                continue
            name = path.name
        artifacts.append(Artifact(ArtifactKind.EXECUTABLE, name, path))
    return artifacts
