"""Link-target resolution and link descriptor assembly."""

from __future__ import annotations

import heapq
import os
import shlex
import shutil
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from cmakebind.errors import ResolutionError
from cmakebind.models import (
    ArtifactKind,
    InstallManifest,
    LinkDescriptor,
    LinkRequest,
    LinkTarget,
    TargetRequest,
)
from cmakebind.platforms import PlatformPolicy
from cmakebind.process import run_tool


@dataclass(frozen=True, slots=True)
class SystemLibraryLocator:
    """Looks up system libraries via pkg-config, library directories, then an allow-list."""

    platform: PlatformPolicy
    search_dirs: tuple[Path, ...] = ()
    use_pkg_config: bool = True
    known: frozenset[str] = frozenset()

    @classmethod
    def for_platform(
        cls,
        platform: PlatformPolicy,
        *,
        known: frozenset[str] = frozenset(),
        use_pkg_config: bool = True,
        environ: Mapping[str, str] | None = None,
    ) -> SystemLibraryLocator:
        env = os.environ if environ is None else environ
        extra = [Path(entry) for entry in env.get("LIBRARY_PATH", "").split(os.pathsep) if entry]
        defaults = [Path(entry) for entry in platform.default_library_dirs]
        return cls(
            platform=platform,
            search_dirs=tuple(extra + defaults),
            use_pkg_config=use_pkg_config,
            known=known,
        )

    def locate(
        self,
        name: str,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> LinkTarget | None:
        if self.use_pkg_config:
            target = self._from_pkg_config(name, timeout=timeout, cancel=cancel)
            if target is not None:
                return target
        for directory in self.search_dirs:
            for filename in (
                self.platform.shared_library_name(name),
                self.platform.static_library_name(name),
            ):
                candidate = directory / filename
                if candidate.is_file():
                    return LinkTarget(name=name, kind="system", linkage="system", paths=(candidate,))
        if name in self.known:
            return LinkTarget(name=name, kind="system", linkage="system")
        return None

    def _from_pkg_config(
        self,
        name: str,
        *,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> LinkTarget | None:
        if shutil.which("pkg-config") is None:
            return None
        result = run_tool(
            ["pkg-config", "--libs", name],
            error=ResolutionError,
            operation="pkg-config",
            check=False,
            timeout=timeout,
            cancel=cancel,
        )
        if result.returncode != 0:
            return None
        flags = tuple(shlex.split(result.output.strip()))
        return LinkTarget(name=name, kind="system", linkage="system", flags=flags)


def resolve_targets(
    request: LinkRequest,
    manifest: InstallManifest | None,
    *,
    locator: SystemLibraryLocator,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> tuple[LinkTarget, ...]:
    """Resolve every requested target or raise naming all that are missing."""
    resolved: list[LinkTarget] = []
    missing: list[TargetRequest] = []
    seen: set[tuple[str, str]] = set()
    for item in request.targets:
        if (item.name, item.kind) in seen:
            continue
        seen.add((item.name, item.kind))
        if item.kind == "local":
            target = _resolve_local(item, manifest) if manifest is not None else None
        else:
            target = locator.locate(item.name, timeout=timeout, cancel=cancel)
        if target is None:
            missing.append(item)
        else:
            resolved.append(target)

    if missing:
        names = ", ".join(f"{item.name} ({item.kind})" for item in missing)
        available = ""
        if manifest is not None:
            available = ", ".join(
                sorted(
                    {
                        artifact.name
                        for artifact in manifest.artifacts
                        if artifact.kind
                        in (ArtifactKind.STATIC_LIBRARY, ArtifactKind.SHARED_LIBRARY)
                    }
                )
            )
        raise ResolutionError(
            f"Unresolved link targets: {names}",
            cause="missing",
            hint="Check the target names against the installed libraries or system search paths.",
            context={"missing": ", ".join(item.name for item in missing), "available": available},
        )
    return tuple(resolved)


def _resolve_local(item: TargetRequest, manifest: InstallManifest) -> LinkTarget | None:
    static = manifest.find(item.name, ArtifactKind.STATIC_LIBRARY)
    shared = manifest.find(item.name, ArtifactKind.SHARED_LIBRARY)
    if item.linkage == "shared":
        order = (("shared", shared),)
    elif item.linkage == "static":
        order = (("static", static),)
    else:
        order = (("static", static), ("shared", shared))

    for linkage, artifacts in order:
        if not artifacts:
            continue
        if len(artifacts) > 1:
            raise ResolutionError(
                f"Link target `{item.name}` matches more than one {linkage} library.",
                cause="ambiguous",
                hint="Remove the duplicate install or request a specific linkage.",
                context={
                    "target": item.name,
                    "candidates": ", ".join(str(artifact.path) for artifact in artifacts),
                },
            )
        return LinkTarget(
            name=item.name,
            kind="local",
            linkage="shared" if linkage == "shared" else "static",
            paths=(artifacts[0].path,),
        )
    return None


def order_targets(
    targets: Sequence[LinkTarget],
    dependencies: Mapping[str, Sequence[str]],
) -> tuple[LinkTarget, ...]:
    """Order targets so each precedes everything it transitively depends on.

    Ties keep the request order. A cycle among requested targets raises
    :class:`ResolutionError`.
    """
    position = {target.name: index for index, target in enumerate(targets)}
    if len(position) != len(targets):
        raise ResolutionError(
            "Link target names must be unique across local and system targets.",
            cause="ambiguous",
            context={"targets": ", ".join(target.name for target in targets)},
        )
    successors: dict[str, set[str]] = {name: set() for name in position}
    indegree = dict.fromkeys(position, 0)

    for name in position:
        for dependency in _reachable(name, dependencies):
            if dependency == name:
                raise ResolutionError(
                    f"Link target `{name}` depends on itself.",
                    cause="cycle",
                    context={"target": name},
                )
            if dependency in position and dependency not in successors[name]:
                successors[name].add(dependency)
                indegree[dependency] += 1

    ready = [(position[name], name) for name, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        ordered.append(name)
        for dependency in successors[name]:
            indegree[dependency] -= 1
            if indegree[dependency] == 0:
                heapq.heappush(ready, (position[dependency], dependency))

    if len(ordered) != len(position):
        remaining = sorted(set(position) - set(ordered), key=position.__getitem__)
        raise ResolutionError(
            "Declared link dependencies contain a cycle.",
            cause="cycle",
            context={"targets": ", ".join(remaining)},
        )
    by_name = {target.name: target for target in targets}
    return tuple(by_name[name] for name in ordered)


def _reachable(start: str, dependencies: Mapping[str, Sequence[str]]) -> list[str]:
    found: list[str] = []
    visited: set[str] = set()
    stack = list(dependencies.get(start, ()))
    while stack:
        name = stack.pop()
        if name in visited:
            continue
        visited.add(name)
        found.append(name)
        stack.extend(dependencies.get(name, ()))
    return found


def assemble_descriptor(
    targets: Sequence[LinkTarget],
    *,
    request: LinkRequest,
    manifest: InstallManifest | None,
    platform: PlatformPolicy,
) -> LinkDescriptor:
    ordered = tuple(
        _link_by_path(target, platform) for target in order_targets(targets, request.dependencies)
    )
    has_local = any(target.kind == "local" for target in ordered)
    include_dirs = manifest.include_dirs if manifest is not None and has_local else ()

    library_dirs: list[Path] = []
    for target in ordered:
        if target.kind == "local" and target.linkage == "shared":
            for path in target.paths:
                if path.parent not in library_dirs:
                    library_dirs.append(path.parent)

    runtime_paths: tuple[str, ...] = ()
    directive = platform.runtime_path_directive()
    if library_dirs and directive is not None:
        runtime_paths = (directive,)

    return LinkDescriptor(
        platform=platform.name,
        targets=ordered,
        include_dirs=tuple(include_dirs),
        library_dirs=tuple(library_dirs),
        runtime_paths=runtime_paths,
    )


def _link_by_path(target: LinkTarget, platform: PlatformPolicy) -> LinkTarget:
    # `-lname` only finds the unversioned link name; anything else links by path.
    if target.kind != "local" or target.linkage != "shared" or target.flags:
        return target
    if all(path.name == platform.shared_library_name(target.name) for path in target.paths):
        return target
    return replace(target, flags=tuple(str(path) for path in target.paths))


def stage_shared_libraries(descriptor: LinkDescriptor, destination: str | Path) -> tuple[Path, ...]:
    """Copy the descriptor's shared libraries (and versioned aliases) into ``destination``.

    Opt-in: the runtime-path directive only helps if the libraries sit next to
    the final binary.
    """
    target_dir = Path(destination)
    target_dir.mkdir(parents=True, exist_ok=True)
    copied: list[Path] = []
    for library in descriptor.shared_libraries():
        real = library.resolve()
        aliases = [
            path
            for path in sorted(library.parent.iterdir())
            if path.name.startswith(library.name) and path.resolve() == real
        ] or [library]
        for alias in aliases:
            copied.append(Path(shutil.copy2(alias, target_dir / alias.name)))
    return tuple(copied)
