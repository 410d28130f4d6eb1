"""Core typed dataclasses for repositories, install manifests, and link descriptors."""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

import cbor2

from cmakebind.errors import ConfigurationError

TargetKind = Literal["local", "system"]
Linkage = Literal["static", "shared"]
ResolvedLinkage = Literal["static", "shared", "system"]

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ArtifactKind(StrEnum):
    STATIC_LIBRARY = "static_library"
    SHARED_LIBRARY = "shared_library"
    HEADER_DIRECTORY = "header_directory"
    EXECUTABLE = "executable"


@dataclass(frozen=True, slots=True)
class RepositorySpec:
    name: str
    url: str
    revision: str

    def __post_init__(self) -> None:
        if not _NAME_PATTERN.fullmatch(self.name or ""):
            raise ConfigurationError(
                "Repository name must be a filesystem-safe identifier.",
                hint="Use letters, digits, '.', '_' or '-', starting with a letter or digit.",
                context={"name": self.name},
            )
        if not self.url:
            raise ConfigurationError("Repository url is required.", context={"name": self.name})
        if not self.revision:
            raise ConfigurationError(
                "Repository revision is required.",
                hint="Pin a tag, branch or commit SHA.",
                context={"name": self.name, "url": self.url},
            )

    def identity_key(self) -> str:
        """Cache key shared by every revision of the same name and remote."""
        digest = hashlib.sha256(f"{self.name}\0{self.url}".encode()).hexdigest()
        return f"{self.name}-{digest[:12]}"


@dataclass(frozen=True, slots=True)
class Artifact:
    kind: ArtifactKind
    name: str
    path: Path


@dataclass(frozen=True, slots=True)
class InstallManifest:
    prefix: Path
    artifacts: tuple[Artifact, ...] = ()

    def is_empty(self) -> bool:
        return not self.artifacts

    def of_kind(self, kind: ArtifactKind) -> tuple[Artifact, ...]:
        return tuple(artifact for artifact in self.artifacts if artifact.kind == kind)

    def find(self, name: str, kind: ArtifactKind) -> tuple[Artifact, ...]:
        return tuple(
            artifact
            for artifact in self.artifacts
            if artifact.kind == kind and artifact.name == name
        )

    @property
    def include_dirs(self) -> tuple[Path, ...]:
        return tuple(artifact.path for artifact in self.of_kind(ArtifactKind.HEADER_DIRECTORY))

    def to_payload(self) -> dict[str, Any]:
        return {
            "prefix": str(self.prefix),
            "artifacts": [
                {"kind": artifact.kind.value, "name": artifact.name, "path": str(artifact.path)}
                for artifact in self.artifacts
            ],
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> InstallManifest:
        return cls(
            prefix=Path(payload["prefix"]),
            artifacts=tuple(
                Artifact(
                    kind=ArtifactKind(item["kind"]),
                    name=str(item["name"]),
                    path=Path(item["path"]),
                )
                for item in payload["artifacts"]
            ),
        )


@dataclass(frozen=True, slots=True)
class TargetRequest:
    name: str
    kind: TargetKind = "local"
    linkage: Linkage | None = None


def local(name: str, *, dynamic: bool = False) -> TargetRequest:
    return TargetRequest(name=name, kind="local", linkage="shared" if dynamic else None)


def system(name: str) -> TargetRequest:
    return TargetRequest(name=name, kind="system")


@dataclass(frozen=True, slots=True)
class LinkRequest:
    """Requested link targets plus the caller's declared dependency graph.

    ``dependencies`` maps a target name to the names it depends on. Edges
    are followed transitively, so unrequested intermediate names still
    constrain the order of requested ones.
    """

    targets: tuple[TargetRequest, ...]
    dependencies: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def of(
        cls,
        *targets: str | TargetRequest,
        dependencies: Mapping[str, Iterable[str]] | None = None,
    ) -> LinkRequest:
        requests = tuple(
            item if isinstance(item, TargetRequest) else local(item) for item in targets
        )
        graph = {name: tuple(deps) for name, deps in (dependencies or {}).items()}
        return cls(targets=requests, dependencies=graph)


@dataclass(frozen=True, slots=True)
class LinkTarget:
    name: str
    kind: TargetKind
    linkage: ResolvedLinkage
    paths: tuple[Path, ...] = ()
    flags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class LinkDescriptor:
    platform: str
    targets: tuple[LinkTarget, ...]
    include_dirs: tuple[Path, ...] = ()
    library_dirs: tuple[Path, ...] = ()
    runtime_paths: tuple[str, ...] = ()

    def target(self, name: str) -> LinkTarget | None:
        for target in self.targets:
            if target.name == name:
                return target
        return None

    def shared_libraries(self) -> tuple[Path, ...]:
        return tuple(
            path
            for target in self.targets
            if target.kind == "local" and target.linkage == "shared"
            for path in target.paths
        )

    def compiler_args(self) -> list[str]:
        return [f"-I{path}" for path in self.include_dirs]

    def linker_args(self) -> list[str]:
        """Render link directives in descriptor order.

        Static local targets are linked by absolute path, targets carrying
        explicit flags (pkg-config output, versioned-only shared libraries) by
        those flags, and the rest by name against ``library_dirs``.
        """
        args = [f"-L{path}" for path in self.library_dirs]
        for target in self.targets:
            if target.flags:
                args.extend(target.flags)
            elif target.linkage == "static":
                args.extend(str(path) for path in target.paths)
            else:
                args.append(f"-l{target.name}")
        args.extend(self.runtime_paths)
        return args

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        return {
            "platform": self.platform,
            "targets": [
                {
                    "name": target.name,
                    "kind": target.kind,
                    "linkage": target.linkage,
                    "paths": [str(path) for path in target.paths],
                    "flags": list(target.flags),
                }
                for target in self.targets
            ],
            "include_dirs": [str(path) for path in self.include_dirs],
            "library_dirs": [str(path) for path in self.library_dirs],
            "runtime_paths": list(self.runtime_paths),
        }
