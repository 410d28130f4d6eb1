import json
import os
import stat
import threading
from pathlib import Path

import cbor2
import pytest

from cmakebind.errors import ResolutionError
from cmakebind.linker import (
    SystemLibraryLocator,
    assemble_descriptor,
    order_targets,
    resolve_targets,
    stage_shared_libraries,
)
from cmakebind.models import (
    Artifact,
    ArtifactKind,
    InstallManifest,
    LinkRequest,
    LinkTarget,
    local,
    system,
)
from cmakebind.platforms import LINUX, WINDOWS

PREFIX = Path("/cache/builds/foo/install")


def _manifest(*artifacts: Artifact) -> InstallManifest:
    return InstallManifest(
        prefix=PREFIX,
        artifacts=(
            *artifacts,
            Artifact(ArtifactKind.HEADER_DIRECTORY, "include", PREFIX / "include"),
        ),
    )


def _static(name: str) -> Artifact:
    return Artifact(ArtifactKind.STATIC_LIBRARY, name, PREFIX / "lib" / f"lib{name}.a")


def _shared(name: str) -> Artifact:
    return Artifact(ArtifactKind.SHARED_LIBRARY, name, PREFIX / "lib" / f"lib{name}.so")


def _locator(tmp_path: Path, *, known: frozenset[str] = frozenset()) -> SystemLibraryLocator:
    return SystemLibraryLocator(
        platform=LINUX,
        search_dirs=(tmp_path / "syslib",),
        use_pkg_config=False,
        known=known,
    )


def _targets(*names: str) -> list[LinkTarget]:
    return [LinkTarget(name=name, kind="local", linkage="static") for name in names]


def test_static_variant_is_preferred(tmp_path: Path) -> None:
    manifest = _manifest(_static("foo"), _shared("foo"))

    (target,) = resolve_targets(LinkRequest.of("foo"), manifest, locator=_locator(tmp_path))

    assert target.linkage == "static"
    assert target.paths == (PREFIX / "lib" / "libfoo.a",)


def test_shared_variant_is_used_when_only_one(tmp_path: Path) -> None:
    manifest = _manifest(_shared("foo"))

    (target,) = resolve_targets(LinkRequest.of("foo"), manifest, locator=_locator(tmp_path))

    assert target.linkage == "shared"


def test_dynamic_request_selects_shared_variant(tmp_path: Path) -> None:
    manifest = _manifest(_static("foo"), _shared("foo"))

    (target,) = resolve_targets(
        LinkRequest.of(local("foo", dynamic=True)),
        manifest,
        locator=_locator(tmp_path),
    )

    assert target.linkage == "shared"


def test_dynamic_request_without_shared_variant_fails(tmp_path: Path) -> None:
    with pytest.raises(ResolutionError) as excinfo:
        resolve_targets(
            LinkRequest.of(local("foo", dynamic=True)),
            _manifest(_static("foo")),
            locator=_locator(tmp_path),
        )

    assert "foo" in str(excinfo.value)


def test_duplicate_variants_are_ambiguous(tmp_path: Path) -> None:
    duplicate = Artifact(ArtifactKind.STATIC_LIBRARY, "foo", PREFIX / "lib64" / "libfoo.a")

    with pytest.raises(ResolutionError) as excinfo:
        resolve_targets(
            LinkRequest.of("foo"),
            _manifest(_static("foo"), duplicate),
            locator=_locator(tmp_path),
        )

    assert excinfo.value.cause == "ambiguous"


def test_every_missing_target_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ResolutionError) as excinfo:
        resolve_targets(
            LinkRequest.of("foo", "nope", system("definitely_absent_lib")),
            _manifest(_static("foo")),
            locator=_locator(tmp_path),
        )

    error = excinfo.value
    assert error.cause == "missing"
    assert error.stage == "resolve"
    assert error.context["missing"] == "nope, definitely_absent_lib"
    assert "definitely_absent_lib" in str(error)
    assert error.context["available"] == "foo"


def test_system_target_found_in_search_dirs(tmp_path: Path) -> None:
    syslib = tmp_path / "syslib"
    syslib.mkdir()
    (syslib / "libz.so").write_bytes(b"")

    (target,) = resolve_targets(LinkRequest.of(system("z")), None, locator=_locator(tmp_path))

    assert target.kind == "system"
    assert target.paths == (syslib / "libz.so",)


def test_system_target_allow_list(tmp_path: Path) -> None:
    (target,) = resolve_targets(
        LinkRequest.of(system("m")),
        None,
        locator=_locator(tmp_path, known=frozenset({"m"})),
    )

    assert target.linkage == "system"
    assert target.paths == ()


def test_locator_reads_library_path_from_environment(tmp_path: Path) -> None:
    locator = SystemLibraryLocator.for_platform(
        LINUX,
        use_pkg_config=False,
        environ={"LIBRARY_PATH": f"{tmp_path / 'a'}{os.pathsep}{tmp_path / 'b'}"},
    )

    assert locator.search_dirs[:2] == (tmp_path / "a", tmp_path / "b")


def test_order_places_dependents_before_dependencies() -> None:
    dependencies = {"app": ["core"], "core": ["util"]}

    ordered = order_targets(_targets("util", "app", "core"), dependencies)

    assert [target.name for target in ordered] == ["app", "core", "util"]


def test_order_follows_unrequested_intermediates() -> None:
    ordered = order_targets(_targets("z", "app"), {"app": ["middle"], "middle": ["z"]})

    assert [target.name for target in ordered] == ["app", "z"]


def test_order_keeps_request_order_for_independent_targets() -> None:
    ordered = order_targets(_targets("c", "a", "b"), {})

    assert [target.name for target in ordered] == ["c", "a", "b"]


@pytest.mark.parametrize(
    "dependencies",
    [
        {"a": ["b"], "b": ["a"]},
        {"a": ["a"]},
        {"a": ["x"], "x": ["a"]},
    ],
)
def test_cycles_are_rejected(dependencies: dict[str, list[str]]) -> None:
    with pytest.raises(ResolutionError) as excinfo:
        order_targets(_targets("a", "b"), dependencies)

    assert excinfo.value.cause == "cycle"


def test_descriptor_for_static_targets_has_no_runtime_paths(tmp_path: Path) -> None:
    manifest = _manifest(_static("foo"))
    request = LinkRequest.of("foo", system("m"))
    targets = resolve_targets(request, manifest, locator=_locator(tmp_path, known=frozenset({"m"})))

    descriptor = assemble_descriptor(targets, request=request, manifest=manifest, platform=LINUX)

    assert descriptor.include_dirs == (PREFIX / "include",)
    assert descriptor.library_dirs == ()
    assert descriptor.runtime_paths == ()
    assert descriptor.compiler_args() == [f"-I{PREFIX / 'include'}"]
    assert descriptor.linker_args() == [str(PREFIX / "lib" / "libfoo.a"), "-lm"]


def test_descriptor_for_shared_targets_adds_origin_runtime_path(tmp_path: Path) -> None:
    manifest = _manifest(_shared("foo"))
    request = LinkRequest.of(local("foo", dynamic=True))
    targets = resolve_targets(request, manifest, locator=_locator(tmp_path))

    descriptor = assemble_descriptor(targets, request=request, manifest=manifest, platform=LINUX)

    assert descriptor.library_dirs == (PREFIX / "lib",)
    assert descriptor.runtime_paths == ("-Wl,-rpath,$ORIGIN",)
    assert descriptor.linker_args() == [f"-L{PREFIX / 'lib'}", "-lfoo", "-Wl,-rpath,$ORIGIN"]


def test_windows_descriptor_has_no_runtime_path_directive() -> None:
    target = LinkTarget(name="foo", kind="local", linkage="shared", paths=(PREFIX / "bin" / "foo.dll",))

    descriptor = assemble_descriptor(
        [target],
        request=LinkRequest.of("foo"),
        manifest=_manifest(),
        platform=WINDOWS,
    )

    assert descriptor.runtime_paths == ()


def test_system_only_descriptor_omits_local_include_dirs(tmp_path: Path) -> None:
    request = LinkRequest.of(system("m"))
    targets = resolve_targets(request, None, locator=_locator(tmp_path, known=frozenset({"m"})))

    descriptor = assemble_descriptor(targets, request=request, manifest=_manifest(), platform=LINUX)

    assert descriptor.include_dirs == ()


def test_descriptor_serializes_to_json_and_cbor(tmp_path: Path) -> None:
    manifest = _manifest(_static("foo"))
    request = LinkRequest.of("foo")
    targets = resolve_targets(request, manifest, locator=_locator(tmp_path))
    descriptor = assemble_descriptor(targets, request=request, manifest=manifest, platform=LINUX)

    json_path = tmp_path / "link.json"
    cbor_path = tmp_path / "link.cbor"
    descriptor.to_json(json_path)
    descriptor.to_cbor(cbor_path)

    from_json = json.loads(json_path.read_text(encoding="utf-8"))
    assert from_json == cbor2.loads(cbor_path.read_bytes())
    assert from_json["targets"][0]["name"] == "foo"
    assert from_json["platform"] == "linux"


@pytest.mark.skipif(os.name != "posix", reason="uses symlinks")
def test_stage_shared_libraries_copies_versioned_aliases(tmp_path: Path) -> None:
    lib = tmp_path / "prefix" / "lib"
    lib.mkdir(parents=True)
    (lib / "libfoo.so.1.0").write_bytes(b"shared")
    (lib / "libfoo.so.1").symlink_to("libfoo.so.1.0")
    (lib / "libfoo.so").symlink_to("libfoo.so.1")
    (lib / "libfoobar.so").write_bytes(b"other")
    target = LinkTarget(name="foo", kind="local", linkage="shared", paths=(lib / "libfoo.so",))
    descriptor = assemble_descriptor(
        [target],
        request=LinkRequest.of("foo"),
        manifest=None,
        platform=LINUX,
    )

    copied = stage_shared_libraries(descriptor, tmp_path / "out")

    assert sorted(path.name for path in copied) == ["libfoo.so", "libfoo.so.1", "libfoo.so.1.0"]
    assert (tmp_path / "out" / "libfoo.so").read_bytes() == b"shared"


def test_versioned_only_shared_library_links_by_path(tmp_path: Path) -> None:
    versioned = Artifact(ArtifactKind.SHARED_LIBRARY, "foo", PREFIX / "lib" / "libfoo.so.1")
    manifest = _manifest(versioned)
    request = LinkRequest.of("foo")
    targets = resolve_targets(request, manifest, locator=_locator(tmp_path))

    descriptor = assemble_descriptor(targets, request=request, manifest=manifest, platform=LINUX)

    assert descriptor.linker_args() == [
        f"-L{PREFIX / 'lib'}",
        str(PREFIX / "lib" / "libfoo.so.1"),
        "-Wl,-rpath,$ORIGIN",
    ]
    assert "-lfoo" not in descriptor.linker_args()
    assert descriptor.shared_libraries() == (PREFIX / "lib" / "libfoo.so.1",)


@pytest.mark.skipif(os.name != "posix", reason="uses a POSIX shell")
def test_pkg_config_honours_timeout_and_cancel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    pkg_config = bin_dir / "pkg-config"
    pkg_config.write_text("#!/bin/sh\nexec sleep 30\n", encoding="utf-8")
    pkg_config.chmod(pkg_config.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    locator = SystemLibraryLocator(platform=LINUX, search_dirs=(), use_pkg_config=True)
    request = LinkRequest.of(system("z"))

    with pytest.raises(ResolutionError) as excinfo:
        resolve_targets(request, None, locator=locator, timeout=0.3)
    assert excinfo.value.cause == "timeout"

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ResolutionError) as excinfo:
        resolve_targets(request, None, locator=locator, cancel=cancel)
    assert excinfo.value.cause == "cancelled"
