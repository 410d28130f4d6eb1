from pathlib import Path

import pytest

from cmakebind.errors import AcquisitionError, ConfigurationError
from cmakebind.platforms import LINUX, MACOS, WINDOWS, PlatformPolicy, detect_platform
from cmakebind.policy import Policy, default_cache_root, ensure_network_allowed, policy_from_env


def test_policy_from_env_reads_flags() -> None:
    policy = policy_from_env(
        {"CMAKEBIND_OFFLINE": "1", "CMAKEBIND_VERBOSE": "yes", "CMAKE": "/opt/cmake/bin/cmake"}
    )

    assert policy == Policy(network_mode="offline", verbose=True, cmake="/opt/cmake/bin/cmake")
    assert policy_from_env({}) == Policy()


def test_default_cache_root_honours_override(tmp_path: Path) -> None:
    assert default_cache_root({"CMAKEBIND_CACHE_DIR": str(tmp_path)}) == tmp_path
    assert default_cache_root({}).parts[-2:] == (".cache", "cmakebind")


def test_offline_policy_blocks_network() -> None:
    with pytest.raises(AcquisitionError) as excinfo:
        ensure_network_allowed(
            policy=Policy(network_mode="offline"),
            operation="clone",
            repository="foo",
        )

    assert excinfo.value.cause == "offline"
    ensure_network_allowed(policy=Policy(), operation="clone", repository="foo")


@pytest.mark.parametrize(
    ("target", "expected"),
    [
        ("x86_64-unknown-linux-gnu", LINUX),
        ("aarch64-apple-darwin", MACOS),
        ("x86_64-pc-windows-msvc", WINDOWS),
    ],
)
def test_detect_platform_from_target_triple(target: str, expected: PlatformPolicy) -> None:
    assert detect_platform(target) is expected
    assert detect_platform(environ={"TARGET": target}) is expected


def test_detect_platform_rejects_unknown_triple() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        detect_platform("wasm32-unknown-emscripten")

    assert excinfo.value.cause == "unsupported_platform"


@pytest.mark.parametrize(
    ("platform", "filename", "kind", "name", "versioned"),
    [
        (LINUX, "libfoo.a", "static_library", "foo", False),
        (LINUX, "libfoo.so", "shared_library", "foo", False),
        (LINUX, "libfoo.so.1.2.3", "shared_library", "foo", True),
        (MACOS, "libfoo.dylib", "shared_library", "foo", False),
        (MACOS, "libfoo.1.dylib", "shared_library", "foo", True),
        (WINDOWS, "foo.lib", "static_library", "foo", False),
        (WINDOWS, "foo.dll", "shared_library", "foo", False),
    ],
)
def test_classify_library(
    platform: PlatformPolicy,
    filename: str,
    kind: str,
    name: str,
    versioned: bool,
) -> None:
    library = platform.classify_library(filename)

    assert library is not None
    assert (library.kind, library.name, library.versioned) == (kind, name, versioned)


def test_non_libraries_are_not_classified() -> None:
    assert LINUX.classify_library("libfoo.la") is None
    assert LINUX.classify_library("foo.h") is None
    assert WINDOWS.classify_library("foo.exe") is None
