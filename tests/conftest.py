"""Shared test fixtures."""

from __future__ import annotations

import os
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path

import pytest

_FAKE_CMAKE = """#!/bin/sh
echo "$*" >> "$FAKE_CMAKE_LOG"
case "$1" in
  --build)
    if [ -n "$FAKE_CMAKE_FAIL_BUILD" ]; then
      echo "foo.c:1:1: error: boom"
      exit 2
    fi
    : > "$2/built"
    ;;
  --install)
    prefix="$4"
    mkdir -p "$prefix"
    case "${FAKE_CMAKE_INSTALL:-static}" in
      empty)
        ;;
      extra)
        mkdir -p "$prefix/lib" "$prefix/include"
        echo "archive" > "$prefix/lib/libfoo.a"
        echo "archive" > "$prefix/lib/libbar.a"
        echo "int foo(void);" > "$prefix/include/foo.h"
        ;;
      shared)
        mkdir -p "$prefix/lib" "$prefix/include"
        echo "shared" > "$prefix/lib/libfoo.so.1"
        ln -sf libfoo.so.1 "$prefix/lib/libfoo.so"
        echo "int foo(void);" > "$prefix/include/foo.h"
        ;;
      *)
        mkdir -p "$prefix/lib" "$prefix/include"
        echo "archive" > "$prefix/lib/libfoo.a"
        echo "int foo(void);" > "$prefix/include/foo.h"
        ;;
    esac
    ;;
  *)
    mkdir -p "$4"
    echo "CMAKE_HOME_DIRECTORY:INTERNAL=$2" > "$4/CMakeCache.txt"
    ;;
esac
"""


@dataclass(frozen=True)
class FakeCMake:
    bin_dir: Path
    log_path: Path

    def calls(self) -> list[str]:
        if not self.log_path.exists():
            return []
        return self.log_path.read_text(encoding="utf-8").splitlines()


@dataclass(frozen=True)
class GitProject:
    path: Path
    commits: dict[str, str]

    @property
    def url(self) -> str:
        return str(self.path)


@pytest.fixture
def fake_cmake(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeCMake:
    """Put shell stand-ins for ``cmake`` and ``ninja`` first on PATH."""
    if os.name != "posix":
        pytest.skip("fake cmake requires a POSIX shell")
    bin_dir = tmp_path / "fake-bin"
    bin_dir.mkdir()
    _write_executable(bin_dir / "cmake", _FAKE_CMAKE)
    _write_executable(bin_dir / "ninja", "#!/bin/sh\nexit 0\n")

    log_path = tmp_path / "cmake-calls.log"
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("FAKE_CMAKE_LOG", str(log_path))
    monkeypatch.delenv("FAKE_CMAKE_FAIL_BUILD", raising=False)
    monkeypatch.delenv("FAKE_CMAKE_INSTALL", raising=False)
    return FakeCMake(bin_dir=bin_dir, log_path=log_path)


@pytest.fixture
def cmake_repo(tmp_path: Path) -> GitProject:
    """A git repository holding a CMake project, tagged ``v1.0`` and ``v2.0``."""
    path = tmp_path / "upstream" / "foo"
    path.mkdir(parents=True)
    run_git(["init"], cwd=path)
    run_git(["checkout", "-b", "main"], cwd=path)
    run_git(["config", "user.email", "cmakebind@example.com"], cwd=path)
    run_git(["config", "user.name", "cmakebind Test"], cwd=path)
    run_git(["config", "commit.gpgsign", "false"], cwd=path)
    run_git(["config", "tag.gpgsign", "false"], cwd=path)

    (path / "CMakeLists.txt").write_text(
        "cmake_minimum_required(VERSION 3.16)\nproject(foo C)\n", encoding="utf-8"
    )
    (path / "foo.c").write_text("int foo(void) { return 1; }\n", encoding="utf-8")
    run_git(["add", "."], cwd=path)
    run_git(["commit", "-m", "initial"], cwd=path)
    run_git(["tag", "v1.0"], cwd=path)
    first = run_git(["rev-parse", "HEAD"], cwd=path)

    (path / "foo.c").write_text("int foo(void) { return 2; }\n", encoding="utf-8")
    run_git(["commit", "-am", "bump"], cwd=path)
    run_git(["tag", "v2.0"], cwd=path)
    second = run_git(["rev-parse", "HEAD"], cwd=path)
    return GitProject(path=path, commits={"v1.0": first, "v2.0": second})


def run_git(argv: list[str], *, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *argv],
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(argv)} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()


def _write_executable(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
