"""Git acquisition into the keyed checkout cache.

A checkout is reused as-is when its stamp records the same url and revision
and ``HEAD`` still points at the stamped commit. A different revision is
fetched and checked out in place; only a missing checkout is cloned.
"""

from __future__ import annotations

import hashlib
import shutil
import tempfile
import threading
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from cmakebind.cache import CheckoutStore
from cmakebind.errors import AcquisitionError
from cmakebind.models import RepositorySpec
from cmakebind.policy import Policy, ensure_network_allowed
from cmakebind.process import ToolResult, run_tool

AcquireAction = Literal["cached", "cloned", "updated", "local", "prebuilt"]

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "echo"}

_AUTH_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "permission denied",
    "terminal prompts disabled",
)
_MISSING_REVISION_MARKERS = (
    "couldn't find remote ref",
    "did not match any",
    "unknown revision",
    "invalid reference",
    "not our ref",
)
_UNREACHABLE_MARKERS = (
    "could not resolve host",
    "unable to access",
    "does not appear to be a git repository",
    "does not exist",
    "could not read from remote repository",
    "connection refused",
    "connection timed out",
    "not found",
)
_HINTS = {
    "auth": "Check credentials for the remote; git runs without interactive prompts.",
    "missing_revision": "Ensure the tag, branch or commit exists on the remote.",
    "unreachable": "Check the repository URL and network connectivity.",
    "git": "Inspect the captured git output.",
}


class MutableRefWarning(UserWarning):
    """Warning raised when a repository is pinned to a branch name."""


@dataclass(frozen=True, slots=True)
class AcquiredSource:
    name: str
    key: str
    path: Path
    commit: str | None
    revision: str | None
    action: AcquireAction
    build_dir: Path | None = None


@dataclass(slots=True)
class _GitRunner:
    repository: str
    policy: Policy
    timeout: float | None
    cancel: threading.Event | None

    def run(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        verbose: bool = False,
    ) -> ToolResult:
        try:
            return run_tool(
                ["git", *argv],
                error=AcquisitionError,
                operation=f"git {argv[0]}",
                cwd=cwd,
                env=_GIT_ENV,
                timeout=self.timeout,
                cancel=self.cancel,
                verbose=verbose and self.policy.verbose,
                check=check,
                tail_lines=self.policy.output_tail_lines,
            )
        except AcquisitionError as exc:
            if exc.cause != "exit":
                raise
            cause = classify_git_failure(exc.context.get("output", ""))
            raise AcquisitionError(
                "Git command failed.",
                cause=cause,
                hint=_HINTS[cause],
                context={**exc.context, "repository": self.repository},
            ) from exc

    def output(self, argv: list[str], *, cwd: Path | None = None) -> str:
        return self.run(argv, cwd=cwd).output.strip()


def acquire_source(
    spec: RepositorySpec,
    *,
    store: CheckoutStore,
    policy: Policy | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> AcquiredSource:
    """Ensure a checkout of ``spec`` at its pinned revision exists in ``store``."""
    policy = policy or Policy()
    runner = _GitRunner(repository=spec.name, policy=policy, timeout=timeout, cancel=cancel)
    checkout = store.checkout_path(spec)

    if checkout.exists():
        head = _head_commit(runner, checkout)
        stamp = store.read_checkout_stamp(spec)
        if (
            head is not None
            and stamp is not None
            and stamp.get("url") == spec.url
            and stamp.get("revision") == spec.revision
            and stamp.get("commit") == head
        ):
            return _result(spec, checkout, head, "cached")
        if head is not None:
            ensure_network_allowed(policy=policy, operation="update", repository=spec.name)
            store.clear_checkout_stamp(spec)
            commit = _update_checkout(runner, spec, checkout)
            store.write_checkout_stamp(spec, commit=commit)
            return _result(spec, checkout, commit, "updated")
        # Leftover directory that is not a usable git checkout.
        shutil.rmtree(checkout)

    ensure_network_allowed(policy=policy, operation="clone", repository=spec.name)
    store.clear_checkout_stamp(spec)
    commit = _clone_checkout(runner, spec, store, checkout)
    store.write_checkout_stamp(spec, commit=commit)
    return _result(spec, checkout, commit, "cloned")


def local_source(name: str, path: str | Path) -> AcquiredSource:
    """Adopt an existing CMake source tree without touching git."""
    source = Path(path).resolve()
    if not (source / "CMakeLists.txt").is_file():
        raise AcquisitionError(
            "Local source tree has no CMakeLists.txt.",
            cause="missing_source",
            hint="Point local_source() at the root of a CMake project.",
            context={"repository": name, "path": str(source)},
        )
    digest = hashlib.sha256(str(source).encode("utf-8")).hexdigest()
    return AcquiredSource(
        name=name,
        key=f"{name}-{digest[:12]}",
        path=source,
        commit=None,
        revision=None,
        action="local",
    )


def existing_build(name: str, build_dir: str | Path) -> AcquiredSource:
    """Adopt a build directory that CMake has already configured and built.

    Pipeline runs for such a source only install and scan; the source tree is
    taken from ``CMAKE_HOME_DIRECTORY`` in the build's ``CMakeCache.txt``.
    """
    build = Path(build_dir).resolve()
    cache_file = build / "CMakeCache.txt"
    if not cache_file.is_file():
        raise AcquisitionError(
            "Build directory has no CMakeCache.txt.",
            cause="missing_build",
            hint="Point existing_build() at a directory CMake has configured.",
            context={"repository": name, "path": str(build)},
        )
    digest = hashlib.sha256(str(build).encode("utf-8")).hexdigest()
    return AcquiredSource(
        name=name,
        key=f"{name}-{digest[:12]}",
        path=_home_directory(cache_file) or build,
        commit=None,
        revision=None,
        action="prebuilt",
        build_dir=build,
    )


def _home_directory(cache_file: Path) -> Path | None:
    """Read the source directory recorded in a ``CMakeCache.txt``."""
    try:
        lines = cache_file.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return None
    for line in lines:
        key, sep, value = line.partition("=")
        if sep and key.split(":", 1)[0] == "CMAKE_HOME_DIRECTORY" and value:
            return Path(value)
    return None


def classify_git_failure(output: str) -> str:
    lowered = output.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return "auth"
    if any(marker in lowered for marker in _MISSING_REVISION_MARKERS):
        return "missing_revision"
    if any(marker in lowered for marker in _UNREACHABLE_MARKERS):
        return "unreachable"
    return "git"


def _result(
    spec: RepositorySpec,
    checkout: Path,
    commit: str,
    action: AcquireAction,
) -> AcquiredSource:
    return AcquiredSource(
        name=spec.name,
        key=spec.identity_key(),
        path=checkout,
        commit=commit,
        revision=spec.revision,
        action=action,
    )


def _clone_checkout(
    runner: _GitRunner,
    spec: RepositorySpec,
    store: CheckoutStore,
    checkout: Path,
) -> str:
    store.checkouts_root.mkdir(parents=True, exist_ok=True)
    temp_root = Path(tempfile.mkdtemp(prefix=f".{spec.name}-", dir=str(store.checkouts_root)))
    try:
        runner.run(["clone", "--quiet", "--no-checkout", spec.url, str(temp_root)], verbose=True)
        commit = _resolve_revision(runner, temp_root, spec.revision)
        _checkout_commit(runner, temp_root, commit)
        shutil.move(str(temp_root), checkout)
    finally:
        if temp_root.exists():
            shutil.rmtree(temp_root, ignore_errors=True)
    return commit


def _update_checkout(runner: _GitRunner, spec: RepositorySpec, checkout: Path) -> str:
    runner.run(["remote", "set-url", "origin", spec.url], cwd=checkout)
    runner.run(["fetch", "--quiet", "--tags", "--force", "origin"], cwd=checkout, verbose=True)
    commit = _resolve_revision(runner, checkout, spec.revision)
    _checkout_commit(runner, checkout, commit)
    return commit


def _resolve_revision(runner: _GitRunner, checkout: Path, revision: str) -> str:
    candidates = (
        (f"refs/tags/{revision}", False),
        (f"refs/remotes/origin/{revision}", True),
        (revision, False),
    )
    for candidate, mutable in candidates:
        result = runner.run(
            ["rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"],
            cwd=checkout,
            check=False,
        )
        if result.returncode == 0 and result.output.strip():
            if mutable:
                warnings.warn(
                    f"Revision `{revision}` of `{runner.repository}` is a branch; "
                    "the checkout is pinned to its current head.",
                    MutableRefWarning,
                    stacklevel=4,
                )
            return result.output.strip().splitlines()[-1]

    # Commits that are not advertised by any ref still resolve through FETCH_HEAD.
    fetched = runner.run(["fetch", "--quiet", "origin", revision], cwd=checkout, check=False)
    if fetched.returncode == 0:
        return runner.output(["rev-parse", "--verify", "FETCH_HEAD^{commit}"], cwd=checkout)
    raise AcquisitionError(
        "Unable to resolve git revision.",
        cause="missing_revision",
        hint=_HINTS["missing_revision"],
        context={
            "repository": runner.repository,
            "revision": revision,
            "output": fetched.output.strip(),
        },
    )


def _checkout_commit(runner: _GitRunner, checkout: Path, commit: str) -> None:
    runner.run(["checkout", "--quiet", "--force", "--detach", commit], cwd=checkout)
    if (checkout / ".gitmodules").exists():
        runner.run(
            ["submodule", "update", "--init", "--recursive", "--quiet"],
            cwd=checkout,
            verbose=True,
        )


def _head_commit(runner: _GitRunner, checkout: Path) -> str | None:
    if not (checkout / ".git").exists():
        return None
    result = runner.run(["rev-parse", "--verify", "--quiet", "HEAD"], cwd=checkout, check=False)
    if result.returncode != 0:
        return None
    return result.output.strip() or None
