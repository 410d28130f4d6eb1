"""Scoped child-process execution with output capture and process-group cleanup.

Every external tool (``git``, ``cmake``) runs through :func:`run_tool`. The
child starts in its own session so that the whole process tree can be
terminated on timeout, cancellation, or any exception raised while it runs.
"""

from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from cmakebind.errors import CmakeBindError
from cmakebind.policy import DEFAULT_OUTPUT_TAIL_LINES

TERMINATE_GRACE_SECONDS = 5.0
WATCHDOG_POLL_SECONDS = 0.05

_POSIX = os.name == "posix"


@dataclass(frozen=True, slots=True)
class ToolResult:
    argv: tuple[str, ...]
    returncode: int
    output: str


@contextlib.contextmanager
def spawn(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Iterator[subprocess.Popen[str]]:
    """Start a child with merged stdout/stderr and guarantee it is reaped."""
    process = subprocess.Popen(
        list(argv),
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",
        start_new_session=_POSIX,
    )
    try:
        yield process
    finally:
        if process.poll() is None:
            terminate_tree(process)
        # Descendants may outlive the group leader.
        _kill_group(process)
        if process.stdout is not None:
            process.stdout.close()


def terminate_tree(
    process: subprocess.Popen[str],
    *,
    grace: float = TERMINATE_GRACE_SECONDS,
) -> None:
    """Terminate the child's process group, escalating to SIGKILL after ``grace``.

    On POSIX the group is signalled even when the leader has already exited,
    so background descendants holding the output pipe are stopped too.
    """
    if _POSIX:
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
    elif process.poll() is None:
        process.terminate()
    else:
        return
    try:
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        if _POSIX:
            _kill_group(process)
        else:
            process.kill()
        process.wait()
    _kill_group(process)


def _kill_group(process: subprocess.Popen[str]) -> None:
    if _POSIX:
        with contextlib.suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)


class _Watchdog:
    def __init__(
        self,
        process: subprocess.Popen[str],
        *,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> None:
        self._process = process
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._cancel = cancel
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._watch, name="cmakebind-watchdog", daemon=True)
        self.reason: str | None = None

    def start(self) -> None:
        if self._deadline is None and self._cancel is None:
            return
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread.is_alive():
            self._thread.join()

    def _watch(self) -> None:
        # Runs until stop(): the leader may exit while descendants keep the pipe open.
        while not self._stopped.wait(WATCHDOG_POLL_SECONDS):
            if self._cancel is not None and self._cancel.is_set():
                self.reason = "cancelled"
            elif self._deadline is not None and time.monotonic() >= self._deadline:
                self.reason = "timeout"
            else:
                continue
            terminate_tree(self._process)
            return


def run_tool(
    argv: Sequence[str | Path],
    *,
    error: type[CmakeBindError],
    operation: str,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
    verbose: bool = False,
    check: bool = True,
    tail_lines: int = DEFAULT_OUTPUT_TAIL_LINES,
    stream: TextIO | None = None,
) -> ToolResult:
    """Run ``argv`` to completion and return its exit code and output tail.

    Output is captured and only echoed to ``stream`` (stderr by default) when
    ``verbose`` is set. Failures raise ``error`` with a ``cause`` of
    ``missing_tool``, ``timeout``, ``cancelled`` or ``exit``.
    """
    command = tuple(str(arg) for arg in argv)
    if cancel is not None and cancel.is_set():
        raise error(
            f"{operation} was cancelled before it started.",
            cause="cancelled",
            context={"operation": operation, "argv": " ".join(command)},
        )
    merged_env = None if env is None else {**os.environ, **env}
    tail: deque[str] = deque(maxlen=tail_lines)
    sink = stream or sys.stderr

    try:
        with spawn(command, cwd=cwd, env=merged_env) as process:
            watchdog = _Watchdog(process, timeout=timeout, cancel=cancel)
            watchdog.start()
            try:
                for line in process.stdout or ():
                    tail.append(line)
                    if verbose:
                        sink.write(line)
                        sink.flush()
                returncode = process.wait()
            finally:
                watchdog.stop()
    except FileNotFoundError as exc:
        raise error(
            f"`{command[0]}` was not found.",
            cause="missing_tool",
            hint=f"Install `{command[0]}` and make sure it is on PATH.",
            context={"operation": operation, "argv": " ".join(command)},
        ) from exc

    output = "".join(tail)
    if watchdog.reason is not None:
        verb = "timed out" if watchdog.reason == "timeout" else "was cancelled"
        raise error(
            f"{operation} {verb}.",
            cause=watchdog.reason,
            context={
                "operation": operation,
                "argv": " ".join(command),
                "timeout": "" if timeout is None else str(timeout),
                "output": output,
            },
        )
    if check and returncode != 0:
        raise error(
            f"{operation} failed.",
            cause="exit",
            hint="Inspect the captured output tail for details.",
            context={
                "operation": operation,
                "argv": " ".join(command),
                "returncode": str(returncode),
                "output": output,
            },
        )
    return ToolResult(argv=command, returncode=returncode, output=output)
