"""Policy configuration and enforcement helpers."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from cmakebind.errors import AcquisitionError

NetworkMode = Literal["online", "offline"]

DEFAULT_OUTPUT_TAIL_LINES = 200

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class Policy:
    network_mode: NetworkMode = "online"
    verbose: bool = False
    cmake: str = "cmake"
    output_tail_lines: int = DEFAULT_OUTPUT_TAIL_LINES
    system_libraries: frozenset[str] = frozenset()


def policy_from_env(environ: Mapping[str, str] | None = None) -> Policy:
    """Build a policy from ``CMAKEBIND_OFFLINE``, ``CMAKEBIND_VERBOSE`` and ``CMAKE``."""
    env = os.environ if environ is None else environ
    offline = env.get("CMAKEBIND_OFFLINE", "").strip().lower() in _TRUTHY
    return Policy(
        network_mode="offline" if offline else "online",
        verbose=env.get("CMAKEBIND_VERBOSE", "").strip().lower() in _TRUTHY,
        cmake=env.get("CMAKE") or "cmake",
    )


def default_cache_root(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    configured = env.get("CMAKEBIND_CACHE_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".cache" / "cmakebind"


def ensure_network_allowed(*, policy: Policy, operation: str, repository: str) -> None:
    if policy.network_mode == "offline":
        raise AcquisitionError(
            "Network operations are disabled by policy.",
            cause="offline",
            hint="Switch policy.network_mode to 'online' or pre-populate the checkout cache.",
            context={"operation": operation, "repository": repository},
        )
