"""Cache key derivation."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

BUILD_KEY_LENGTH = 16


@dataclass(frozen=True, slots=True)
class InstallCacheInput:
    repository: str
    commit: str
    config_fingerprint: str
    platform: str


def cache_key(inputs: InstallCacheInput) -> str:
    canonical = json.dumps(_to_payload(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_key(config_fingerprint: str) -> str:
    return config_fingerprint[:BUILD_KEY_LENGTH]


def _to_payload(inputs: InstallCacheInput) -> dict[str, Any]:
    return {
        "repository": inputs.repository,
        "commit": inputs.commit,
        "config_fingerprint": inputs.config_fingerprint,
        "platform": inputs.platform,
    }
