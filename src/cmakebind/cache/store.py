"""Keyed checkout store with per-key locks, and verified install stamps."""

from __future__ import annotations

import hashlib
import json
import shutil
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cmakebind.cache.keys import InstallCacheInput, _to_payload, build_key, cache_key
from cmakebind.models import InstallManifest, RepositorySpec


@dataclass(frozen=True, slots=True)
class BuildLayout:
    """Directories owned by one (repository, config) pair."""

    root: Path
    build_dir: Path
    install_prefix: Path
    stamp_path: Path


class CheckoutStore:
    """Maps repository identities to checkout and build directories.

    Paths are pure functions of the key. :meth:`lock` serialises every
    pipeline run that touches the same checkout.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @property
    def checkouts_root(self) -> Path:
        return self.root / "checkouts"

    def checkout_path(self, spec: RepositorySpec) -> Path:
        return self.checkouts_root / spec.identity_key()

    def checkout_stamp_path(self, spec: RepositorySpec) -> Path:
        return self.checkouts_root / f"{spec.identity_key()}.json"

    def layout(self, key: str, config_fingerprint: str) -> BuildLayout:
        root = self.root / "builds" / key / build_key(config_fingerprint)
        return BuildLayout(
            root=root,
            build_dir=root / "build",
            install_prefix=root / "install",
            stamp_path=root / "manifest.json",
        )

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def read_checkout_stamp(self, spec: RepositorySpec) -> dict[str, str] | None:
        path = self.checkout_stamp_path(spec)
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(parsed, dict):
            return None
        return {str(k): str(v) for k, v in parsed.items()}

    def write_checkout_stamp(self, spec: RepositorySpec, *, commit: str) -> None:
        path = self.checkout_stamp_path(spec)
        path.parent.mkdir(parents=True, exist_ok=True)
        stamp = {"name": spec.name, "url": spec.url, "revision": spec.revision, "commit": commit}
        path.write_text(json.dumps(stamp, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    def clear_checkout_stamp(self, spec: RepositorySpec) -> None:
        self.checkout_stamp_path(spec).unlink(missing_ok=True)


class InstallCacheStore:
    """Install stamps recording which commit and config produced a prefix.

    A stamp that does not match the expected inputs, fails its digest, or
    points at artifacts that no longer exist is stale: the stamp and the
    install prefix are removed and ``load`` reports a miss.
    """

    def load(self, layout: BuildLayout, *, expected_inputs: InstallCacheInput) -> InstallManifest | None:
        if not layout.stamp_path.exists():
            return None
        stamp = self._read_stamp(layout.stamp_path)
        if stamp is None:
            self.invalidate(layout)
            return None

        key = cache_key(expected_inputs)
        if stamp.get("key") != key or stamp.get("inputs") != _to_payload(expected_inputs):
            self.invalidate(layout)
            return None

        manifest_payload = stamp.get("manifest")
        if not isinstance(manifest_payload, dict):
            self.invalidate(layout)
            return None
        if stamp.get("manifest_sha256") != _digest(manifest_payload):
            self.invalidate(layout)
            return None

        try:
            manifest = InstallManifest.from_payload(manifest_payload)
        except (KeyError, TypeError, ValueError):
            self.invalidate(layout)
            return None
        if manifest.is_empty() or not all(artifact.path.exists() for artifact in manifest.artifacts):
            self.invalidate(layout)
            return None
        return manifest

    def save(self, layout: BuildLayout, *, inputs: InstallCacheInput, manifest: InstallManifest) -> str:
        key = cache_key(inputs)
        layout.root.mkdir(parents=True, exist_ok=True)
        payload = manifest.to_payload()
        stamp = {
            "key": key,
            "inputs": _to_payload(inputs),
            "manifest": payload,
            "manifest_sha256": _digest(payload),
        }
        layout.stamp_path.write_text(
            json.dumps(stamp, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return key

    def invalidate(self, layout: BuildLayout) -> None:
        layout.stamp_path.unlink(missing_ok=True)
        if layout.install_prefix.exists():
            shutil.rmtree(layout.install_prefix)

    def _read_stamp(self, path: Path) -> dict[str, Any] | None:
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed


def _digest(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
