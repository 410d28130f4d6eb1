"""Acquire → configure → build → install → resolve, one repository at a time.

Each run walks the states ``uncloned → cloned → configured → built →
installed → resolved``. Any :class:`CmakeBindError` moves the run to
``errored`` and halts it; nothing is retried. Runs for different
repositories may execute concurrently through :meth:`Pipeline.run_many`,
while runs that share a checkout are serialised by the checkout store lock.
Jobs that link against each other's installs go through
:meth:`Pipeline.run_sequence` instead.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from cmakebind.builders import adopt_build_directory, build_project, configure_project, install_project
from cmakebind.cache import CheckoutStore, InstallCacheInput, InstallCacheStore
from cmakebind.config import BuildConfig
from cmakebind.errors import CmakeBindError, ConfigurationError, ResolutionError
from cmakebind.fetch import AcquiredSource, acquire_source
from cmakebind.linker import SystemLibraryLocator, assemble_descriptor, resolve_targets
from cmakebind.models import InstallManifest, LinkDescriptor, LinkRequest, RepositorySpec, local
from cmakebind.observability import StructuredLogger
from cmakebind.platforms import PlatformPolicy, detect_platform
from cmakebind.policy import Policy, default_cache_root, policy_from_env

DEFAULT_MAX_WORKERS = 4


class PipelineState(StrEnum):
    UNCLONED = "uncloned"
    CLONED = "cloned"
    CONFIGURED = "configured"
    BUILT = "built"
    INSTALLED = "installed"
    RESOLVED = "resolved"
    ERRORED = "errored"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.UNCLONED: frozenset({PipelineState.CLONED}),
    PipelineState.CLONED: frozenset({PipelineState.CONFIGURED}),
    PipelineState.CONFIGURED: frozenset({PipelineState.BUILT}),
    PipelineState.BUILT: frozenset({PipelineState.INSTALLED}),
    PipelineState.INSTALLED: frozenset({PipelineState.RESOLVED}),
    PipelineState.RESOLVED: frozenset(),
    PipelineState.ERRORED: frozenset(),
}


@dataclass(slots=True)
class PipelineRun:
    repository: str
    state: PipelineState = PipelineState.UNCLONED
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.UNCLONED])
    source: AcquiredSource | None = None
    manifest: InstallManifest | None = None
    descriptor: LinkDescriptor | None = None
    error: CmakeBindError | None = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.RESOLVED

    def advance(self, state: PipelineState) -> None:
        allowed = _TRANSITIONS[self.state]
        if state != PipelineState.ERRORED and state not in allowed:
            raise RuntimeError(f"Illegal pipeline transition {self.state} -> {state}.")
        if self.state == PipelineState.ERRORED:
            raise RuntimeError("Errored pipeline runs cannot transition.")
        self.state = state
        self.history.append(state)

    def fail(self, error: CmakeBindError) -> None:
        self.error = error
        self.advance(PipelineState.ERRORED)

    def raise_for_error(self) -> LinkDescriptor:
        if self.error is not None:
            raise self.error
        if self.descriptor is None:
            raise RuntimeError(f"Pipeline run for `{self.repository}` has not resolved.")
        return self.descriptor


@dataclass(frozen=True, slots=True)
class PipelineJob:
    repository: RepositorySpec | AcquiredSource
    config: BuildConfig
    request: LinkRequest


class Pipeline:
    def __init__(
        self,
        cache_root: str | Path | None = None,
        *,
        policy: Policy | None = None,
        platform: PlatformPolicy | None = None,
        logger: StructuredLogger | None = None,
        locator: SystemLibraryLocator | None = None,
    ) -> None:
        self.policy = policy or policy_from_env()
        self.platform = platform or detect_platform()
        self.store = CheckoutStore(cache_root if cache_root is not None else default_cache_root())
        self.installs = InstallCacheStore()
        self.logger = logger or StructuredLogger()
        self.locator = locator or SystemLibraryLocator.for_platform(
            self.platform,
            known=self.policy.system_libraries,
        )

    def run(
        self,
        repository: RepositorySpec | AcquiredSource,
        config: BuildConfig,
        request: LinkRequest,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> LinkDescriptor:
        """Run the pipeline and return the descriptor, raising the stage error on failure."""
        return self.execute(
            repository,
            config,
            request,
            timeout=timeout,
            cancel=cancel,
        ).raise_for_error()

    def execute(
        self,
        repository: RepositorySpec | AcquiredSource,
        config: BuildConfig,
        request: LinkRequest,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> PipelineRun:
        """Run the pipeline and return the run record; errors are captured, not raised."""
        run = PipelineRun(repository=repository.name)
        key = repository.identity_key() if isinstance(repository, RepositorySpec) else repository.key
        with self.store.lock(key):
            try:
                self._execute(run, repository, config, request, timeout=timeout, cancel=cancel)
            except CmakeBindError as exc:
                self._log(run, f"{exc.stage} failed: {exc.cause}", level="error", extra=exc.to_dict())
                run.fail(exc)
        return run

    def run_many(
        self,
        jobs: Sequence[PipelineJob],
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> list[PipelineRun]:
        """Execute independent jobs on a bounded pool; results follow input order."""
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cmakebind") as pool:
            futures = [
                pool.submit(
                    self.execute,
                    job.repository,
                    job.config,
                    job.request,
                    timeout=timeout,
                    cancel=cancel,
                )
                for job in jobs
            ]
            return [future.result() for future in futures]

    def run_sequence(
        self,
        jobs: Sequence[PipelineJob],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> list[PipelineRun]:
        """Execute dependent jobs in order, exposing each install prefix to the jobs after it.

        Every successful run's prefix is added to the later jobs'
        ``CMAKE_PREFIX_PATH``. The first failed run ends the sequence, so the
        result can be shorter than ``jobs``.
        """
        runs: list[PipelineRun] = []
        prefixes: list[Path] = []
        for job in jobs:
            config = job.config
            for prefix in prefixes:
                config = config.with_prefix_path(prefix)
            run = self.execute(job.repository, config, job.request, timeout=timeout, cancel=cancel)
            runs.append(run)
            if not run.ok:
                break
            if run.manifest is not None:
                prefixes.append(run.manifest.prefix)
        return runs

    def _execute(
        self,
        run: PipelineRun,
        repository: RepositorySpec | AcquiredSource,
        config: BuildConfig,
        request: LinkRequest,
        *,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> None:
        config = config if config.finalized else config.finalize(self.platform)
        if config.install_prefix is not None:
            raise ConfigurationError(
                "Pipeline runs install into their private cache prefix.",
                cause="custom_prefix",
                hint="Drop with_install_prefix(), or call the builder functions directly.",
                context={"install_prefix": str(config.install_prefix)},
            )
        fingerprint = config.fingerprint()

        if isinstance(repository, RepositorySpec):
            source = acquire_source(
                repository,
                store=self.store,
                policy=self.policy,
                timeout=timeout,
                cancel=cancel,
            )
        else:
            source = repository
        run.source = source
        self._transition(run, PipelineState.CLONED, f"source {source.action}", commit=source.commit)

        layout = self.store.layout(source.key, fingerprint)
        inputs = None
        if source.commit is not None:
            inputs = InstallCacheInput(
                repository=source.key,
                commit=source.commit,
                config_fingerprint=fingerprint,
                platform=self.platform.name,
            )
        manifest = self.installs.load(layout, expected_inputs=inputs) if inputs else None

        if manifest is not None:
            run.cached = True
            for state in (PipelineState.CONFIGURED, PipelineState.BUILT, PipelineState.INSTALLED):
                self._transition(run, state, "reused cached install")
        else:
            self.installs.invalidate(layout)
            if source.build_dir is not None:
                project = adopt_build_directory(
                    source.build_dir,
                    config=config,
                    install_prefix=layout.install_prefix,
                    source_dir=source.path,
                    platform=self.platform,
                    policy=self.policy,
                )
                for state in (PipelineState.CONFIGURED, PipelineState.BUILT):
                    self._transition(run, state, "adopted build directory", build_dir=str(source.build_dir))
            else:
                project = configure_project(
                    source.path,
                    config=config,
                    build_dir=layout.build_dir,
                    install_prefix=layout.install_prefix,
                    platform=self.platform,
                    policy=self.policy,
                    timeout=timeout,
                    cancel=cancel,
                )
                self._transition(run, PipelineState.CONFIGURED, "configured", build_dir=str(layout.build_dir))
                build_project(project, policy=self.policy, timeout=timeout, cancel=cancel)
                self._transition(run, PipelineState.BUILT, "built")
            manifest = install_project(
                project,
                platform=self.platform,
                policy=self.policy,
                timeout=timeout,
                cancel=cancel,
            )
            if inputs is not None:
                self.installs.save(layout, inputs=inputs, manifest=manifest)
            self._transition(
                run,
                PipelineState.INSTALLED,
                "installed",
                artifacts=len(manifest.artifacts),
            )
        run.manifest = manifest

        effective = _effective_request(request, config)
        targets = resolve_targets(
            effective,
            manifest,
            locator=self.locator,
            timeout=timeout,
            cancel=cancel,
        )
        run.descriptor = assemble_descriptor(
            targets,
            request=effective,
            manifest=manifest,
            platform=self.platform,
        )
        self._transition(
            run,
            PipelineState.RESOLVED,
            "resolved",
            targets=[target.name for target in run.descriptor.targets],
        )

    def _transition(self, run: PipelineRun, state: PipelineState, message: str, **extra: Any) -> None:
        run.advance(state)
        self._log(run, message, extra=extra or None)

    def _log(
        self,
        run: PipelineRun,
        message: str,
        *,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.logger.log(
            operation="pipeline",
            repository=run.repository,
            stage=run.state.value,
            message=message,
            level=level,
            extra=extra,
        )


def _effective_request(request: LinkRequest, config: BuildConfig) -> LinkRequest:
    if request.targets:
        return request
    # A named build target doubles as the link target.
    if config.build_target and config.build_target.lower() != "all":
        return LinkRequest(targets=(local(config.build_target),), dependencies=request.dependencies)
    raise ResolutionError(
        "No link targets were requested.",
        cause="empty_request",
        hint="Request at least one local or system target.",
    )
