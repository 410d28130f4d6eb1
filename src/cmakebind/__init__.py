"""Public package entrypoint for cmakebind."""

from .config import BuildConfig
from .errors import (
    AcquisitionError,
    BuildError,
    CmakeBindError,
    ConfigurationError,
    ErrorCode,
    InstallError,
    ResolutionError,
    Stage,
)
from .fetch import AcquiredSource, acquire_source, existing_build, local_source
from .linker import SystemLibraryLocator, stage_shared_libraries
from .models import (
    ArtifactKind,
    InstallManifest,
    LinkDescriptor,
    LinkRequest,
    LinkTarget,
    RepositorySpec,
    TargetRequest,
    local,
    system,
)
from .pipeline import Pipeline, PipelineJob, PipelineRun, PipelineState
from .platforms import PlatformPolicy, detect_platform
from .policy import Policy, policy_from_env

__all__ = [
    "AcquiredSource",
    "AcquisitionError",
    "ArtifactKind",
    "BuildConfig",
    "BuildError",
    "CmakeBindError",
    "ConfigurationError",
    "ErrorCode",
    "InstallError",
    "InstallManifest",
    "LinkDescriptor",
    "LinkRequest",
    "LinkTarget",
    "Pipeline",
    "PipelineJob",
    "PipelineRun",
    "PipelineState",
    "PlatformPolicy",
    "Policy",
    "RepositorySpec",
    "ResolutionError",
    "Stage",
    "SystemLibraryLocator",
    "TargetRequest",
    "acquire_source",
    "detect_platform",
    "existing_build",
    "local",
    "local_source",
    "policy_from_env",
    "stage_shared_libraries",
    "system",
]
