"""Source acquisition for external CMake projects."""

from __future__ import annotations

from .git import (
    AcquiredSource,
    MutableRefWarning,
    acquire_source,
    classify_git_failure,
    existing_build,
    local_source,
)

__all__ = [
    "AcquiredSource",
    "MutableRefWarning",
    "acquire_source",
    "classify_git_failure",
    "existing_build",
    "local_source",
]
