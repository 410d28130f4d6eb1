"""Typed pipeline error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    ACQUISITION = "E_ACQUISITION"
    CONFIGURATION = "E_CONFIGURATION"
    BUILD = "E_BUILD"
    INSTALL = "E_INSTALL"
    RESOLUTION = "E_RESOLUTION"


class Stage(StrEnum):
    """Pipeline stage an error is attributed to."""

    ACQUIRE = "acquire"
    CONFIGURE = "configure"
    BUILD = "build"
    INSTALL = "install"
    RESOLVE = "resolve"


class CmakeBindError(Exception):
    """Base error class that carries code, stage, cause, optional hint, and context."""

    code: str
    stage: str
    cause: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        stage: Stage,
        cause: str = "error",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.stage = stage.value
        self.cause = cause
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "stage": self.stage,
            "cause": self.cause,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class AcquisitionError(CmakeBindError):
    def __init__(
        self,
        message: str,
        *,
        cause: str = "git",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.ACQUISITION,
            stage=Stage.ACQUIRE,
            cause=cause,
            hint=hint,
            context=context,
        )


class ConfigurationError(CmakeBindError):
    def __init__(
        self,
        message: str,
        *,
        cause: str = "invalid",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.CONFIGURATION,
            stage=Stage.CONFIGURE,
            cause=cause,
            hint=hint,
            context=context,
        )


class BuildError(CmakeBindError):
    def __init__(
        self,
        message: str,
        *,
        cause: str = "exit",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.BUILD,
            stage=Stage.BUILD,
            cause=cause,
            hint=hint,
            context=context,
        )


class InstallError(CmakeBindError):
    def __init__(
        self,
        message: str,
        *,
        cause: str = "exit",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.INSTALL,
            stage=Stage.INSTALL,
            cause=cause,
            hint=hint,
            context=context,
        )


class ResolutionError(CmakeBindError):
    def __init__(
        self,
        message: str,
        *,
        cause: str = "missing",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.RESOLUTION,
            stage=Stage.RESOLVE,
            cause=cause,
            hint=hint,
            context=context,
        )


__all__ = [
    "AcquisitionError",
    "BuildError",
    "CmakeBindError",
    "ConfigurationError",
    "ErrorCode",
    "InstallError",
    "ResolutionError",
    "Stage",
]
