"""Typed build error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across engine surfaces."""

    SCRIPT = "E_SCRIPT"
    EXECUTION = "E_EXECUTION"
    ADAPTER = "E_ADAPTER"
    CACHE_CONSISTENCY = "E_CACHE_CONSISTENCY"
    CANCELLED = "E_CANCELLED"


class BoxError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
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
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ScriptError(BoxError):
    """Malformed or out-of-order operations."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SCRIPT, hint=hint, context=context)


class ExecutionFailure(BoxError):
    """A command run inside a build container exited non-zero."""

    command: str
    exit_code: int
    output: str

    def __init__(
        self,
        message: str,
        *,
        command: str,
        exit_code: int,
        output: str = "",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {"command": command, "exit_code": str(exit_code)}
        merged.update(context or {})
        if output:
            merged["output"] = output[-2000:]
        super().__init__(message, code=ErrorCode.EXECUTION, hint=hint, context=merged)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class AdapterFailure(BoxError):
    """The container runtime failed for infrastructure reasons."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ADAPTER, hint=hint, context=context)


class CacheConsistencyError(BoxError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CACHE_CONSISTENCY, hint=hint, context=context)


class BuildCancelled(BoxError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CANCELLED, hint=hint, context=context)


__all__ = [
    "AdapterFailure",
    "BoxError",
    "BuildCancelled",
    "CacheConsistencyError",
    "ErrorCode",
    "ExecutionFailure",
    "ScriptError",
]
