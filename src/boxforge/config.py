"""Engine configuration and validation helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from boxforge.errors import ScriptError


@dataclass(frozen=True, slots=True)
class EngineConfig:
    use_cache: bool = True
    context_dir: Path = field(default_factory=Path.cwd)
    exec_timeout: float | None = None
    hook_workers: int = 1
    shell: tuple[str, ...] = ("/bin/sh", "-c")


def ensure_engine_config(config: EngineConfig) -> None:
    if config.hook_workers < 1:
        raise ScriptError(
            "hook_workers must be at least 1.",
            context={"operation": "configure", "hook_workers": str(config.hook_workers)},
        )
    if config.exec_timeout is not None and config.exec_timeout <= 0:
        raise ScriptError(
            "exec_timeout must be positive when set.",
            context={"operation": "configure", "exec_timeout": str(config.exec_timeout)},
        )
    if not config.shell:
        raise ScriptError("shell must name at least one argument.", context={"operation": "configure"})


def ensure_absolute(path: str, *, operation: str) -> str:
    if not PurePosixPath(path).is_absolute():
        raise ScriptError(
            f"Path {path!r} is not absolute.",
            hint="Use an absolute path, or a relative path inside an absolute workdir.",
            context={"operation": operation, "path": path},
        )
    return str(PurePosixPath(path))


def ensure_non_empty(value: str, *, operation: str, argument: str) -> str:
    if not value:
        raise ScriptError(
            f"{operation} requires a non-empty {argument}.",
            context={"operation": operation},
        )
    return value
