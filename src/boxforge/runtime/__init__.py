"""Container runtime adapters."""

from __future__ import annotations

from boxforge.errors import AdapterFailure

from .base import CancelToken, ContainerSpec, ExecResult, ResolvedImage, RuntimeAdapter
from .cli import ContainerCliRuntime
from .inmemory import InMemoryRuntime


def get_runtime(name: str) -> RuntimeAdapter:
    if name == "docker":
        return ContainerCliRuntime(name="docker", binary="docker")
    if name == "podman":
        return ContainerCliRuntime(name="podman", binary="podman")
    if name == "memory":
        return InMemoryRuntime()
    raise AdapterFailure("Unsupported container runtime.", context={"runtime": name})


__all__ = [
    "CancelToken",
    "ContainerCliRuntime",
    "ContainerSpec",
    "ExecResult",
    "InMemoryRuntime",
    "ResolvedImage",
    "RuntimeAdapter",
    "get_runtime",
]
