"""Protocol for container runtime adapters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from boxforge.errors import BuildCancelled
from boxforge.operations import ArchiveKind
from boxforge.state import ImageConfig


@dataclass(frozen=True, slots=True)
class ContainerSpec:
    """Execution context for an ephemeral build container."""

    workdir: str = "/"
    user: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ExecResult:
    exit_code: int
    output: str = ""


@dataclass(frozen=True, slots=True)
class ResolvedImage:
    image: str
    config: ImageConfig


class CancelToken:
    """Cooperative cancellation flag shared by the engine and adapters."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, operation: str) -> None:
        if self._event.is_set():
            raise BuildCancelled(
                "Build was cancelled.",
                context={"operation": operation, "reason": self.reason},
            )


class RuntimeAdapter(Protocol):
    name: str

    def resolve(self, name: str) -> ResolvedImage:
        """Pull or look up a base image by name."""

    def inspect(self, image: str) -> ImageConfig:
        """Return the configuration recorded on an existing image."""

    def create(self, image: str, spec: ContainerSpec) -> str:
        """Create an idle container from *image*; return its id."""

    def exec(
        self,
        container: str,
        argv: tuple[str, ...],
        spec: ContainerSpec,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> ExecResult:
        """Run *argv* in the container; non-zero exits are returned, not raised."""

    def copy_in(self, container: str, source: Path, target: str) -> None:
        """Copy a host file or directory to *target* inside the container."""

    def diff(self, container: str) -> tuple[str, ...]:
        """Return paths changed in the container relative to its image."""

    def commit(self, container: str, config: ImageConfig, *, comment: str = "") -> str:
        """Commit the container filesystem with *config*; return the new image ref."""

    def remove(self, container: str) -> None:
        """Remove a container, killing it if still running."""

    def tag(self, image: str, name: str) -> None:
        """Attach a symbolic name to *image*."""

    def export(self, image: str, path: Path, *, kind: ArchiveKind, name: str) -> None:
        """Write *image* as a ``docker`` or ``oci`` archive to *path*."""

    def flatten(self, image: str, config: ImageConfig) -> str:
        """Collapse the lineage of *image* into one layer; return the new ref."""
