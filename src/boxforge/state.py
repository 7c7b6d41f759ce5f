"""Mutable build state and result records threaded through the engine."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from .operations import Operation

TagKind = Literal["image", "docker-archive", "oci-archive"]


@dataclass(frozen=True, slots=True)
class ImageConfig:
    """Image metadata persisted with every committed layer."""

    workdir: str = "/"
    user: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    entrypoint: tuple[str, ...] | None = None
    cmd: tuple[str, ...] | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ImageConfig:
        """Inverse of :meth:`to_payload`."""
        entrypoint = payload.get("entrypoint")
        cmd = payload.get("cmd")
        return cls(
            workdir=payload.get("workdir") or "/",
            user=payload.get("user"),
            env=dict(payload.get("env") or {}),
            entrypoint=None if entrypoint is None else tuple(entrypoint),
            cmd=None if cmd is None else tuple(cmd),
            labels=dict(payload.get("labels") or {}),
        )

    def with_env(self, values: dict[str, str]) -> ImageConfig:
        merged = dict(self.env)
        merged.update(values)
        return replace(self, env=merged)

    def metadata_payload(self) -> dict[str, object]:
        return {
            "entrypoint": None if self.entrypoint is None else list(self.entrypoint),
            "cmd": None if self.cmd is None else list(self.cmd),
            "labels": dict(self.labels),
        }

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "workdir": self.workdir,
            "user": self.user,
            "env": dict(self.env),
        }
        payload.update(self.metadata_payload())
        return payload


@dataclass(frozen=True, slots=True)
class Overlay:
    """Temporary context set by enclosing blocks; ``None`` falls through to the image."""

    workdir: str | None = None
    user: str | None = None
    env: dict[str, str] | None = None
    inside: str | None = None
    skip: bool = False


@dataclass(frozen=True, slots=True)
class Effective:
    workdir: str
    user: str | None
    env: dict[str, str]
    copy_root: str

    def to_payload(self) -> dict[str, object]:
        return {"workdir": self.workdir, "user": self.user, "env": dict(self.env)}


@dataclass(frozen=True, slots=True)
class TagRecord:
    name: str
    image: str
    kind: TagKind = "image"
    path: str | None = None


@dataclass(frozen=True, slots=True)
class LayerRecord:
    kind: str
    image: str
    cache_key: str | None = None
    cached: bool = False
    skipped: bool = False
    changes: tuple[str, ...] = ()


@dataclass(slots=True)
class BuildState:
    image: str | None = None
    config: ImageConfig = field(default_factory=ImageConfig)
    overlay: Overlay = field(default_factory=Overlay)
    committed_metadata: dict[str, object] | None = None
    tags: list[TagRecord] = field(default_factory=list)
    layers: list[LayerRecord] = field(default_factory=list)
    hooks: list[tuple[Operation, ...]] = field(default_factory=list)

    def effective(self) -> Effective:
        workdir = self.overlay.workdir or self.config.workdir
        user = self.overlay.user if self.overlay.user is not None else self.config.user
        env = dict(self.config.env)
        if self.overlay.env:
            env.update(self.overlay.env)
        return Effective(
            workdir=workdir,
            user=user,
            env=env,
            copy_root=self.overlay.inside or workdir,
        )

    def metadata_pending(self) -> bool:
        return self.committed_metadata != self.config.metadata_payload()

    def mark_committed(self) -> None:
        self.committed_metadata = self.config.metadata_payload()

    def fork(self) -> BuildState:
        """Copy for work that must not touch this state (``after`` hooks)."""
        return BuildState(
            image=self.image,
            config=self.config,
            overlay=Overlay(),
            committed_metadata=self.committed_metadata,
        )


@dataclass(slots=True)
class BuildResult:
    image: str
    state: BuildState
    tags: list[TagRecord] = field(default_factory=list)
    layers: list[LayerRecord] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    logs: list[dict[str, Any]] = field(default_factory=list)

    def tag_for(self, name: str) -> TagRecord | None:
        for tag in self.tags:
            if tag.name == name:
                return tag
        return None

    def write_report(self, path: str | Path) -> Path:
        report_path = Path(path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "image": self.image,
            "config": self.state.config.to_payload(),
            "tags": [
                {"name": t.name, "image": t.image, "kind": t.kind, "path": t.path}
                for t in self.tags
            ],
            "layers": [
                {
                    "kind": layer.kind,
                    "image": layer.image,
                    "cache_key": layer.cache_key,
                    "cached": layer.cached,
                    "skipped": layer.skipped,
                    "changes": list(layer.changes),
                }
                for layer in self.layers
            ],
            "cache": {"hits": self.cache_hits, "misses": self.cache_misses},
            "logs": self.logs,
        }
        report_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        return report_path
