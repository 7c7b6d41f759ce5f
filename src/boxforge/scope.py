"""Stack of overlay frames backing block statements."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from .errors import ScriptError
from .state import BuildState, ImageConfig, Overlay


@dataclass(frozen=True, slots=True)
class ScopeFrame:
    """Overlay delta for a block plus what to restore when it exits."""

    kind: str
    overlay: Overlay
    saved_overlay: Overlay | None = None
    saved_image: str | None = None
    saved_config: ImageConfig | None = None
    saved_metadata: dict[str, object] | None = None


@dataclass(frozen=True, slots=True)
class FrameHandle:
    index: int
    kind: str


@dataclass(slots=True)
class ScopeManager:
    state: BuildState
    _frames: list[ScopeFrame] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self._frames)

    def top(self) -> ScopeFrame | None:
        return self._frames[-1] if self._frames else None

    def push(self, kind: str, overlay: Overlay, *, discard: bool = False) -> FrameHandle:
        frame = ScopeFrame(
            kind=kind,
            overlay=overlay,
            saved_overlay=self.state.overlay,
            saved_image=self.state.image if discard else None,
            saved_config=self.state.config if discard else None,
            saved_metadata=self.state.committed_metadata if discard else None,
        )
        self._frames.append(frame)
        self.state.overlay = overlay
        return FrameHandle(index=len(self._frames) - 1, kind=kind)

    def pop(self, handle: FrameHandle) -> ScopeFrame:
        if not self._frames or handle.index != len(self._frames) - 1:
            raise ScriptError(
                "Scope frames must be closed in the order they were opened.",
                context={
                    "operation": "scope_pop",
                    "kind": handle.kind,
                    "depth": str(len(self._frames)),
                },
            )
        frame = self._frames.pop()
        if frame.saved_overlay is not None:
            self.state.overlay = frame.saved_overlay
        if frame.saved_config is not None:
            self.state.image = frame.saved_image
            self.state.config = frame.saved_config
            self.state.committed_metadata = frame.saved_metadata
        return frame

    @contextmanager
    def scoped(self, kind: str, overlay: Overlay, *, discard: bool = False) -> Iterator[FrameHandle]:
        handle = self.push(kind, overlay, discard=discard)
        try:
            yield handle
        finally:
            self.pop(handle)

    def is_overlaid(self, name: str) -> bool:
        """Whether an enclosing block currently overrides the named overlay field."""
        return getattr(self.state.overlay, name) is not None

    def ensure_balanced(self) -> None:
        if self._frames:
            raise ScriptError(
                "Unbalanced scope blocks at end of build.",
                hint="Every block must be closed before the operation list ends.",
                context={
                    "operation": "scope_check",
                    "open": ",".join(frame.kind for frame in self._frames),
                },
            )
