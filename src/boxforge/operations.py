"""Typed build operations consumed by the execution engine.

Operations are immutable values handed over by a front-end. Block forms carry
their nested statements in ``body``; ``Workdir``, ``User`` and ``Env`` act on
the rest of the current scope when ``body`` is ``None``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import ClassVar, Literal

ArchiveKind = Literal["docker", "oci"]
Getenv = Callable[[str], str | None]


@dataclass(frozen=True, slots=True)
class HostEnv:
    """Placeholder for a value read from the build host environment."""

    name: str
    default: str = ""


Text = str | HostEnv


def resolve_text(value: Text, getenv: Getenv) -> str:
    if isinstance(value, HostEnv):
        found = getenv(value.name)
        return value.default if found is None else found
    return value


def resolve_mapping(values: Mapping[str, Text], getenv: Getenv) -> dict[str, str]:
    return {key: resolve_text(value, getenv) for key, value in values.items()}


@dataclass(frozen=True, slots=True)
class From:
    kind: ClassVar[str] = "from"

    image: Text


@dataclass(frozen=True, slots=True)
class Run:
    kind: ClassVar[str] = "run"

    command: Text


@dataclass(frozen=True, slots=True)
class Env:
    kind: ClassVar[str] = "env"

    values: Mapping[str, Text]
    body: tuple[Operation, ...] | None = None


@dataclass(frozen=True, slots=True)
class Copy:
    kind: ClassVar[str] = "copy"

    source: Text
    target: Text
    ignore: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Workdir:
    kind: ClassVar[str] = "workdir"

    path: Text
    body: tuple[Operation, ...] | None = None


@dataclass(frozen=True, slots=True)
class User:
    kind: ClassVar[str] = "user"

    name: Text
    body: tuple[Operation, ...] | None = None


@dataclass(frozen=True, slots=True)
class Inside:
    kind: ClassVar[str] = "inside"

    path: Text
    body: tuple[Operation, ...] = ()


@dataclass(frozen=True, slots=True)
class Skip:
    kind: ClassVar[str] = "skip"

    body: tuple[Operation, ...] = ()


@dataclass(frozen=True, slots=True)
class Tag:
    kind: ClassVar[str] = "tag"

    name: Text


@dataclass(frozen=True, slots=True)
class After:
    kind: ClassVar[str] = "after"

    body: tuple[Operation, ...] = ()


@dataclass(frozen=True, slots=True)
class Flatten:
    kind: ClassVar[str] = "flatten"


@dataclass(frozen=True, slots=True)
class SetExec:
    kind: ClassVar[str] = "set_exec"

    entrypoint: tuple[str, ...] | None = None
    cmd: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class Label:
    kind: ClassVar[str] = "label"

    values: Mapping[str, Text] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Save:
    kind: ClassVar[str] = "save"

    path: Text
    format: ArchiveKind = "docker"
    tag: Text | None = None


Operation = (
    From
    | Run
    | Env
    | Copy
    | Workdir
    | User
    | Inside
    | Skip
    | Tag
    | After
    | Flatten
    | SetExec
    | Label
    | Save
)

CACHEABLE_KINDS = frozenset({"from", "run", "copy", "env", "user", "workdir", "materialize"})


def is_block(operation: Operation) -> bool:
    if isinstance(operation, (Inside, Skip, After)):
        return True
    if isinstance(operation, (Workdir, User, Env)):
        return operation.body is not None
    return False


def count_operations(operations: Sequence[Operation]) -> int:
    """Count operations including the statements nested in block bodies."""
    total = 0
    for operation in operations:
        total += 1
        body = getattr(operation, "body", None)
        if body:
            total += count_operations(body)
    return total


__all__ = [
    "CACHEABLE_KINDS",
    "After",
    "ArchiveKind",
    "Copy",
    "Env",
    "Flatten",
    "From",
    "Getenv",
    "HostEnv",
    "Inside",
    "Label",
    "Operation",
    "Run",
    "Save",
    "SetExec",
    "Skip",
    "Tag",
    "Text",
    "User",
    "Workdir",
    "count_operations",
    "is_block",
    "resolve_mapping",
    "resolve_text",
]
