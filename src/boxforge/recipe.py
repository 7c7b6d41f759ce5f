"""Fluent builder that records operations for the engine."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Self

from .context import read_ignore_file
from .errors import ScriptError
from .operations import (
    After,
    ArchiveKind,
    Copy,
    Env,
    Flatten,
    From,
    Inside,
    Label,
    Operation,
    Run,
    Save,
    SetExec,
    Skip,
    Tag,
    Text,
    User,
    Workdir,
)


@dataclass(slots=True)
class Recipe:
    """Records operations in order; block methods are context managers.

    >>> recipe = Recipe().from_("debian")
    >>> with recipe.in_workdir("/src"):
    ...     _ = recipe.run("make")
    """

    _stack: list[list[Operation]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._stack = [[]]

    @property
    def operations(self) -> tuple[Operation, ...]:
        if len(self._stack) != 1:
            raise ScriptError(
                "Recipe has open blocks.",
                context={"operation": "recipe", "depth": str(len(self._stack) - 1)},
            )
        return tuple(self._stack[0])

    def from_(self, image: Text) -> Self:
        return self._add(From(image))

    def run(self, command: Text) -> Self:
        return self._add(Run(command))

    def env(self, values: Mapping[str, Text] | None = None, **named: Text) -> Self:
        return self._add(Env(_merge(values, named)))

    def copy(
        self,
        source: Text,
        target: Text,
        *,
        ignore: tuple[str, ...] = (),
        ignore_file: str | Path | None = None,
    ) -> Self:
        patterns = ignore
        if ignore_file is not None:
            patterns = (*ignore, *read_ignore_file(Path(ignore_file)))
        return self._add(Copy(source, target, ignore=patterns))

    def workdir(self, path: Text) -> Self:
        return self._add(Workdir(path))

    def user(self, name: Text) -> Self:
        return self._add(User(name))

    def tag(self, name: Text) -> Self:
        return self._add(Tag(name))

    def flatten(self) -> Self:
        return self._add(Flatten())

    def set_exec(
        self,
        *,
        entrypoint: list[str] | tuple[str, ...] | None = None,
        cmd: list[str] | tuple[str, ...] | None = None,
    ) -> Self:
        return self._add(
            SetExec(
                entrypoint=None if entrypoint is None else tuple(entrypoint),
                cmd=None if cmd is None else tuple(cmd),
            )
        )

    def label(self, values: Mapping[str, Text] | None = None, **named: Text) -> Self:
        return self._add(Label(_merge(values, named)))

    def save(self, path: Text, *, format: ArchiveKind = "docker", tag: Text | None = None) -> Self:
        return self._add(Save(path, format=format, tag=tag))

    @contextmanager
    def in_workdir(self, path: Text) -> Iterator[Self]:
        body: list[Operation] = []
        with self._block(body):
            yield self
        self._add(Workdir(path, body=tuple(body)))

    @contextmanager
    def as_user(self, name: Text) -> Iterator[Self]:
        body: list[Operation] = []
        with self._block(body):
            yield self
        self._add(User(name, body=tuple(body)))

    @contextmanager
    def with_env(self, values: Mapping[str, Text] | None = None, **named: Text) -> Iterator[Self]:
        merged = _merge(values, named)
        body: list[Operation] = []
        with self._block(body):
            yield self
        self._add(Env(merged, body=tuple(body)))

    @contextmanager
    def inside(self, path: Text) -> Iterator[Self]:
        body: list[Operation] = []
        with self._block(body):
            yield self
        self._add(Inside(path, body=tuple(body)))

    @contextmanager
    def skip(self) -> Iterator[Self]:
        body: list[Operation] = []
        with self._block(body):
            yield self
        self._add(Skip(body=tuple(body)))

    @contextmanager
    def after(self) -> Iterator[Self]:
        body: list[Operation] = []
        with self._block(body):
            yield self
        self._add(After(body=tuple(body)))

    @contextmanager
    def _block(self, body: list[Operation]) -> Iterator[None]:
        self._stack.append(body)
        try:
            yield
        finally:
            self._stack.pop()

    def _add(self, operation: Operation) -> Self:
        self._stack[-1].append(operation)
        return self


def _merge(values: Mapping[str, Text] | None, named: Mapping[str, Text]) -> dict[str, Text]:
    merged: dict[str, Text] = dict(values or {})
    merged.update(named)
    return merged
