"""In-process runtime for testing and development.

Models images as file maps with deterministic content-derived references, so
identical build histories always yield identical image refs. Commands are not
executed; a handful of shell verbs (``echo``, ``pwd``, ``whoami``, ``touch``,
``exit``) are interpreted so tests can observe the container context.
"""

from __future__ import annotations

import hashlib
import json
import shlex
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from boxforge.errors import AdapterFailure, BuildCancelled
from boxforge.operations import ArchiveKind
from boxforge.runtime.base import CancelToken, ContainerSpec, ExecResult, ResolvedImage
from boxforge.state import ImageConfig


@dataclass(frozen=True, slots=True)
class FakeImage:
    ref: str
    parent: str | None
    files: dict[str, str]
    config: ImageConfig
    depth: int


@dataclass(slots=True)
class FakeContainer:
    image: str
    spec: ContainerSpec
    files: dict[str, str]
    changes: set[str] = field(default_factory=set)


@dataclass(frozen=True, slots=True)
class ExecCall:
    container: str
    argv: tuple[str, ...]
    workdir: str
    user: str | None
    env: dict[str, str]
    output: str


class InMemoryRuntime:
    name = "memory"

    def __init__(
        self,
        *,
        base_configs: dict[str, ImageConfig] | None = None,
        missing: set[str] | None = None,
        fail_commands: dict[str, int] | None = None,
        hang_commands: set[str] | None = None,
    ) -> None:
        self.base_configs = dict(base_configs or {})
        self.missing = set(missing or ())
        self.fail_commands = dict(fail_commands or {})
        self.hang_commands = set(hang_commands or ())
        self.unreachable = False
        self.images: dict[str, FakeImage] = {}
        self.containers: dict[str, FakeContainer] = {}
        self.tags: dict[str, str] = {}
        self.exports: dict[Path, tuple[str, ArchiveKind, str]] = {}
        self.exec_calls: list[ExecCall] = []
        self.calls: list[str] = []
        self._counter = 0
        self._lock = threading.RLock()

    def resolve(self, name: str) -> ResolvedImage:
        with self._lock:
            self._enter("resolve")
            if name in self.missing:
                raise AdapterFailure(
                    "Base image could not be pulled.",
                    context={"runtime": self.name, "operation": "resolve", "image": name},
                )
            config = self.base_configs.get(name, ImageConfig())
            ref = self._store_image(parent=None, files={"/etc/base": name}, config=config, depth=1)
            return ResolvedImage(image=ref, config=config)

    def inspect(self, image: str) -> ImageConfig:
        with self._lock:
            self._enter("inspect")
            return self._image(image).config

    def create(self, image: str, spec: ContainerSpec) -> str:
        with self._lock:
            self._enter("create")
            source = self._image(image)
            self._counter += 1
            container = f"ctr-{self._counter}"
            self.containers[container] = FakeContainer(image=image, spec=spec, files=dict(source.files))
            return container

    def exec(
        self,
        container: str,
        argv: tuple[str, ...],
        spec: ContainerSpec,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> ExecResult:
        with self._lock:
            self._enter("exec")
            state = self._container(container)
        command = argv[-1]
        if command in self.hang_commands:
            self._hang(container, command, timeout=timeout, cancel=cancel)
        with self._lock:
            exit_code, output = self._interpret(state, command, spec)
            self.exec_calls.append(
                ExecCall(
                    container=container,
                    argv=argv,
                    workdir=spec.workdir,
                    user=spec.user,
                    env=dict(spec.env),
                    output=output,
                )
            )
            return ExecResult(exit_code=exit_code, output=output)

    def copy_in(self, container: str, source: Path, target: str) -> None:
        with self._lock:
            self._enter("copy_in")
            state = self._container(container)
            if source.is_dir():
                for path in sorted(source.rglob("*")):
                    if path.is_file():
                        rel = path.relative_to(source).as_posix()
                        self._write(state, str(PurePosixPath(target) / rel), path.read_text(encoding="utf-8"))
            elif source.is_file():
                self._write(state, target, source.read_text(encoding="utf-8"))
            else:
                raise AdapterFailure(
                    "Copy source does not exist.",
                    context={"runtime": self.name, "operation": "copy_in", "source": str(source)},
                )

    def diff(self, container: str) -> tuple[str, ...]:
        with self._lock:
            self._enter("diff")
            return tuple(sorted(self._container(container).changes))

    def commit(self, container: str, config: ImageConfig, *, comment: str = "") -> str:
        with self._lock:
            self._enter("commit")
            state = self._container(container)
            parent = self._image(state.image)
            return self._store_image(
                parent=parent.ref,
                files=dict(state.files),
                config=config,
                depth=parent.depth + 1,
            )

    def remove(self, container: str) -> None:
        with self._lock:
            self._enter("remove")
            self.containers.pop(container, None)

    def tag(self, image: str, name: str) -> None:
        with self._lock:
            self._enter("tag")
            self._image(image)
            self.tags[name] = image

    def export(self, image: str, path: Path, *, kind: ArchiveKind, name: str) -> None:
        with self._lock:
            self._enter("export")
            source = self._image(image)
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = {"image": source.ref, "kind": kind, "name": name, "files": source.files}
            path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            self.exports[path] = (image, kind, name)

    def flatten(self, image: str, config: ImageConfig) -> str:
        with self._lock:
            self._enter("flatten")
            source = self._image(image)
            return self._store_image(parent=None, files=dict(source.files), config=config, depth=1)

    def depth(self, image: str) -> int:
        return self._image(image).depth

    def files(self, image: str) -> dict[str, str]:
        return dict(self._image(image).files)

    def count(self, call: str) -> int:
        return self.calls.count(call)

    def _enter(self, call: str) -> None:
        if self.unreachable:
            raise AdapterFailure(
                "Container runtime is unreachable.",
                hint="Start the container daemon and retry.",
                context={"runtime": self.name, "operation": call},
            )
        self.calls.append(call)

    def _hang(
        self,
        container: str,
        command: str,
        *,
        timeout: float | None,
        cancel: CancelToken | None,
    ) -> None:
        if cancel is None:
            if timeout is None:
                raise AdapterFailure(
                    "Command would block forever.",
                    context={"runtime": self.name, "operation": "exec", "command": command},
                )
            reason = "timeout"
        else:
            reason = cancel.reason if cancel.wait(timeout if timeout is not None else 3600) else "timeout"
        with self._lock:
            self.containers.pop(container, None)
        raise BuildCancelled(
            "Command was interrupted.",
            context={"runtime": self.name, "operation": "exec", "command": command, "reason": reason},
        )

    def _interpret(self, state: FakeContainer, command: str, spec: ContainerSpec) -> tuple[int, str]:
        if command in self.fail_commands:
            return self.fail_commands[command], f"{command}: failed\n"
        words = shlex.split(command) if command.strip() else []
        output = ""
        if words and words[0] == "exit" and len(words) > 1:
            return int(words[1]), ""
        if words and words[0] == "echo":
            output = " ".join(words[1:]) + "\n"
        elif words and words[0] == "pwd":
            output = spec.workdir + "\n"
        elif words and words[0] == "whoami":
            output = (spec.user or "root") + "\n"
        elif words and words[0] == "touch":
            for name in words[1:]:
                self._write(state, str(PurePosixPath(spec.workdir) / name), "")
        digest = hashlib.sha256(command.encode("utf-8")).hexdigest()[:16]
        self._write(state, f"/.exec/{digest}", command)
        return 0, output

    def _write(self, state: FakeContainer, path: str, content: str) -> None:
        state.files[path] = content
        state.changes.add(path)

    def _store_image(
        self,
        *,
        parent: str | None,
        files: dict[str, str],
        config: ImageConfig,
        depth: int,
    ) -> str:
        payload = {
            "parent": parent,
            "files": dict(sorted(files.items())),
            "config": config.to_payload(),
            "depth": depth,
        }
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
        ref = f"sha256:{digest}"
        self.images.setdefault(ref, FakeImage(ref=ref, parent=parent, files=files, config=config, depth=depth))
        return ref

    def _image(self, ref: str) -> FakeImage:
        image = self.images.get(ref)
        if image is None:
            raise AdapterFailure(
                "Unknown image reference.",
                context={"runtime": self.name, "image": ref},
            )
        return image

    def _container(self, container: str) -> FakeContainer:
        state = self.containers.get(container)
        if state is None:
            raise AdapterFailure(
                "Unknown container.",
                context={"runtime": self.name, "container": container},
            )
        return state
