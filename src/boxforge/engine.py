"""Execution engine: applies build operations to a single build state.

The main chain is strictly sequential because every cache key depends on the
image produced by the previous step. Cacheable operations (``from``, ``run``,
``copy``, ``env``, ``user``, ``workdir``) consult the layer cache first and only
reach the runtime on a miss. ``after`` hooks run once the main chain is done,
each against a private copy of the final state.
"""

from __future__ import annotations

import itertools
import os
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, replace
from pathlib import Path, PurePosixPath

from .cache import CacheEntry, CacheKeyInput, LayerCache, MemoryLayerCache, cache_key
from .config import EngineConfig, ensure_absolute, ensure_engine_config, ensure_non_empty
from .context import content_digest, resolve_source, staged_source
from .errors import AdapterFailure, BoxError, ExecutionFailure, ScriptError
from .observability import StructuredLogger
from .operations import (
    CACHEABLE_KINDS,
    After,
    Copy,
    Env,
    Flatten,
    From,
    Getenv,
    Inside,
    Label,
    Operation,
    Run,
    Save,
    SetExec,
    Skip,
    Tag,
    User,
    Workdir,
    count_operations,
    is_block,
    resolve_mapping,
    resolve_text,
)
from .runtime.base import CancelToken, ContainerSpec, RuntimeAdapter
from .scope import ScopeManager
from .state import BuildResult, BuildState, Effective, ImageConfig, LayerRecord, TagRecord


@dataclass(frozen=True, slots=True)
class _Layer:
    """Image produced by a cache miss, or adopted from a cache hit."""

    image: str
    changes: tuple[str, ...] = ()
    config: ImageConfig | None = None


Produce = Callable[[str], _Layer]


@dataclass(slots=True)
class _Chain:
    """State and scope stack one operation chain runs against."""

    state: BuildState
    scopes: ScopeManager
    hook: int | None = None


class Engine:
    def __init__(
        self,
        runtime: RuntimeAdapter,
        *,
        cache: LayerCache | None = None,
        config: EngineConfig | None = None,
        logger: StructuredLogger | None = None,
        getenv: Getenv | None = None,
    ) -> None:
        self.runtime = runtime
        self.config = config or EngineConfig()
        ensure_engine_config(self.config)
        self.cache: LayerCache = cache if cache is not None else MemoryLayerCache()
        self.logger = logger or StructuredLogger()
        self.getenv: Getenv = getenv or os.environ.get
        self.state = BuildState()
        self.scopes = ScopeManager(self.state)
        self._cancel: CancelToken | None = None
        self._steps = itertools.count(1)
        self._hits = 0
        self._misses = 0
        self._counts = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_guard = threading.Lock()

    def execute(
        self,
        operations: Sequence[Operation],
        *,
        cancel: CancelToken | None = None,
    ) -> BuildResult:
        self.state = BuildState()
        self.scopes = ScopeManager(self.state)
        self._cancel = cancel
        self._steps = itertools.count(1)
        self._hits = 0
        self._misses = 0
        main = _Chain(self.state, self.scopes)
        first_record = len(self.logger.records)

        self.logger.log(
            operation="build_start",
            step=None,
            kind=None,
            image=None,
            message="Starting build.",
            extra={"operations": count_operations(operations), "runtime": self.runtime.name},
        )
        try:
            if not operations or not isinstance(operations[0], From):
                raise ScriptError(
                    "The first operation must be `from`.",
                    hint="Start the build with a base image.",
                    context={"operation": "execute"},
                )
            self._run_chain(operations, main)
            self.scopes.ensure_balanced()
            image = self._materialize(main, step=None)
            self._run_hooks()
        except BoxError as exc:
            self.logger.log(
                operation="build_failed",
                step=None,
                kind=None,
                image=self.state.image,
                message="Build aborted.",
                level="error",
                extra=exc.to_dict(),
            )
            raise

        self.logger.log(
            operation="build_complete",
            step=None,
            kind=None,
            image=image,
            message="Build complete.",
            extra={"cache_hits": self._hits, "cache_misses": self._misses},
        )
        return BuildResult(
            image=image,
            state=self.state,
            tags=list(self.state.tags),
            layers=list(self.state.layers),
            cache_hits=self._hits,
            cache_misses=self._misses,
            logs=list(self.logger.records[first_record:]),
        )

    # ── dispatch ────────────────────────────────────────────────────

    def _run_chain(self, operations: Sequence[Operation], chain: _Chain) -> None:
        for operation in operations:
            if self._cancel is not None:
                self._cancel.raise_if_cancelled("execute")
            self._apply(operation, chain)

    def _apply(self, op: Operation, chain: _Chain) -> None:
        step = next(self._steps)
        state = chain.state
        if isinstance(op, From):
            self._from(op, chain, step)
        elif state.image is None:
            raise ScriptError(
                "`from` must run before any other operation.",
                context={"operation": op.kind, "step": str(step)},
            )
        elif isinstance(op, Run):
            self._run(op, chain, step)
        elif isinstance(op, Copy):
            self._copy(op, chain, step)
        elif isinstance(op, Env):
            self._env(op, chain, step)
        elif isinstance(op, Workdir):
            self._workdir(op, chain, step)
        elif isinstance(op, User):
            self._user(op, chain, step)
        elif isinstance(op, Inside):
            self._inside(op, chain, step)
        elif isinstance(op, Skip):
            self._skip(op, chain, step)
        elif isinstance(op, Tag):
            self._tag(op, chain, step)
        elif isinstance(op, After):
            self._after(op, chain, step)
        elif isinstance(op, Flatten):
            self._flatten(chain, step)
        elif isinstance(op, SetExec):
            self._set_exec(op, chain, step)
        elif isinstance(op, Label):
            self._label(op, chain, step)
        elif isinstance(op, Save):
            self._save(op, chain, step)
        else:
            raise ScriptError(
                "Unsupported operation.",
                context={"operation": type(op).__name__, "step": str(step)},
            )
        self.logger.log(
            operation="apply",
            step=step,
            kind=op.kind,
            image=state.image,
            message="Applied operation.",
            extra={"block": is_block(op), "hook": chain.hook, "skip": state.overlay.skip},
        )

    # ── cacheable operations ────────────────────────────────────────

    def _from(self, op: From, chain: _Chain, step: int) -> None:
        state = chain.state
        if state.image is not None:
            raise ScriptError(
                "`from` may only appear once, as the first operation.",
                context={"operation": "from", "step": str(step)},
            )
        name = ensure_non_empty(resolve_text(op.image, self.getenv), operation="from", argument="image")

        def produce(_key: str) -> _Layer:
            resolved = self.runtime.resolve(name)
            return _Layer(image=resolved.image, config=resolved.config)

        layer = self._cached(chain, step, "from", {"image": name}, produce)
        state.image = layer.image
        # Entries written without a base config fall back to the runtime.
        state.config = layer.config if layer.config is not None else self.runtime.inspect(layer.image)
        state.mark_committed()

    def _run(self, op: Run, chain: _Chain, step: int) -> None:
        state = chain.state
        command = ensure_non_empty(resolve_text(op.command, self.getenv), operation="run", argument="command")
        spec = _spec(state.effective())
        argv = (*self.config.shell, command)

        def produce(key: str) -> _Layer:
            with self._container(state.image or "", spec, step) as container:
                result = self.runtime.exec(
                    container,
                    argv,
                    spec,
                    timeout=self.config.exec_timeout,
                    cancel=self._cancel,
                )
                if result.exit_code != 0:
                    raise ExecutionFailure(
                        "Command exited with a non-zero status.",
                        command=command,
                        exit_code=result.exit_code,
                        output=result.output,
                        context={"step": str(step), "workdir": spec.workdir},
                    )
                changes = self.runtime.diff(container)
                image = self.runtime.commit(container, state.config, comment=key)
            return _Layer(image=image, changes=changes)

        state.image = self._cached(chain, step, "run", {"command": command}, produce).image
        state.mark_committed()

    def _copy(self, op: Copy, chain: _Chain, step: int) -> None:
        state = chain.state
        source_name = ensure_non_empty(resolve_text(op.source, self.getenv), operation="copy", argument="source")
        target = ensure_non_empty(resolve_text(op.target, self.getenv), operation="copy", argument="target")
        effective = state.effective()
        source = resolve_source(self.config.context_dir, source_name)

        destination = PurePosixPath(effective.copy_root) / target
        if target.endswith("/") and source.is_file():
            destination = destination / source.name
        dest = ensure_absolute(str(destination), operation="copy")
        arguments = {
            "source": source_name,
            "target": dest,
            "ignore": list(op.ignore),
            "digest": content_digest(source, op.ignore),
        }
        spec = _spec(effective)

        def produce(key: str) -> _Layer:
            with self._container(state.image or "", spec, step) as container:
                with staged_source(source, op.ignore) as staged:
                    self.runtime.copy_in(container, staged, dest)
                changes = self.runtime.diff(container)
                image = self.runtime.commit(container, state.config, comment=key)
            return _Layer(image=image, changes=changes)

        state.image = self._cached(chain, step, "copy", arguments, produce).image
        state.mark_committed()

    def _env(self, op: Env, chain: _Chain, step: int) -> None:
        state = chain.state
        values = resolve_mapping(op.values, self.getenv)
        for key in values:
            ensure_non_empty(key, operation="env", argument="variable name")
        if op.body is not None:
            overlay = replace(state.overlay, env={**(state.overlay.env or {}), **values})
            with chain.scopes.scoped("env", overlay):
                self._run_chain(op.body, chain)
            return
        if chain.scopes.is_overlaid("env"):
            state.overlay = replace(state.overlay, env={**(state.overlay.env or {}), **values})
            return
        self._commit_config(chain, step, "env", {"values": values}, state.config.with_env(values))

    def _workdir(self, op: Workdir, chain: _Chain, step: int) -> None:
        state = chain.state
        path = ensure_absolute(resolve_text(op.path, self.getenv), operation="workdir")
        if op.body is not None:
            with chain.scopes.scoped("workdir", replace(state.overlay, workdir=path)):
                self._run_chain(op.body, chain)
            return
        if chain.scopes.is_overlaid("workdir"):
            state.overlay = replace(state.overlay, workdir=path)
            return
        self._commit_config(chain, step, "workdir", {"path": path}, replace(state.config, workdir=path))

    def _user(self, op: User, chain: _Chain, step: int) -> None:
        state = chain.state
        name = ensure_non_empty(resolve_text(op.name, self.getenv), operation="user", argument="name")
        if op.body is not None:
            with chain.scopes.scoped("user", replace(state.overlay, user=name)):
                self._run_chain(op.body, chain)
            return
        if chain.scopes.is_overlaid("user"):
            state.overlay = replace(state.overlay, user=name)
            return
        self._commit_config(chain, step, "user", {"name": name}, replace(state.config, user=name))

    def _commit_config(
        self,
        chain: _Chain,
        step: int,
        kind: str,
        arguments: dict[str, object],
        config: ImageConfig,
    ) -> None:
        state = chain.state
        spec = _spec(state.effective())

        def produce(key: str) -> _Layer:
            with self._container(state.image or "", spec, step) as container:
                image = self.runtime.commit(container, config, comment=key)
            return _Layer(image=image)

        state.image = self._cached(chain, step, kind, arguments, produce).image
        state.config = config
        state.mark_committed()

    def _cached(
        self,
        chain: _Chain,
        step: int,
        kind: str,
        arguments: dict[str, object],
        produce: Produce,
    ) -> _Layer:
        if kind not in CACHEABLE_KINDS:
            raise ScriptError(
                "Operation kind is not cacheable.",
                context={"operation": kind, "step": str(step)},
            )
        state = chain.state
        key = cache_key(
            CacheKeyInput(
                image=state.image,
                kind=kind,
                arguments=arguments,
                overlay=state.effective().to_payload(),
                metadata=state.config.metadata_payload(),
            )
        )
        # Concurrent hooks asking for the same key wait here and then hit.
        with self._key_lock(key) if self.config.use_cache else nullcontext():
            if self.config.use_cache:
                cached = self.cache.lookup(key)
                if cached is not None:
                    return self._adopt(chain, step, kind, key, cached)

            layer = produce(key)
            with self._counts:
                self._misses += 1
            config = None if layer.config is None else layer.config.to_payload()
            if self.config.use_cache and not self.cache.store(key, layer.image, kind=kind, config=config):
                self.logger.log(
                    operation="cache_store_skipped",
                    step=step,
                    kind=kind,
                    image=layer.image,
                    message="Cache already held an entry for this key; result not stored.",
                    level="warning",
                    extra={"key": key},
                )
        state.layers.append(
            LayerRecord(
                kind=kind,
                image=layer.image,
                cache_key=key,
                skipped=state.overlay.skip,
                changes=layer.changes,
            )
        )
        return layer

    def _adopt(self, chain: _Chain, step: int, kind: str, key: str, entry: CacheEntry) -> _Layer:
        state = chain.state
        with self._counts:
            self._hits += 1
        state.layers.append(
            LayerRecord(kind=kind, image=entry.image, cache_key=key, cached=True, skipped=state.overlay.skip)
        )
        self.logger.log(
            operation="cache_hit",
            step=step,
            kind=kind,
            image=entry.image,
            message="Reused cached layer.",
            extra={"key": key},
        )
        config = None if entry.config is None else ImageConfig.from_payload(entry.config)
        return _Layer(image=entry.image, config=config)

    def _key_lock(self, key: str) -> threading.Lock:
        with self._key_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    # ── scoped blocks ───────────────────────────────────────────────

    def _inside(self, op: Inside, chain: _Chain, step: int) -> None:
        state = chain.state
        path = resolve_text(op.path, self.getenv)
        root = ensure_absolute(str(PurePosixPath(state.effective().workdir) / path), operation="inside")
        with chain.scopes.scoped("inside", replace(state.overlay, inside=root)):
            self._run_chain(op.body, chain)

    def _skip(self, op: Skip, chain: _Chain, step: int) -> None:
        state = chain.state
        before = state.image
        with chain.scopes.scoped("skip", replace(state.overlay, skip=True), discard=True):
            self._run_chain(op.body, chain)
        self.logger.log(
            operation="skip_discard",
            step=step,
            kind="skip",
            image=state.image,
            message="Discarded layers built inside skip block.",
            extra={"restored": before},
        )

    # ── metadata and finalization ───────────────────────────────────

    def _tag(self, op: Tag, chain: _Chain, step: int) -> None:
        name = ensure_non_empty(resolve_text(op.name, self.getenv), operation="tag", argument="name")
        image = self._materialize(chain, step)
        self.runtime.tag(image, name)
        chain.state.tags.append(TagRecord(name=name, image=image))

    def _after(self, op: After, chain: _Chain, step: int) -> None:
        if chain.hook is not None:
            raise ScriptError(
                "`after` cannot be registered from inside an `after` hook.",
                context={"operation": "after", "step": str(step)},
            )
        chain.state.hooks.append(tuple(op.body))

    def _flatten(self, chain: _Chain, step: int) -> None:
        state = chain.state
        image = self.runtime.flatten(state.image or "", state.config)
        state.image = image
        state.mark_committed()
        state.layers.append(LayerRecord(kind="flatten", image=image, skipped=state.overlay.skip))

    def _set_exec(self, op: SetExec, chain: _Chain, step: int) -> None:
        if op.entrypoint is None and op.cmd is None:
            raise ScriptError(
                "set_exec requires an entrypoint, a cmd, or both.",
                context={"operation": "set_exec", "step": str(step)},
            )
        state = chain.state
        config = state.config
        if op.entrypoint is not None:
            config = replace(config, entrypoint=tuple(op.entrypoint))
        if op.cmd is not None:
            config = replace(config, cmd=tuple(op.cmd))
        state.config = config

    def _label(self, op: Label, chain: _Chain, step: int) -> None:
        state = chain.state
        labels = dict(state.config.labels)
        labels.update(resolve_mapping(op.values, self.getenv))
        state.config = replace(state.config, labels=labels)

    def _save(self, op: Save, chain: _Chain, step: int) -> None:
        state = chain.state
        raw_path = ensure_non_empty(resolve_text(op.path, self.getenv), operation="save", argument="path")
        tag = None if op.tag is None else resolve_text(op.tag, self.getenv)
        image = self._materialize(chain, step)
        if tag:
            self.runtime.tag(image, tag)
            state.tags.append(TagRecord(name=tag, image=image))
        path = Path(raw_path)
        if not path.is_absolute():
            path = self.config.context_dir / path
        # Archives always need a name; default to the file name minus its extension.
        name = tag or path.stem
        self.runtime.export(image, path, kind=op.format, name=name)
        kind = "oci-archive" if op.format == "oci" else "docker-archive"
        state.tags.append(TagRecord(name=name, image=image, kind=kind, path=str(path)))

    def _materialize(self, chain: _Chain, step: int | None) -> str:
        """Commit pending exec config and labels; return the image to publish."""
        state = chain.state
        if not state.metadata_pending():
            return state.image or ""
        config = state.config
        self._commit_config(
            chain,
            step if step is not None else next(self._steps),
            "materialize",
            {"config": config.to_payload()},
            config,
        )
        return state.image or ""

    # ── after hooks ─────────────────────────────────────────────────

    def _run_hooks(self) -> None:
        hooks = list(self.state.hooks)
        if not hooks:
            return
        forks = [self.state.fork() for _ in hooks]
        failure: BaseException | None = None
        if self.config.hook_workers == 1 or len(hooks) == 1:
            for index, body in enumerate(hooks):
                try:
                    self._run_hook(index, body, forks[index])
                except BoxError as exc:
                    failure = exc
                    forks = forks[: index + 1]
                    break
        else:
            workers = min(self.config.hook_workers, len(hooks))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="boxforge-after") as pool:
                futures = [
                    pool.submit(self._run_hook, index, body, forks[index])
                    for index, body in enumerate(hooks)
                ]
            for future in futures:
                exc = future.exception()
                if exc is not None and failure is None:
                    failure = exc
        # Tags already applied by hooks stay recorded when a hook fails.
        for forked in forks:
            self.state.tags.extend(forked.tags)
            self.state.layers.extend(forked.layers)
        if failure is not None:
            raise failure

    def _run_hook(self, index: int, body: tuple[Operation, ...], forked: BuildState) -> None:
        chain = _Chain(forked, ScopeManager(forked), hook=index)
        self._run_chain(body, chain)
        chain.scopes.ensure_balanced()

    # ── containers ──────────────────────────────────────────────────

    @contextmanager
    def _container(self, image: str, spec: ContainerSpec, step: int) -> Iterator[str]:
        container = self.runtime.create(image, spec)
        try:
            yield container
        except BaseException:
            try:
                self.runtime.remove(container)
            except AdapterFailure as exc:
                self.logger.log(
                    operation="container_cleanup",
                    step=step,
                    kind=None,
                    image=image,
                    message="Could not remove build container after failure.",
                    level="warning",
                    extra={"container": container, "error": exc.to_dict()},
                )
            raise
        self.runtime.remove(container)


def _spec(effective: Effective) -> ContainerSpec:
    return ContainerSpec(workdir=effective.workdir, user=effective.user, env=effective.env)
