import json
from pathlib import Path

import pytest

from boxforge import (
    AdapterFailure,
    CacheEntry,
    Engine,
    EngineConfig,
    Env,
    ExecutionFailure,
    FileLayerCache,
    From,
    MemoryLayerCache,
    Run,
    ScriptError,
    Skip,
    Tag,
    TagRecord,
    User,
    Workdir,
)
from boxforge.runtime import InMemoryRuntime
from boxforge.state import ImageConfig, Overlay


def _engine(runtime: InMemoryRuntime, cache: MemoryLayerCache, tmp_path: Path, **config: object) -> Engine:
    return Engine(runtime, cache=cache, config=EngineConfig(context_dir=tmp_path, **config))


def test_build_tags_final_image_and_replays_from_cache(
    engine: Engine,
    runtime: InMemoryRuntime,
    cache: MemoryLayerCache,
    tmp_path: Path,
) -> None:
    ops = [From("base"), Run("echo hi"), Tag("t1")]

    result = engine.execute(ops)

    run_layers = [layer for layer in result.layers if layer.kind == "run"]
    assert len(run_layers) == 1
    assert not run_layers[0].cached
    assert result.image == run_layers[0].image
    assert result.tags == [TagRecord(name="t1", image=result.image)]
    assert runtime.tags["t1"] == result.image
    assert runtime.count("exec") == 1
    assert result.cache_misses == 2
    assert result.cache_hits == 0

    replay = _engine(runtime, cache, tmp_path).execute(ops)

    assert replay.image == result.image
    assert replay.tags == result.tags
    assert runtime.count("exec") == 1
    assert runtime.count("resolve") == 1
    assert replay.cache_hits == 2
    assert replay.cache_misses == 0
    assert all(layer.cached for layer in replay.layers)
    assert len([r for r in replay.logs if r["operation"] == "cache_hit"]) == 2


def test_cached_and_uncached_builds_produce_the_same_image(engine: Engine, tmp_path: Path) -> None:
    ops = [From("base"), Env({"A": "1"}), Workdir("/src"), Run("touch built"), Tag("out")]
    first = engine.execute(ops)
    cached = engine.execute(ops)

    fresh_runtime = InMemoryRuntime()
    uncached = _engine(fresh_runtime, MemoryLayerCache(), tmp_path, use_cache=False).execute(ops)

    assert first.image == cached.image == uncached.image
    assert "/src/built" in fresh_runtime.files(uncached.image)


def test_base_image_config_seeds_the_build(cache: MemoryLayerCache, tmp_path: Path) -> None:
    runtime = InMemoryRuntime(base_configs={"debian": ImageConfig(workdir="/root", env={"PATH": "/bin"})})

    result = _engine(runtime, cache, tmp_path).execute([From("debian"), Run("pwd")])

    assert runtime.exec_calls[0].workdir == "/root"
    assert runtime.exec_calls[0].env == {"PATH": "/bin"}
    assert result.state.config.workdir == "/root"

    runtime.calls.clear()
    runtime.unreachable = True
    replay = _engine(runtime, cache, tmp_path).execute([From("debian"), Run("pwd")])

    assert replay.image == result.image
    assert replay.state.config == result.state.config
    assert runtime.calls == []


def test_cached_replay_from_disk_needs_no_runtime(tmp_path: Path) -> None:
    runtime = InMemoryRuntime(base_configs={"debian": ImageConfig(workdir="/srv", cmd=("bash",))})
    ops = [From("debian"), Run("echo hi"), Tag("t1")]
    first = Engine(runtime, cache=FileLayerCache(tmp_path / "cache")).execute(ops)
    runtime.calls.clear()

    replay = Engine(runtime, cache=FileLayerCache(tmp_path / "cache")).execute(ops)

    assert replay.image == first.image
    assert replay.state.config == ImageConfig(workdir="/srv", cmd=("bash",))
    assert runtime.calls == ["tag"]


def test_from_entry_without_config_falls_back_to_inspect(runtime: InMemoryRuntime, tmp_path: Path) -> None:
    class ImageOnlyCache(MemoryLayerCache):
        def store(self, key: str, image: str, *, kind: str = "", config: dict[str, object] | None = None) -> bool:
            return super().store(key, image, kind=kind)

    cache = ImageOnlyCache()
    _engine(runtime, cache, tmp_path).execute([From("base")])

    replay = _engine(runtime, cache, tmp_path).execute([From("base")])

    assert replay.state.config == ImageConfig()
    assert runtime.count("inspect") == 1


def test_workdir_block_restores_previous_workdir(engine: Engine, runtime: InMemoryRuntime) -> None:
    result = engine.execute([From("base"), Workdir("/x", body=(Run("pwd"),)), Run("pwd")])

    assert [call.output for call in runtime.exec_calls] == ["/x\n", "/\n"]
    assert result.state.config.workdir == "/"
    assert result.state.overlay == Overlay()


def test_plain_workdir_persists_in_image_config(engine: Engine, runtime: InMemoryRuntime) -> None:
    result = engine.execute([From("base"), Workdir("/srv"), Run("pwd")])

    assert runtime.exec_calls[0].workdir == "/srv"
    assert result.state.config.workdir == "/srv"
    assert runtime.images[result.image].config.workdir == "/srv"
    assert [layer.kind for layer in result.layers] == ["from", "workdir", "run"]


def test_plain_workdir_inside_workdir_block_is_scoped(engine: Engine, runtime: InMemoryRuntime) -> None:
    result = engine.execute(
        [From("base"), Workdir("/x", body=(Workdir("/y"), Run("pwd"))), Run("pwd")]
    )

    assert [call.workdir for call in runtime.exec_calls] == ["/y", "/"]
    assert result.state.config.workdir == "/"


def test_relative_workdir_is_rejected(engine: Engine) -> None:
    with pytest.raises(ScriptError) as excinfo:
        engine.execute([From("base"), Workdir("relative")])
    assert excinfo.value.context["path"] == "relative"


def test_user_block_applies_only_to_its_body(engine: Engine, runtime: InMemoryRuntime) -> None:
    result = engine.execute([From("base"), User("app", body=(Run("whoami"),)), Run("whoami")])

    assert [call.output for call in runtime.exec_calls] == ["app\n", "root\n"]
    assert result.state.config.user is None


def test_env_block_is_not_persisted(engine: Engine, runtime: InMemoryRuntime) -> None:
    result = engine.execute(
        [From("base"), Env({"MODE": "test"}, body=(Run("echo a"),)), Run("echo b")]
    )

    assert runtime.exec_calls[0].env == {"MODE": "test"}
    assert runtime.exec_calls[1].env == {}
    assert result.state.config.env == {}
    assert runtime.images[result.image].config.env == {}


def test_env_last_write_wins_across_cached_replays(
    engine: Engine,
    runtime: InMemoryRuntime,
    cache: MemoryLayerCache,
    tmp_path: Path,
) -> None:
    ops = [From("base"), Env({"A": "1", "B": "x"}), Env({"A": "2"}), Run("echo $A")]

    first = engine.execute(ops)
    replay = _engine(runtime, cache, tmp_path).execute(ops)

    assert runtime.exec_calls[-1].env == {"A": "2", "B": "x"}
    assert first.state.config.env == {"A": "2", "B": "x"}
    assert list(first.state.config.env) == ["A", "B"]
    assert replay.state.config.env == first.state.config.env
    assert replay.cache_hits == 4


def test_skip_discards_layers_but_keeps_tags(engine: Engine, runtime: InMemoryRuntime) -> None:
    result = engine.execute(
        [
            From("base"),
            Run("echo a"),
            Skip(body=(Run("echo b"), Env({"X": "1"}), Tag("inside"))),
            Tag("outside"),
        ]
    )

    before_skip = next(layer.image for layer in result.layers if layer.kind == "run")
    outside = result.tag_for("outside")
    inside = result.tag_for("inside")
    assert outside is not None and inside is not None
    assert outside.image == before_skip
    assert result.image == before_skip
    assert inside.image != before_skip
    assert runtime.tags["inside"] == inside.image
    assert result.state.config.env == {}
    assert [layer.skipped for layer in result.layers] == [False, False, True, True]
    assert engine.logger.records_for("skip_discard")[0]["extra"] == {"restored": before_skip}


def test_failure_inside_skip_aborts_with_balanced_scopes(tmp_path: Path) -> None:
    runtime = InMemoryRuntime(fail_commands={"make test": 2})
    engine = _engine(runtime, MemoryLayerCache(), tmp_path)

    with pytest.raises(ExecutionFailure) as excinfo:
        engine.execute([From("base"), Skip(body=(Run("make test"),)), Run("echo after")])

    assert excinfo.value.exit_code == 2
    assert excinfo.value.command == "make test"
    assert "failed" in excinfo.value.output
    assert engine.scopes.depth == 0
    assert engine.state.overlay == Overlay()
    assert runtime.containers == {}
    assert [call.argv[-1] for call in runtime.exec_calls] == ["make test"]
    failure = engine.logger.records_for("build_failed")[0]
    assert failure["level"] == "error"
    assert failure["extra"]["code"] == "E_EXECUTION"


def test_failed_run_is_not_cached(tmp_path: Path) -> None:
    runtime = InMemoryRuntime(fail_commands={"make": 1})
    cache = MemoryLayerCache()

    with pytest.raises(ExecutionFailure):
        _engine(runtime, cache, tmp_path).execute([From("base"), Run("make")])

    assert len(cache) == 1


def test_from_must_come_first_and_only_once(engine: Engine, runtime: InMemoryRuntime) -> None:
    with pytest.raises(ScriptError):
        engine.execute([])
    with pytest.raises(ScriptError):
        engine.execute([Run("echo hi")])
    assert runtime.calls == []

    with pytest.raises(ScriptError) as excinfo:
        engine.execute([From("a"), From("b")])
    assert excinfo.value.context["operation"] == "from"
    assert runtime.count("resolve") == 1


def test_empty_run_command_is_a_script_error(engine: Engine, runtime: InMemoryRuntime) -> None:
    with pytest.raises(ScriptError):
        engine.execute([From("base"), Run("")])
    assert runtime.count("exec") == 0


def test_adapter_failures_are_distinct_from_command_failures(tmp_path: Path) -> None:
    runtime = InMemoryRuntime(missing={"nope"})
    engine = _engine(runtime, MemoryLayerCache(), tmp_path)

    with pytest.raises(AdapterFailure) as missing:
        engine.execute([From("nope")])
    assert not isinstance(missing.value, ExecutionFailure)
    assert missing.value.code == "E_ADAPTER"

    runtime.unreachable = True
    with pytest.raises(AdapterFailure) as unreachable:
        engine.execute([From("base")])
    assert unreachable.value.context["operation"] == "resolve"


def test_losing_cache_writer_logs_and_continues(runtime: InMemoryRuntime, tmp_path: Path) -> None:
    class LosingCache:
        def lookup(self, key: str) -> CacheEntry | None:
            return None

        def store(self, key: str, image: str, *, kind: str = "", config: dict[str, object] | None = None) -> bool:
            return False

    engine = Engine(runtime, cache=LosingCache(), config=EngineConfig(context_dir=tmp_path))
    result = engine.execute([From("base"), Run("echo hi")])

    skipped = engine.logger.records_for("cache_store_skipped")
    assert [record["kind"] for record in skipped] == ["from", "run"]
    assert all(record["level"] == "warning" for record in skipped)
    assert result.cache_misses == 2


def test_write_report_summarizes_the_build(engine: Engine, tmp_path: Path) -> None:
    result = engine.execute([From("base"), Run("echo hi"), Tag("t1")])

    path = result.write_report(tmp_path / "reports" / "build.json")
    payload = json.loads(path.read_text(encoding="utf-8"))

    assert payload["image"] == result.image
    assert payload["cache"] == {"hits": 0, "misses": 2}
    assert payload["tags"] == [{"name": "t1", "image": result.image, "kind": "image", "path": None}]
    assert [layer["kind"] for layer in payload["layers"]] == ["from", "run"]
    assert payload["logs"][0]["operation"] == "build_start"
    assert payload["logs"][-1]["operation"] == "build_complete"
