import pytest

from boxforge import Engine, EngineConfig
from boxforge.errors import (
    AdapterFailure,
    BuildCancelled,
    CacheConsistencyError,
    ErrorCode,
    ExecutionFailure,
    ScriptError,
)
from boxforge.runtime import InMemoryRuntime
from boxforge.state import BuildState, ImageConfig, Overlay


def test_error_codes_are_stable_and_machine_readable() -> None:
    errors = [
        ScriptError("bad script"),
        ExecutionFailure("failed", command="false", exit_code=1),
        AdapterFailure("daemon down"),
        CacheConsistencyError("divergent"),
        BuildCancelled("interrupted"),
    ]
    assert [error.code for error in errors] == [
        ErrorCode.SCRIPT.value,
        ErrorCode.EXECUTION.value,
        ErrorCode.ADAPTER.value,
        ErrorCode.CACHE_CONSISTENCY.value,
        ErrorCode.CANCELLED.value,
    ]


def test_execution_failure_carries_command_exit_code_and_output() -> None:
    error = ExecutionFailure("failed", command="make test", exit_code=2, output="boom\n")

    assert error.command == "make test"
    assert error.exit_code == 2
    assert error.output == "boom\n"
    payload = error.to_dict()
    assert payload["code"] == "E_EXECUTION"
    assert payload["context"] == {"command": "make test", "exit_code": "2", "output": "boom\n"}


def test_error_str_includes_hint_and_context() -> None:
    error = ScriptError("nope", hint="try again", context={"operation": "from", "empty": ""})

    rendered = str(error)
    assert "nope" in rendered
    assert "Hint: try again" in rendered
    assert "operation: from" in rendered
    assert "empty" not in rendered


def test_effective_context_prefers_overlay_values() -> None:
    state = BuildState(
        image="img",
        config=ImageConfig(workdir="/srv", user="app", env={"A": "1", "B": "2"}),
        overlay=Overlay(workdir="/tmp", env={"B": "3"}, inside="/opt"),
    )

    effective = state.effective()

    assert effective.workdir == "/tmp"
    assert effective.user == "app"
    assert effective.env == {"A": "1", "B": "3"}
    assert effective.copy_root == "/opt"


def test_metadata_pending_tracks_exec_config_changes() -> None:
    state = BuildState(image="img")
    state.mark_committed()
    assert not state.metadata_pending()

    state.config = ImageConfig(cmd=("/bin/true",))
    assert state.metadata_pending()


def test_engine_config_is_validated() -> None:
    with pytest.raises(ScriptError):
        Engine(InMemoryRuntime(), config=EngineConfig(hook_workers=0))
    with pytest.raises(ScriptError):
        Engine(InMemoryRuntime(), config=EngineConfig(exec_timeout=0))
