"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from boxforge import Engine, EngineConfig, MemoryLayerCache
from boxforge.runtime import InMemoryRuntime


@pytest.fixture
def runtime() -> InMemoryRuntime:
    """Provide an in-memory runtime for tests that execute builds."""
    return InMemoryRuntime()


@pytest.fixture
def cache() -> MemoryLayerCache:
    return MemoryLayerCache()


@pytest.fixture
def host_env() -> dict[str, str]:
    return {}


@pytest.fixture
def engine(
    runtime: InMemoryRuntime,
    cache: MemoryLayerCache,
    tmp_path: Path,
    host_env: dict[str, str],
) -> Engine:
    return Engine(
        runtime,
        cache=cache,
        config=EngineConfig(context_dir=tmp_path),
        getenv=host_env.get,
    )
