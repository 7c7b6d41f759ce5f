"""Public package entrypoint for the boxforge image build engine."""

from .cache import CacheEntry, FileLayerCache, LayerCache, MemoryLayerCache, cache_key
from .config import EngineConfig
from .engine import Engine
from .errors import (
    AdapterFailure,
    BoxError,
    BuildCancelled,
    CacheConsistencyError,
    ErrorCode,
    ExecutionFailure,
    ScriptError,
)
from .observability import StructuredLogger
from .operations import (
    After,
    Copy,
    Env,
    Flatten,
    From,
    HostEnv,
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
)
from .recipe import Recipe
from .runtime import CancelToken, ContainerCliRuntime, InMemoryRuntime, RuntimeAdapter, get_runtime
from .signals import interrupt_on_signal
from .state import BuildResult, BuildState, ImageConfig, LayerRecord, TagRecord

__all__ = [
    "AdapterFailure",
    "After",
    "BoxError",
    "BuildCancelled",
    "BuildResult",
    "BuildState",
    "CacheConsistencyError",
    "CacheEntry",
    "CancelToken",
    "ContainerCliRuntime",
    "Copy",
    "Engine",
    "EngineConfig",
    "Env",
    "ErrorCode",
    "ExecutionFailure",
    "FileLayerCache",
    "Flatten",
    "From",
    "HostEnv",
    "ImageConfig",
    "InMemoryRuntime",
    "Inside",
    "Label",
    "LayerCache",
    "LayerRecord",
    "MemoryLayerCache",
    "Operation",
    "Recipe",
    "Run",
    "RuntimeAdapter",
    "Save",
    "ScriptError",
    "SetExec",
    "Skip",
    "StructuredLogger",
    "Tag",
    "TagRecord",
    "User",
    "Workdir",
    "cache_key",
    "get_runtime",
    "interrupt_on_signal",
]
