"""Layer cache stores mapping cache keys to image references."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from boxforge.errors import CacheConsistencyError


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Image reference plus, for `from` layers, the base image config payload."""

    image: str
    config: dict[str, object] | None = None


class LayerCache(Protocol):
    def lookup(self, key: str) -> CacheEntry | None:
        """Return the entry stored under *key*, if any."""

    def store(
        self,
        key: str,
        image: str,
        *,
        kind: str = "",
        config: dict[str, object] | None = None,
    ) -> bool:
        """Record *image* under *key*; return False when an existing entry was kept."""


class MemoryLayerCache:
    """Process-local cache; entries live as long as the instance."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def store(
        self,
        key: str,
        image: str,
        *,
        kind: str = "",
        config: dict[str, object] | None = None,
    ) -> bool:
        with self._lock:
            existing = self._entries.get(key)
            if existing is None:
                self._entries[key] = CacheEntry(image=image, config=config)
                return True
        if existing.image != image:
            raise _divergent(key, existing.image, image, kind)
        return False


class FileLayerCache:
    """Persisted cache with one JSON entry per key under *root*.

    Entries are created atomically by hard-linking a fully written temporary
    file into place, so concurrent build processes sharing the directory have
    at most one winning writer per key. Keys are host independent.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._written: dict[str, str] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def entry_path(self, key: str) -> Path:
        return self.root / key[:2] / f"{key}.json"

    def lookup(self, key: str) -> CacheEntry | None:
        path = self.entry_path(key)
        if not path.exists():
            return None
        entry = self._read_entry(path)
        image = entry.get("image")
        config = entry.get("config")
        if (
            entry.get("key") != key
            or not isinstance(image, str)
            or not image
            or not (config is None or isinstance(config, dict))
        ):
            raise CacheConsistencyError(
                "Cache entry does not match its key.",
                hint="Remove the cache entry and rebuild.",
                context={"operation": "cache_lookup", "key": key, "path": str(path)},
            )
        return CacheEntry(image=image, config=config)

    def store(
        self,
        key: str,
        image: str,
        *,
        kind: str = "",
        config: dict[str, object] | None = None,
    ) -> bool:
        with self._lock_for(key):
            previous = self._written.get(key)
            if previous is not None:
                if previous != image:
                    raise _divergent(key, previous, image, kind)
                return False

            path = self.entry_path(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(
                {"key": key, "image": image, "kind": kind, "config": config},
                sort_keys=True,
            ) + "\n"
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                try:
                    os.link(tmp_name, path)
                except FileExistsError:
                    # Another writer got there first; its entry stands.
                    return False
            finally:
                os.unlink(tmp_name)
            self._written[key] = image
            return True

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _read_entry(self, path: Path) -> dict[str, object]:
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CacheConsistencyError(
                "Cache entry is not valid JSON.",
                hint="Remove the cache entry and rebuild.",
                context={"operation": "cache_lookup", "path": str(path)},
            ) from exc
        if not isinstance(parsed, dict):
            raise CacheConsistencyError(
                "Cache entry has invalid structure.",
                hint="Remove the cache entry and rebuild.",
                context={"operation": "cache_lookup", "path": str(path)},
            )
        return parsed


def _divergent(key: str, existing: str, image: str, kind: str) -> CacheConsistencyError:
    return CacheConsistencyError(
        "Cache key already maps to a different image.",
        hint="A non-deterministic operation was treated as cacheable.",
        context={
            "operation": "cache_store",
            "key": key,
            "kind": kind,
            "existing": existing,
            "image": image,
        },
    )
