"""Host build-context helpers for ``copy`` sources."""

from __future__ import annotations

import fnmatch
import hashlib
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from boxforge.errors import ScriptError


def resolve_source(context_dir: Path, source: str) -> Path:
    path = (context_dir / source).resolve()
    if not path.exists():
        raise ScriptError(
            "Copy source does not exist.",
            hint="Copy sources are resolved relative to the build context directory.",
            context={"operation": "copy", "source": source, "context_dir": str(context_dir)},
        )
    return path


def read_ignore_file(path: Path) -> tuple[str, ...]:
    """Parse an ignore file: one glob per line, ``#`` starts a comment."""
    patterns: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            patterns.append(stripped.rstrip("/"))
    return tuple(patterns)


def is_ignored(relative: str, patterns: tuple[str, ...]) -> bool:
    name = relative.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(relative, p) or fnmatch.fnmatch(name, p) for p in patterns)


def iter_files(root: Path, patterns: tuple[str, ...] = ()) -> Iterator[tuple[str, Path]]:
    """Yield ``(relative_posix_path, path)`` for kept files in sorted order."""
    if root.is_file():
        yield root.name, root
        return
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        if any(is_ignored(part, patterns) for part in _prefixes(relative)):
            continue
        if path.is_file():
            yield relative, path


def content_digest(root: Path, patterns: tuple[str, ...] = ()) -> str:
    digest = hashlib.sha256()
    for relative, path in iter_files(root, patterns):
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        digest.update(oct(path.stat().st_mode & 0o7777).encode("ascii"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(path.read_bytes()).digest())
    return digest.hexdigest()


@contextmanager
def staged_source(root: Path, patterns: tuple[str, ...]) -> Iterator[Path]:
    """Yield a path holding *root* without ignored entries."""
    if not patterns or root.is_file():
        yield root
        return
    staging = Path(tempfile.mkdtemp(prefix="boxforge-copy-"))
    try:
        for relative, path in iter_files(root, patterns):
            destination = staging / relative
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, destination)
        yield staging
    finally:
        shutil.rmtree(staging, ignore_errors=True)


def _prefixes(relative: str) -> list[str]:
    parts = relative.split("/")
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]
