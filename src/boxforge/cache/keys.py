"""Cache key derivation."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import cbor2


@dataclass(frozen=True, slots=True)
class CacheKeyInput:
    image: str | None
    kind: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    overlay: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)


def cache_key(inputs: CacheKeyInput) -> str:
    # Canonical CBOR sorts map keys, so env ordering never changes the key.
    encoded = cbor2.dumps(_to_payload(inputs), canonical=True)
    return hashlib.sha256(encoded).hexdigest()


def _to_payload(inputs: CacheKeyInput) -> dict[str, Any]:
    return {
        "image": inputs.image or "",
        "kind": inputs.kind,
        "arguments": _plain(inputs.arguments),
        "overlay": _plain(inputs.overlay),
        "metadata": _plain(inputs.metadata),
    }


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value
