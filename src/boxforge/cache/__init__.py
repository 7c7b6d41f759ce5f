"""Layer cache APIs."""

from .keys import CacheKeyInput, cache_key
from .store import CacheEntry, FileLayerCache, LayerCache, MemoryLayerCache

__all__ = ["CacheEntry", "CacheKeyInput", "FileLayerCache", "LayerCache", "MemoryLayerCache", "cache_key"]
