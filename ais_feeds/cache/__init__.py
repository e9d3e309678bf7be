"""On-disk cache of compressed feed artifacts."""

from ais_feeds.cache.store import CacheEntry, CacheStore

__all__ = ["CacheEntry", "CacheStore"]
