"""Backing store implementations for the image cache."""

from photoshow.core.stores.file_store import FileCacheStore
from photoshow.core.stores.redis_store import MemoryMirror, RedisCacheStore, RedisConnection

__all__ = [
    "FileCacheStore",
    "MemoryMirror",
    "RedisCacheStore",
    "RedisConnection",
]
