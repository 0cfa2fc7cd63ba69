"""Backing store contract for the image cache.

This module defines :class:`CacheStoreBase`, the contract shared by every
backing store, and :func:`create_cache_store`, the only place where the
configured backend is chosen.

Backing Store Pattern
---------------------
A backing store keeps one *envelope* (the image list, the time of the last
write and an ``is_initialized`` flag) plus a set of integer counters used by
the generation limit service.  Two implementations exist:

- :class:`~photoshow.core.stores.file_store.FileCacheStore`: process memory
  with a best-effort JSON snapshot for warm restarts.  No exact counters.
- :class:`~photoshow.core.stores.redis_store.RedisCacheStore`: a Redis server
  shared between processes, with an in-process mirror used whenever Redis is
  unreachable.

Every operation is a coroutine so callers never need to know which backend is
active.

Usage Example
-------------
    >>> from photoshow.core.config import config
    >>> from photoshow.core.cache_store import create_cache_store
    >>>
    >>> store = create_cache_store(config)
    >>> await store.init([{"id": "a.png", "created_at": "2024-01-02"}])
    >>> await store.is_initialized()
    True

See Also
--------
- CacheManager: memory layer placed in front of the active store
- merge_images: merge rules applied by :meth:`CacheStoreBase.sync`
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

from photoshow.core.merge import merge_images

if TYPE_CHECKING:
    from photoshow.core.config import PhotoshowConfig

logger = logging.getLogger(__name__)


def upsert_image(images: list[dict], image: dict) -> list[dict]:
    """Return a copy of ``images`` with ``image`` replacing the record sharing its id.

    The record is appended when no record with the same ``id`` exists.
    """
    updated = list(images)
    for index, existing in enumerate(updated):
        if isinstance(existing, dict) and existing.get("id") == image.get("id"):
            updated[index] = image
            return updated
    updated.append(image)
    return updated


def remove_image(images: list[dict], image_id: str) -> tuple[list[dict], bool]:
    """Return ``images`` without records matching ``image_id`` and whether any were removed."""
    remaining = [
        image for image in images if not (isinstance(image, dict) and image.get("id") == image_id)
    ]
    return remaining, len(remaining) != len(images)


def patch_image(images: list[dict], image_id: str, fields: dict) -> tuple[list[dict], bool]:
    """Shallow-merge ``fields`` onto the record matching ``image_id``.

    Returns:
        Tuple of (new image list, whether a record was updated).
    """
    updated = list(images)
    for index, existing in enumerate(updated):
        if isinstance(existing, dict) and existing.get("id") == image_id:
            updated[index] = {**existing, **fields}
            return updated, True
    return updated, False


class CacheStoreBase(ABC):
    """Abstract base class for image cache backing stores.

    Attributes
    ----------
    name : str
        Backend identifier, matching ``PhotoshowConfig.cache_type``
    supports_counters : bool
        Whether :meth:`get_counter` and :meth:`increment_counter` keep exact
        counts
    supports_concurrent_reads : bool
        Whether the three envelope reads may be issued concurrently

    Notes
    -----
    - ``get_all`` never returns ``None``; an uninitialized store is empty.
    - ``is_initialized`` only becomes ``False`` again through :meth:`clear`.
    - ``add_or_update`` replaces a record entirely, ``update`` merges fields.
    """

    name: str = "base"
    supports_counters: bool = False
    supports_concurrent_reads: bool = False

    @abstractmethod
    async def init(self, images: list[dict]) -> None:
        """Replace the stored image list and mark the store initialized."""

    @abstractmethod
    async def get_all(self) -> list[dict]:
        """Return the stored image list (empty if never initialized)."""

    @abstractmethod
    async def is_initialized(self) -> bool:
        """Return whether the store has been populated since the last clear."""

    @abstractmethod
    async def get_last_updated(self) -> datetime | None:
        """Return the time of the last write, or ``None``."""

    @abstractmethod
    async def add_or_update(self, image: dict) -> None:
        """Insert ``image`` or replace the record with the same ``id``."""

    @abstractmethod
    async def remove(self, image_id: str) -> bool:
        """Remove the record with ``image_id``.

        Returns:
            True if a record was removed.
        """

    @abstractmethod
    async def update(self, image_id: str, fields: dict[str, Any]) -> bool:
        """Shallow-merge ``fields`` onto the record with ``image_id``.

        Returns:
            False if no such record exists.
        """

    @abstractmethod
    async def clear(self) -> None:
        """Empty the image list and reset ``is_initialized``."""

    @abstractmethod
    async def get_counter(self, key: str) -> int:
        """Return the value of counter ``key`` (0 when absent)."""

    @abstractmethod
    async def increment_counter(self, key: str, ttl_seconds: int) -> int:
        """Increment counter ``key`` and (re)apply its expiry.

        Returns:
            The counter value after the increment.
        """

    async def sync(self, local_images: Any, remote_images: Any) -> list[dict]:
        """Merge local and remote images and store the result.

        Args:
            local_images: Locally known records (local provenance wins)
            remote_images: Records from the authoritative remote source

        Returns:
            The merged list that was stored.
        """
        merged = merge_images(local_images, remote_images)
        await self.init(merged)
        logger.info(f"{self.name} cache synced with {len(merged)} images")
        return merged

    async def close(self) -> None:
        """Release backend resources.  No-op by default."""


def create_cache_store(config: PhotoshowConfig) -> CacheStoreBase:
    """Create the backing store selected by ``config.cache_type``.

    Args:
        config: Application configuration

    Returns:
        A new backing store instance.

    Raises:
        ValueError: If the configured cache type is unknown.
    """
    # Imported here because the store modules depend on this one.
    from photoshow.core.stores.file_store import FileCacheStore
    from photoshow.core.stores.redis_store import RedisCacheStore

    if config.cache_type == "redis":
        store: CacheStoreBase = RedisCacheStore.from_config(config)
    elif config.cache_type == "file":
        store = FileCacheStore(snapshot_path=config.snapshot_path)
    else:
        raise ValueError(f"Unknown cache type: {config.cache_type}")

    logger.info(f"Using '{store.name}' cache backend")
    return store
