"""Cache manager: a short-lived memory layer in front of the backing store.

:class:`CacheManager` wraps exactly one :class:`CacheStoreBase` and keeps the
three envelope values (image list, initialized flag, last-updated time) in a
small in-process layer for ``memory_ttl_seconds`` (10 seconds by default).
Bursts of page loads are then answered without touching Redis or the file
store at all.

Read Path
---------
- Each value has its own slot with its own fetch time.  A fresh slot is
  returned as-is.
- :meth:`CacheManager.get_cache_status` answers from memory only when all
  three slots are fresh; otherwise it reads all three from the store
  (concurrently when the store allows it).
- Reads never raise.  When the store fails, the last known value is used, or
  a default (``[]``, ``False``, ``None``) when nothing is known.

Write Path
----------
Records passed to ``init``, ``add_or_update`` and ``sync`` are normalized
before they reach the store.  Writes hit the backing store first and the
memory layer second, so the memory layer never shows a state the store has
not committed.  If the store raises, the memory layer is still updated to
what the caller asked for and the failure is re-raised as :class:`~photoshow.core.errors.CacheStoreError`.

Usage Example
-------------
    >>> manager = CacheManager(create_cache_store(config), memory_ttl_seconds=10)
    >>> status = await manager.get_cache_status(expire_minutes=30)
    >>> status.is_expired
    True
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from photoshow.core.cache_store import CacheStoreBase, patch_image, remove_image, upsert_image
from photoshow.core.errors import CacheStoreError, PhotoshowError
from photoshow.core.images import format_timestamp, normalize_image, normalize_images, utc_now
from photoshow.core.merge import merge_images

logger = logging.getLogger(__name__)


@dataclass
class CacheStatus:
    """Combined view of the cache returned by :meth:`CacheManager.get_cache_status`."""

    images: list[dict]
    is_initialized: bool
    is_expired: bool
    last_updated: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "images": self.images,
            "isInitialized": self.is_initialized,
            "isExpired": self.is_expired,
            "lastUpdated": format_timestamp(self.last_updated),
            "count": len(self.images),
        }


class _Slot:
    """One cached value and the monotonic time it was fetched."""

    __slots__ = ("value", "fetched_at")

    def __init__(self) -> None:
        self.value: Any = None
        self.fetched_at: float | None = None

    def set(self, value: Any, now: float) -> None:
        self.value = value
        self.fetched_at = now

    def clear(self) -> None:
        self.value = None
        self.fetched_at = None

    def is_fresh(self, now: float, ttl: float) -> bool:
        return self.fetched_at is not None and now - self.fetched_at < ttl


class CacheManager:
    """Front door to the image cache.

    Attributes:
        store (CacheStoreBase):
            The active backing store, chosen once at startup.
        memory_ttl_seconds (float):
            Lifetime of values held in the memory layer.
    """

    def __init__(
        self,
        store: CacheStoreBase,
        *,
        memory_ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Backing store to wrap.
            memory_ttl_seconds: Lifetime of the memory layer.
            clock: Monotonic clock for memory-layer freshness.
            now: Wall clock used to decide whether the cache is expired.
        """
        self.store = store
        self.memory_ttl_seconds = memory_ttl_seconds
        self._clock = clock
        self._now = now

        self._images = _Slot()
        self._initialized = _Slot()
        self._last_updated = _Slot()

    @property
    def cache_type(self) -> str:
        return self.store.name

    def invalidate(self) -> None:
        """Forget everything held in the memory layer."""
        self._images.clear()
        self._initialized.clear()
        self._last_updated.clear()

    # -- Reads --------------------------------------------------------------

    async def _read(self, slot: _Slot, fetch: Callable[[], Awaitable[Any]], default: Any) -> Any:
        now = self._clock()
        if slot.is_fresh(now, self.memory_ttl_seconds):
            return slot.value

        try:
            value = await fetch()
        except Exception as e:
            logger.warning(f"Cache read failed, serving last known value: {e}")
            return slot.value if slot.fetched_at is not None else default

        slot.set(value, now)
        return value

    async def get_all(self) -> list[dict]:
        images = await self._read(self._images, self.store.get_all, [])
        return images if isinstance(images, list) else []

    async def is_initialized(self) -> bool:
        return bool(await self._read(self._initialized, self.store.is_initialized, False))

    async def get_last_updated(self) -> datetime | None:
        return await self._read(self._last_updated, self.store.get_last_updated, None)

    def _is_expired(self, last_updated: datetime | None, expire_minutes: float) -> bool:
        if last_updated is None:
            return True
        return self._now() - last_updated > timedelta(minutes=expire_minutes)

    def _status_from_memory(self, expire_minutes: float) -> CacheStatus:
        images = self._images.value
        last_updated = self._last_updated.value
        return CacheStatus(
            images=images if isinstance(images, list) else [],
            is_initialized=bool(self._initialized.value),
            is_expired=self._is_expired(last_updated, expire_minutes),
            last_updated=last_updated,
        )

    async def get_cache_status(self, expire_minutes: float = 30) -> CacheStatus:
        """Return images, initialized flag, expiry and last update in one call.

        Args:
            expire_minutes: Age after which the cache counts as expired.

        Returns:
            CacheStatus for the current cache contents.  Never raises.
        """
        now = self._clock()
        ttl = self.memory_ttl_seconds
        slots = (self._images, self._initialized, self._last_updated)

        if all(slot.is_fresh(now, ttl) for slot in slots):
            return self._status_from_memory(expire_minutes)

        fetches = (self.store.get_all, self.store.is_initialized, self.store.get_last_updated)
        if self.store.supports_concurrent_reads:
            results = await asyncio.gather(
                *(fetch() for fetch in fetches), return_exceptions=True
            )
        else:
            results = []
            for fetch in fetches:
                try:
                    results.append(await fetch())
                except Exception as e:
                    results.append(e)

        for slot, result in zip(slots, results):
            if isinstance(result, BaseException):
                logger.warning(f"Cache status read failed, using last known value: {result}")
                continue
            slot.set(result, now)

        return self._status_from_memory(expire_minutes)

    # -- Writes -------------------------------------------------------------

    async def _write(self, operation: Awaitable[Any], apply: Callable[[Any], None]) -> Any:
        """Run a store write, then mirror it into the memory layer.

        ``apply`` receives the store's result, or ``None`` when the store
        raised; the memory layer is updated either way.

        Raises:
            CacheStoreError: If the backing store write failed.
        """
        try:
            result = await operation
        except PhotoshowError:
            apply(None)
            raise
        except Exception as e:
            apply(None)
            logger.error(f"Backing store write failed on the {self.cache_type} cache: {e}")
            raise CacheStoreError(str(e)) from e
        apply(result)
        return result

    def _set_images(self, images: list[dict]) -> None:
        self._images.set(images, self._clock())

    def _mark_written(self, initialized: bool | None = None) -> None:
        now = self._clock()
        self._last_updated.set(self._now(), now)
        if initialized is not None:
            self._initialized.set(initialized, now)

    async def init(self, images: list[dict]) -> None:
        images = normalize_images(list(images or []))

        def apply(_):
            self._set_images(images)
            self._mark_written(initialized=True)

        await self._write(self.store.init(images), apply)

    async def sync(self, local_images: Any, remote_images: Any) -> list[dict]:
        """Merge local and remote images into the backing store.

        Returns:
            The merged image list.
        """
        local_images = normalize_images(local_images)
        remote_images = normalize_images(remote_images)

        def apply(merged):
            if merged is None:
                merged = merge_images(local_images, remote_images)
            self._set_images(merged)
            self._mark_written(initialized=True)

        merged = await self._write(self.store.sync(local_images, remote_images), apply)
        return merged

    async def add_or_update(self, image: dict) -> None:
        normalized = normalize_image(image)
        if normalized is None:
            logger.warning(f"Ignoring non-record cache write: {image!r}")
            return
        image = normalized

        def apply(_):
            if self._images.fetched_at is not None:
                self._set_images(upsert_image(self._images.value or [], image))
            self._mark_written()

        await self._write(self.store.add_or_update(image), apply)
        logger.debug(f"Cached image {image.get('id')}")

    async def remove(self, image_id: str) -> bool:
        def apply(result):
            if self._images.fetched_at is not None:
                images, _removed = remove_image(self._images.value or [], image_id)
                self._set_images(images)
            if result is not False:
                self._mark_written()

        removed = await self._write(self.store.remove(image_id), apply)
        if removed:
            logger.info(f"Removed image {image_id} from cache")
        return removed

    async def update(self, image_id: str, fields: dict[str, Any]) -> bool:
        def apply(result):
            if self._images.fetched_at is not None:
                images, _updated = patch_image(self._images.value or [], image_id, fields)
                self._set_images(images)
            if result is not False:
                self._mark_written()

        return await self._write(self.store.update(image_id, fields), apply)

    async def clear(self) -> None:
        def apply(_):
            self._set_images([])
            self._mark_written(initialized=False)

        await self._write(self.store.clear(), apply)
        logger.info("Cache cleared")

    async def close(self) -> None:
        await self.store.close()
