"""Background refresh of the image cache from the object store.

Reading the gallery must stay fast even when the cache is cold or expired, so
page loads never wait for the object store listing.  Instead,
:meth:`CacheRefresher.read_through` returns whatever the cache holds right now
and, when that data is missing or expired, starts a refresh task on the event
loop.  The next request sees the refreshed data.

At most one refresh runs at a time.  Triggers that arrive while a refresh is
in flight are collapsed into it, and their callers get the current (possibly
stale) data immediately.  The in-flight state is exposed through
:attr:`CacheRefresher.status` rather than hidden in a flag.  Callers that
need the result use :meth:`CacheRefresher.refresh_now`, which joins the
in-flight refresh instead of starting a second one.

A refresh keeps locally-originated records (``is_cloud_image`` false, for
example images generated by this process) and merges them with the object
store listing, so records deleted from the store disappear while local ones
survive.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from photoshow.core.cache_manager import CacheManager, CacheStatus
from photoshow.core.images import format_timestamp, from_storage_object, utc_now
from photoshow.core.object_store import ObjectStore

logger = logging.getLogger(__name__)


class CacheRefresher:
    """Rebuilds the cache from the object store, one refresh at a time."""

    def __init__(
        self,
        manager: CacheManager,
        object_store: ObjectStore,
        *,
        expire_minutes: float = 30,
    ) -> None:
        """Initialize the refresher.

        Args:
            manager: Cache manager to write refreshed data through.
            object_store: Authoritative source of cloud images.
            expire_minutes: Age after which cached data triggers a refresh.
        """
        self.manager = manager
        self.object_store = object_store
        self.expire_minutes = expire_minutes

        self._task: asyncio.Task | None = None
        self.last_refresh_at: datetime | None = None
        self.last_error: str | None = None
        self.refresh_count = 0

    @property
    def is_refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def status(self) -> dict[str, Any]:
        return {
            "isRefreshing": self.is_refreshing,
            "lastRefreshAt": format_timestamp(self.last_refresh_at),
            "lastError": self.last_error,
            "refreshCount": self.refresh_count,
        }

    async def refresh(self) -> list[dict]:
        """Rebuild the cache from the object store listing.

        This runs unconditionally; :meth:`refresh_now` and :meth:`trigger`
        go through the single in-flight task.

        Returns:
            The merged image list now held by the cache.

        Raises:
            ObjectStoreError: If the object store cannot be listed.
        """
        objects = await self.object_store.list_objects()
        if not isinstance(objects, list):
            logger.warning("Object store listing is not a list, treating it as empty")
            objects = []

        remote = [record for record in map(from_storage_object, objects) if record is not None]
        cached = await self.manager.get_all()
        local = [image for image in cached if not image.get("is_cloud_image")]

        merged = await self.manager.sync(local, remote)

        self.refresh_count += 1
        self.last_refresh_at = utc_now()
        self.last_error = None
        logger.info(
            f"Cache refreshed: {len(remote)} cloud and {len(local)} local images, "
            f"{len(merged)} after merge"
        )
        return merged

    def _record_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.last_error = str(error)
            logger.error(f"Cache refresh failed: {error}")

    def _start(self) -> asyncio.Task:
        """Return the in-flight refresh task, starting one if none is running."""
        if not self.is_refreshing:
            self._task = asyncio.create_task(self.refresh())
            self._task.add_done_callback(self._record_outcome)
        return self._task

    def trigger(self) -> bool:
        """Start a background refresh unless one is already running.

        Returns:
            True if a new refresh task was started.
        """
        if self.is_refreshing:
            logger.debug("Cache refresh already in flight, not starting another")
            return False

        self._start()
        return True

    async def refresh_now(self) -> list[dict]:
        """Refresh and wait for the result, joining a refresh already in flight.

        Returns:
            The merged image list produced by the refresh.

        Raises:
            ObjectStoreError: If the object store cannot be listed.
        """
        return await asyncio.shield(self._start())

    async def read_through(self) -> CacheStatus:
        """Return the current cache status, refreshing in the background if stale."""
        status = await self.manager.get_cache_status(self.expire_minutes)
        if not status.is_initialized or status.is_expired:
            if self.trigger():
                logger.info("Cache is cold or expired, refreshing in the background")
        return status

    async def wait(self) -> None:
        """Wait for the in-flight refresh, if any, to finish.

        Failures are recorded in :attr:`status` rather than raised here.
        """
        if self._task is not None:
            await asyncio.wait({self._task})

    async def shutdown(self) -> None:
        """Cancel the in-flight refresh, if any."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
