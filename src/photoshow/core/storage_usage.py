"""Storage usage reporting against a configured quota.

Summing object sizes means listing the whole object store, so the result is
cached for ``ttl_seconds`` (5 minutes by default).  While one refresh is in
flight, other callers get the cached report marked ``refreshing`` instead of
starting a second listing.  If a refresh fails, the last good report is
served marked ``expired`` together with the error; only when nothing has ever
been computed does the failure reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from photoshow.core.images import format_timestamp, utc_now
from photoshow.core.object_store import ObjectStore

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class StorageUsageMonitor:
    """Cached object store usage report.

    Attributes:
        object_store (ObjectStore): Store whose objects are summed.
        quota_bytes (int): Storage quota the usage is measured against.
        warning_threshold (float): Usage fraction at which ``is_warning`` is set.
        ttl_seconds (float): How long a computed report is served from cache.
    """

    def __init__(
        self,
        object_store: ObjectStore,
        *,
        quota_bytes: int,
        warning_threshold: float = 0.8,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.object_store = object_store
        self.quota_bytes = quota_bytes
        self.warning_threshold = warning_threshold
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._report: dict[str, Any] | None = None
        self._computed_at: float | None = None
        self._refresh_task: asyncio.Task | None = None

    def _is_fresh(self) -> bool:
        return (
            self._computed_at is not None
            and self._clock() - self._computed_at < self.ttl_seconds
        )

    async def _compute(self) -> dict[str, Any]:
        objects = await self.object_store.list_objects()
        total_size = 0
        for obj in objects:
            try:
                total_size += int(obj.get("size") or 0)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring object with invalid size: {obj.get('key')}")

        usage_fraction = total_size / self.quota_bytes if self.quota_bytes else 0.0
        is_warning = usage_fraction >= self.warning_threshold
        if is_warning:
            logger.warning(
                f"Storage usage at {usage_fraction:.1%} of quota "
                f"({total_size / BYTES_PER_MB:.2f} MB)"
            )

        return {
            "object_count": len(objects),
            "total_size": total_size,
            "total_size_mb": round(total_size / BYTES_PER_MB, 2),
            "quota_bytes": self.quota_bytes,
            "usage_fraction": usage_fraction,
            "is_warning": is_warning,
            "last_updated": format_timestamp(utc_now()),
        }

    async def _refresh(self) -> dict[str, Any]:
        report = await self._compute()
        self._report = report
        self._computed_at = self._clock()
        return report

    async def get_usage(self, force_refresh: bool = False) -> dict[str, Any]:
        """Return the usage report, recomputing it when stale.

        Args:
            force_refresh: Recompute even if the cached report is fresh.

        Raises:
            ObjectStoreError: If the listing fails and no report was cached.
        """
        if not force_refresh and self._report is not None and self._is_fresh():
            return {**self._report, "from_cache": True}

        if self._refresh_task is not None and not self._refresh_task.done():
            if self._report is not None:
                return {**self._report, "from_cache": True, "refreshing": True}
            report = await asyncio.shield(self._refresh_task)
            return {**report, "from_cache": True}

        self._refresh_task = asyncio.create_task(self._refresh())
        try:
            report = await asyncio.shield(self._refresh_task)
        except Exception as e:
            if self._report is None:
                raise
            logger.error(f"Storage usage refresh failed, serving stale report: {e}")
            return {**self._report, "from_cache": True, "expired": True, "error": str(e)}

        return {**report, "from_cache": False}
