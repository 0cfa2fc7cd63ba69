"""In-memory backing store with a JSON snapshot for warm restarts.

The envelope lives in process memory and is authoritative for the lifetime of
the process.  Each :meth:`FileCacheStore.sync` also writes the envelope to a
``cache.json`` snapshot, which is read back when the store is created so a
restarted server can answer requests before its first refresh completes.

The snapshot is advisory:

- failure to write it is logged and otherwise ignored
- a missing, empty or invalid snapshot starts the store empty
- records are normalized on load, so older camelCase snapshots still work
- only one process should write a given snapshot file

Snapshot format::

    {
      "images": [...],
      "lastUpdated": "2024-01-02T10:00:00+00:00",
      "isInitialized": true
    }

This store cannot keep exact counters, so the generation limit service
reports a count of zero while it is active.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from photoshow.core.cache_store import CacheStoreBase, patch_image, remove_image, upsert_image
from photoshow.core.images import format_timestamp, normalize_images, parse_timestamp, utc_now
from photoshow.core.merge import merge_images

logger = logging.getLogger(__name__)


class FileCacheStore(CacheStoreBase):
    """Backing store kept in process memory, snapshotted to a JSON file."""

    name = "file"
    supports_counters = False
    supports_concurrent_reads = False

    def __init__(self, snapshot_path: Path | None = None) -> None:
        """Initialize the store and warm-start from the snapshot if present.

        Args:
            snapshot_path: Location of ``cache.json``.  ``None`` disables
                snapshots entirely.
        """
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None

        self._images: list[dict] = []
        self._last_updated: datetime | None = None
        self._initialized = False

        self._load_snapshot()

    def _load_snapshot(self) -> None:
        if self.snapshot_path is None or not self.snapshot_path.exists():
            return

        try:
            with open(self.snapshot_path, encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache snapshot {self.snapshot_path}: {e}")
            return

        if not isinstance(data, dict) or not isinstance(data.get("images"), list):
            logger.warning(f"Ignoring malformed cache snapshot {self.snapshot_path}")
            return

        self._images = normalize_images(data["images"])
        self._last_updated = parse_timestamp(data.get("lastUpdated"))
        self._initialized = bool(data.get("isInitialized"))
        logger.info(f"Loaded {len(self._images)} images from cache snapshot {self.snapshot_path}")

    def _write_snapshot(self) -> bool:
        """Write the envelope to the snapshot file.

        Returns:
            True if the snapshot was written.
        """
        if self.snapshot_path is None:
            return False

        payload = {
            "images": self._images,
            "lastUpdated": format_timestamp(self._last_updated),
            "isInitialized": self._initialized,
        }
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.snapshot_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, default=str)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write cache snapshot {self.snapshot_path}: {e}")
            return False

        logger.debug(f"Cache snapshot written to {self.snapshot_path}")
        return True

    def _touch(self) -> None:
        self._last_updated = utc_now()

    async def init(self, images: list[dict]) -> None:
        self._images = list(images or [])
        self._initialized = True
        self._touch()
        logger.info(f"File cache initialized with {len(self._images)} images")

    async def get_all(self) -> list[dict]:
        return self._images

    async def is_initialized(self) -> bool:
        return self._initialized

    async def get_last_updated(self) -> datetime | None:
        return self._last_updated

    async def add_or_update(self, image: dict) -> None:
        self._images = upsert_image(self._images, image)
        self._touch()

    async def remove(self, image_id: str) -> bool:
        self._images, removed = remove_image(self._images, image_id)
        if removed:
            self._touch()
        return removed

    async def update(self, image_id: str, fields: dict[str, Any]) -> bool:
        self._images, updated = patch_image(self._images, image_id, fields)
        if updated:
            self._touch()
        return updated

    async def clear(self) -> None:
        self._images = []
        self._initialized = False
        self._touch()
        logger.info("File cache cleared")

    async def sync(self, local_images: Any, remote_images: Any) -> list[dict]:
        merged = merge_images(local_images, remote_images)
        await self.init(merged)
        await asyncio.to_thread(self._write_snapshot)
        return merged

    async def get_counter(self, key: str) -> int:
        logger.warning(
            f"File cache cannot keep exact counters, reporting 0 for {key}; "
            "use the redis cache type for generation limits"
        )
        return 0

    async def increment_counter(self, key: str, ttl_seconds: int) -> int:
        logger.warning(
            f"File cache cannot keep exact counters, ignoring increment of {key}; "
            "use the redis cache type for generation limits"
        )
        return 0
