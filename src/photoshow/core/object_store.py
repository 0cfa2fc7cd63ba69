"""Object store interface and the directory-backed default implementation.

The cache core only needs three operations from the object store that holds
image bytes, described by the :class:`ObjectStore` protocol.  Any S3-style
bucket client can be plugged in by implementing them.

:class:`LocalObjectStore` keeps objects as files in one directory and their
metadata in a single JSON index beside that directory.  Because files can also be
removed by hand, every listing reconciles the index against the directory:

- if the index is missing or invalid, the store is empty
- an index entry whose file no longer exists is dropped
- the cleaned index is written back so later reads agree

Object metadata is stored as strings, the way bucket metadata headers are, so
tags arrive JSON-encoded and are decoded by the normalization layer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from photoshow.core.errors import ObjectStoreError
from photoshow.core.images import utc_now

logger = logging.getLogger(__name__)


@runtime_checkable
class ObjectStore(Protocol):
    """Operations the cache core needs from an object store."""

    async def list_objects(self) -> list[dict]:
        """Return ``key``/``url``/``size``/``last_modified``/``metadata`` entries.

        Raises:
            ObjectStoreError: If the listing fails.
        """
        ...

    async def put_object(self, key: str, data: bytes, metadata: dict[str, str]) -> dict:
        """Store ``data`` under ``key`` and return its listing entry."""
        ...

    async def delete_object(self, key: str) -> bool:
        """Delete ``key``.  Returns False if it did not exist."""
        ...


def _stringify_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    result = {}
    for key, value in metadata.items():
        if value is None:
            continue
        result[key] = value if isinstance(value, str) else json.dumps(value)
    return result


class LocalObjectStore:
    """Object store kept in a local directory.

    The metadata index lives next to the directory, not inside it, so it is
    never served as an object and cannot be deleted through the object API.

    Attributes:
        directory (Path): Directory holding the object files.
        index_path (Path): Location of the metadata index
            (``<directory>.objects.json`` by default).
        base_url (str): URL prefix under which the files are served.
    """

    def __init__(
        self,
        directory: Path,
        *,
        index_path: Path | None = None,
        base_url: str = "/static/gallery",
    ) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        if index_path is None:
            index_path = self.directory.parent / f"{self.directory.name}.objects.json"
        self.index_path = Path(index_path)
        self.base_url = base_url.rstrip("/")

        # Index updates are read-modify-write and run in worker threads.
        self._lock = asyncio.Lock()

    def _object_path(self, key: str) -> Path:
        path = (self.directory / key).resolve()
        if path.parent != self.directory.resolve():
            raise ObjectStoreError(f"Invalid object key: {key!r}")
        if path == self.index_path.resolve():
            raise ObjectStoreError(f"Object key is reserved for the index: {key!r}")
        return path

    def _load_index(self) -> list[dict]:
        if not self.index_path.exists():
            return []
        try:
            with open(self.index_path, encoding="utf-8") as handle:
                entries = json.load(handle)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable object index {self.index_path}: {e}")
            return []
        return entries if isinstance(entries, list) else []

    def _save_index(self, entries: list[dict]) -> None:
        try:
            with open(self.index_path, "w", encoding="utf-8") as handle:
                json.dump(entries, handle, indent=2)
        except OSError as e:
            raise ObjectStoreError(f"Failed to write object index: {e}") from e

    def _reconciled_entries(self) -> list[dict]:
        raw_entries = self._load_index()
        cleaned = [
            entry
            for entry in raw_entries
            if isinstance(entry, dict)
            and entry.get("key")
            and (self.directory / entry["key"]).exists()
        ]
        if cleaned != raw_entries:
            logger.info(f"Pruned {len(raw_entries) - len(cleaned)} stale object index entries")
            self._save_index(cleaned)
        return cleaned

    def _listing_entry(self, entry: dict) -> dict:
        key = entry["key"]
        return {
            "key": key,
            "url": f"{self.base_url}/{key}",
            "size": entry.get("size", 0),
            "last_modified": entry.get("last_modified"),
            "metadata": dict(entry.get("metadata") or {}),
        }

    def _list(self) -> list[dict]:
        return [self._listing_entry(entry) for entry in self._reconciled_entries()]

    def _put(self, key: str, data: bytes, metadata: dict[str, Any]) -> dict:
        path = self._object_path(key)
        try:
            path.write_bytes(data)
        except OSError as e:
            raise ObjectStoreError(f"Failed to store object {key}: {e}") from e

        entry = {
            "key": key,
            "size": len(data),
            "last_modified": utc_now().isoformat(),
            "metadata": _stringify_metadata(metadata),
        }
        entries = [e for e in self._reconciled_entries() if e.get("key") != key]
        entries.insert(0, entry)
        self._save_index(entries)

        logger.info(f"Stored object {key} ({len(data)} bytes)")
        return self._listing_entry(entry)

    def _delete(self, key: str) -> bool:
        path = self._object_path(key)
        existed = path.exists()
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ObjectStoreError(f"Failed to delete object {key}: {e}") from e

        entries = self._load_index()
        remaining = [e for e in entries if not (isinstance(e, dict) and e.get("key") == key)]
        if remaining != entries:
            self._save_index(remaining)
            existed = True

        if existed:
            logger.info(f"Deleted object {key}")
        return existed

    async def list_objects(self) -> list[dict]:
        async with self._lock:
            return await asyncio.to_thread(self._list)

    async def put_object(self, key: str, data: bytes, metadata: dict[str, Any]) -> dict:
        async with self._lock:
            return await asyncio.to_thread(self._put, key, data, metadata)

    async def delete_object(self, key: str) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._delete, key)
