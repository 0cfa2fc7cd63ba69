"""Merge and deduplicate image lists from local and remote sources.

The cache is rebuilt from two lists: records the server already knows about
locally (for example images generated by this process that are not yet visible
in the object store listing) and the authoritative listing of the object
store.  Both may describe the same underlying image under different
identifiers, so :func:`merge_images` decides which records survive.

Rules
-----
- Local records always win.  Every local record is kept, except a later local
  record repeating a dedup key already emitted by an earlier one.
- A remote record is kept only when its dedup key (``id``, then
  ``cloud_file_name``, then ``file_name``) matches none of the identifiers
  recorded for local records or for remote records accepted before it.
- Remote records without any identifier are dropped because they cannot be
  deduplicated.  Local records without identifiers are kept.
- The result is ordered by ``created_at``, newest first.  Records whose
  timestamp cannot be parsed keep their relative order after the dated ones.

Both canonical (snake_case) and legacy camelCase field names are accepted so
that caches written before normalization existed still merge correctly.
"""

from __future__ import annotations

import logging
from typing import Any

from photoshow.core.images import parse_timestamp

logger = logging.getLogger(__name__)


def _field(record: dict, *names: str) -> Any:
    for name in names:
        value = record.get(name)
        if value:
            return value
    return None


def _file_name(record: dict) -> Any:
    return _field(record, "file_name", "fileName")


def _cloud_file_name(record: dict) -> Any:
    return _field(record, "cloud_file_name", "cloudFileName")


def dedup_key(record: dict) -> str | None:
    """Return the identifier used to recognise ``record`` across sources.

    Args:
        record: Image record (canonical or camelCase).

    Returns:
        First non-empty value of ``id``, ``cloud_file_name`` and ``file_name``,
        or ``None`` when the record carries none of them.
    """
    key = _field(record, "id") or _cloud_file_name(record) or _file_name(record)
    return str(key) if key else None


def sort_newest_first(images: list[dict]) -> list[dict]:
    """Sort records by creation time, newest first.

    Records with a missing or unparsable timestamp are placed after all dated
    records, in their original relative order.
    """
    dated = []
    undated = []
    for image in images:
        timestamp = parse_timestamp(_field(image, "created_at", "createdAt"))
        if timestamp is None:
            undated.append(image)
        else:
            dated.append((timestamp, image))

    # sorted() is stable with reverse=True, so equal timestamps keep input order
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [image for _, image in dated] + undated


def merge_images(local_images: Any, remote_images: Any) -> list[dict]:
    """Merge local and remote image lists into one deduplicated list.

    Args:
        local_images: Locally known records.  Non-list values count as empty.
        remote_images: Records from the authoritative remote source.
            Non-list values count as empty.

    Returns:
        New list of records, newest first, with no two records sharing a
        dedup key.
    """
    local_list = local_images if isinstance(local_images, list) else []
    remote_list = remote_images if isinstance(remote_images, list) else []

    seen_local: set[str] = set()
    seen_cloud: set[str] = set()
    emitted_local_keys: set[str] = set()
    result: list[dict] = []

    for image in local_list:
        if not isinstance(image, dict):
            continue

        key = dedup_key(image)
        if key is not None:
            if key in emitted_local_keys:
                logger.debug(f"Dropping repeated local image: {key}")
                continue
            emitted_local_keys.add(key)

        image_id = _field(image, "id")
        if image_id:
            seen_local.add(str(image_id))
        file_name = _file_name(image)
        if file_name:
            seen_local.add(str(file_name))
        cloud_file_name = _cloud_file_name(image)
        if cloud_file_name:
            seen_cloud.add(str(cloud_file_name))

        result.append(image)

    dropped = 0
    for image in remote_list:
        if not isinstance(image, dict):
            continue

        key = dedup_key(image)
        if key is None or key in seen_local or key in seen_cloud:
            dropped += 1
            continue

        seen_cloud.add(key)
        result.append(image)

    logger.debug(
        f"Merged {len(local_list)} local and {len(remote_list)} remote images "
        f"into {len(result)} ({dropped} remote duplicates dropped)"
    )
    return sort_newest_first(result)
