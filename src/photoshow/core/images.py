"""Image record normalization.

Image records reach the cache from several upstream sources that disagree on
field names: the object store listing (``key``, ``last_modified``, metadata
stored next to the object), records created by the generation endpoint, and
older camelCase records (``fileName``, ``createdAt``, ``isCloudImage``) kept in
existing Redis caches and snapshot files.  Everything that enters the cache or
the merge engine goes through :func:`normalize_image` first, so the rest of
the core only ever sees one shape:

==================  ==========================================================
Key                 Meaning
==================  ==========================================================
``id``              Identifier, unique within a source
``url``             Address of the image bytes
``prompt``          Generation prompt (``PLACEHOLDER_PROMPT`` when missing)
``created_at``      ISO-8601 timestamp, newest-first sort key
``tags``            Native list of tag strings
``is_cloud_image``  ``True`` for records owned by the object store
``file_name``       Cross-source dedup identifier
``cloud_file_name`` Cross-source dedup identifier
``metadata``        Upstream metadata, preserved as a dict
==================  ==========================================================

Malformed input is never an error here: missing prompts get a placeholder,
unparsable tag strings become an empty list, and ``None`` entries are dropped.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

logger = logging.getLogger(__name__)

PLACEHOLDER_PROMPT = "No prompt"

# Upstream keys consumed while building the canonical fields.  Anything else
# on the source record is carried over unchanged.
_CONSUMED_KEYS = frozenset(
    {
        "id",
        "key",
        "url",
        "imageUrl",
        "image_url",
        "publicUrl",
        "public_url",
        "prompt",
        "createdAt",
        "created_at",
        "lastModified",
        "last_modified",
        "tags",
        "isCloudImage",
        "is_cloud_image",
        "fileName",
        "file_name",
        "cloudFileName",
        "cloud_file_name",
        "metadata",
    }
)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _first(*values: Any) -> Any:
    """Return the first truthy value, or ``None``."""
    for value in values:
        if value:
            return value
    return None


def parse_tags(value: Any) -> list[str]:
    """Coerce a tag value into a list of unique, non-empty strings.

    Tags arrive as native lists, as JSON-encoded strings (object metadata can
    only hold strings), or as comma-separated text typed by a user.

    Args:
        value: Raw tag value.

    Returns:
        Tags in their original order with duplicates and blanks removed.
    """
    if value is None:
        return []

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith(("[", "{")):
            try:
                decoded = json.loads(text)
            except ValueError:
                logger.debug(f"Ignoring malformed tag JSON: {text!r}")
                return []
            return parse_tags(decoded) if isinstance(decoded, list) else []
        return parse_tags(text.split(","))

    if isinstance(value, (list, tuple, set, frozenset)):
        tags: list[str] = []
        for item in value:
            if item is None or isinstance(item, (dict, list)):
                continue
            tag = str(item).strip()
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    return []


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a timestamp from any of the shapes used upstream.

    Accepts datetimes (naive values are taken as UTC), dates, epoch seconds
    or milliseconds, ISO-8601 strings (a trailing ``Z`` and date-only strings
    included) and RFC 2822 strings.

    Args:
        value: Raw timestamp value.

    Returns:
        Aware UTC datetime, or ``None`` if the value cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            return parse_timestamp(float(text))
        except ValueError:
            pass
        try:
            return parse_timestamp(parsedate_to_datetime(value))
        except (TypeError, ValueError, IndexError):
            return None

    return None


def format_timestamp(value: Any) -> str | None:
    """Return ``value`` as an ISO-8601 string, or ``None`` if unparsable."""
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else None


def _coerce_created_at(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        # Strings are kept verbatim, even unparsable ones; the merge engine
        # sorts those last instead of failing.
        return value
    formatted = format_timestamp(value)
    return formatted or utc_now().isoformat()


def normalize_image(data: Any) -> dict | None:
    """Convert a single upstream image record into the canonical shape.

    Args:
        data: Raw record from any upstream source.

    Returns:
        Canonical record dict, or ``None`` when ``data`` is not a dict.
    """
    if not isinstance(data, dict):
        return None

    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    image_id = _first(data.get("id"), data.get("fileName"), data.get("file_name"), data.get("key"))
    if not image_id:
        image_id = f"img-{uuid.uuid4().hex}"

    record: dict[str, Any] = {
        "id": str(image_id),
        "url": _first(
            data.get("url"),
            data.get("imageUrl"),
            data.get("image_url"),
            data.get("publicUrl"),
            data.get("public_url"),
        ),
        "prompt": _first(data.get("prompt"), metadata.get("prompt")) or PLACEHOLDER_PROMPT,
        "created_at": _coerce_created_at(
            _first(
                data.get("createdAt"),
                data.get("created_at"),
                metadata.get("createdAt"),
                metadata.get("created_at"),
                data.get("lastModified"),
                data.get("last_modified"),
            )
        ),
        "tags": parse_tags(data["tags"] if "tags" in data else metadata.get("tags")),
        "is_cloud_image": bool(_first(data.get("isCloudImage"), data.get("is_cloud_image"))),
        "file_name": _first(
            data.get("fileName"), data.get("file_name"), data.get("id"), data.get("key")
        ),
        "cloud_file_name": _first(
            data.get("cloudFileName"),
            data.get("cloud_file_name"),
            data.get("fileName"),
            data.get("file_name"),
            data.get("key"),
            data.get("id"),
        ),
        "metadata": metadata,
    }

    for key, value in data.items():
        if key not in _CONSUMED_KEYS and key not in record:
            record[key] = value

    return record


def normalize_images(items: Any) -> list[dict]:
    """Normalize a list of records, dropping entries that are not records."""
    if not isinstance(items, list):
        return []
    normalized = [normalize_image(item) for item in items if item]
    return [record for record in normalized if record is not None]


def from_storage_object(obj: Any) -> dict | None:
    """Build a canonical record from an object store listing entry.

    Listing entries carry ``key``, ``url``, ``size``, ``last_modified`` and the
    metadata stored alongside the object.  The resulting record is marked as
    a cloud image and uses the object key for every identifier.

    Args:
        obj: Listing entry returned by :meth:`ObjectStore.list_objects`.

    Returns:
        Canonical record, or ``None`` for entries without a key.
    """
    if not isinstance(obj, dict) or not obj.get("key"):
        logger.warning(f"Skipping invalid object store entry: {obj!r}")
        return None

    key = obj["key"]
    return normalize_image(
        {
            "id": key,
            "key": key,
            "url": obj.get("url"),
            "last_modified": obj.get("last_modified") or obj.get("lastModified"),
            "metadata": obj.get("metadata") or {},
            "is_cloud_image": True,
            "file_name": key,
            "cloud_file_name": key,
            "size": obj.get("size"),
        }
    )
