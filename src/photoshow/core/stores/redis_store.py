"""Redis backing store with an in-process fallback mirror.

The envelope is stored under three keys sharing one namespace prefix and one
expiry (24 hours by default)::

    photoshow:images          JSON list of image records
    photoshow:lastUpdated     ISO-8601 timestamp of the last write
    photoshow:isInitialized   JSON boolean

Generation counters live next to them (``photoshow:generation:YYYY-MM-DD``)
and are incremented atomically with ``INCR`` + ``EXPIRE`` in one transaction.

Fallback Behaviour
------------------
Redis is an optimisation, not a hard dependency.  Every write is also applied
to a :class:`MemoryMirror` of the same shape, and every read falls back to the
mirror when Redis is unreachable, raises, or no longer holds the key.  Callers
of this store therefore never see a transport error; the worst case is data
that is stale or local to this process.

Reads are composed from two explicit tiers::

    value = _first_available(await self._read_primary(key), lambda: mirror_value)

Connection Management
---------------------
:class:`RedisConnection` connects lazily on first use and memoizes the client.
Concurrent callers share a single in-flight connection task.  A failed
connection is retried a bounded number of times with linearly increasing
backoff; after that the connection gives up for ``retry_cooldown`` seconds and
every call is served by the mirror.  An error during an operation drops the
client so that the next call reconnects.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from photoshow.core.cache_store import CacheStoreBase, patch_image, remove_image, upsert_image
from photoshow.core.images import format_timestamp, normalize_images, parse_timestamp, utc_now

if TYPE_CHECKING:
    from photoshow.core.config import PhotoshowConfig

logger = logging.getLogger(__name__)

# Errors treated as "Redis is unavailable" rather than programming errors.
TRANSPORT_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

# Upper bound for a single backoff step, in seconds.
MAX_BACKOFF_SECONDS = 3.0

_MISSING = object()


def mask_url(url: str) -> str:
    """Hide credentials in a connection URL before logging it."""
    return re.sub(r"//(.+?)@", "//*****@", url)


class MemoryMirror:
    """In-process copy of the envelope and counters.

    Counters honour their expiry using the injected monotonic ``clock``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.images: list[dict] = []
        self.last_updated: datetime | None = None
        self.initialized = False
        self._counters: dict[str, tuple[int, float]] = {}

    def get_counter(self, key: str) -> int:
        entry = self._counters.get(key)
        if entry is None:
            return 0
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._counters[key]
            return 0
        return value

    def set_counter(self, key: str, value: int, ttl_seconds: int) -> None:
        self._counters[key] = (value, self._clock() + ttl_seconds)

    def increment_counter(self, key: str, ttl_seconds: int) -> int:
        value = self.get_counter(key) + 1
        self.set_counter(key, value, ttl_seconds)
        return value


class RedisConnection:
    """Lazily established, memoized Redis client with bounded retries."""

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float = 5.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        retry_cooldown: float = 30.0,
        client_factory: Callable[[], Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Configure the connection.  Nothing is opened until first use.

        Args:
            url: Redis connection URL
            connect_timeout: Timeout for establishing the connection, in seconds
            max_retries: Attempts after the first failed one
            retry_backoff: Linear backoff step between attempts, in seconds
            retry_cooldown: Seconds during which no new attempt is made after
                giving up
            client_factory: Callable returning a new (unconnected) client.
                Defaults to ``redis.asyncio.Redis.from_url``.
            sleep: Coroutine used to wait between attempts
            clock: Monotonic clock used for the cooldown
        """
        self.url = url
        self.connect_timeout = connect_timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.retry_cooldown = retry_cooldown
        self._client_factory = client_factory or self._default_client_factory
        self._sleep = sleep
        self._clock = clock

        self._client: Any = None
        self._connect_task: asyncio.Task | None = None
        self._gave_up_at: float | None = None
        self.connect_attempts = 0

    def _default_client_factory(self) -> Any:
        return redis.Redis.from_url(
            self.url,
            decode_responses=True,
            socket_connect_timeout=self.connect_timeout,
            socket_timeout=self.connect_timeout,
        )

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def get_client(self) -> Any:
        """Return a connected client, or ``None`` if Redis is unavailable."""
        if self._client is not None:
            return self._client

        if self._gave_up_at is not None:
            if self._clock() - self._gave_up_at < self.retry_cooldown:
                return None
            self._gave_up_at = None

        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._connect())

        # Shielded so a cancelled caller does not cancel the shared attempt.
        return await asyncio.shield(self._connect_task)

    def _backoff(self, attempt: int) -> float:
        return min(attempt * self.retry_backoff, MAX_BACKOFF_SECONDS)

    async def _connect(self) -> Any:
        masked = mask_url(self.url)

        for attempt in range(1, self.max_retries + 2):
            self.connect_attempts += 1
            client = None
            try:
                client = self._client_factory()
                await asyncio.wait_for(client.ping(), timeout=self.connect_timeout)
            except (*TRANSPORT_ERRORS, ValueError) as e:
                logger.warning(f"Redis connection attempt {attempt} to {masked} failed: {e}")
                if client is not None:
                    await self._close_quietly(client)
                if attempt <= self.max_retries:
                    await self._sleep(self._backoff(attempt))
                continue

            self._client = client
            logger.info(f"Connected to Redis at {masked}")
            return client

        self._gave_up_at = self._clock()
        logger.error(
            f"Giving up on Redis at {masked} after {self.max_retries + 1} attempts; "
            f"serving from memory for {self.retry_cooldown:.0f}s"
        )
        return None

    async def mark_failed(self, error: BaseException) -> None:
        """Drop the current client after an operation error."""
        logger.warning(f"Redis operation failed, falling back to memory: {error}")
        client, self._client = self._client, None
        if client is not None:
            await self._close_quietly(client)

    @staticmethod
    async def _close_quietly(client: Any) -> None:
        try:
            await client.aclose()
        except (*TRANSPORT_ERRORS, AttributeError) as e:
            logger.debug(f"Ignoring error while closing Redis client: {e}")

    async def close(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None
        client, self._client = self._client, None
        if client is not None:
            await self._close_quietly(client)
            logger.info("Redis connection closed")


def _first_available(primary: Any, fallback: Callable[[], Any]) -> Any:
    """Return ``primary`` unless it is missing, else the fallback's value."""
    return fallback() if primary is _MISSING else primary


class RedisCacheStore(CacheStoreBase):
    """Backing store kept in Redis, mirrored in process memory."""

    name = "redis"
    supports_counters = True
    supports_concurrent_reads = True

    def __init__(
        self,
        connection: RedisConnection,
        *,
        key_prefix: str = "photoshow:",
        ttl_seconds: int = 86400,
        mirror: MemoryMirror | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            connection: Connection used for every Redis call
            key_prefix: Namespace prefix for all keys
            ttl_seconds: Expiry applied to the envelope keys on every write
            mirror: Fallback mirror (a fresh one by default)
        """
        self.connection = connection
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.mirror = mirror or MemoryMirror()

        self.images_key = f"{key_prefix}images"
        self.last_updated_key = f"{key_prefix}lastUpdated"
        self.initialized_key = f"{key_prefix}isInitialized"

    @classmethod
    def from_config(cls, config: PhotoshowConfig) -> RedisCacheStore:
        connection = RedisConnection(
            config.redis_url,
            connect_timeout=config.redis_connect_timeout,
            max_retries=config.redis_max_retries,
            retry_backoff=config.redis_retry_backoff,
            retry_cooldown=config.redis_retry_cooldown,
        )
        return cls(
            connection,
            key_prefix=config.redis_key_prefix,
            ttl_seconds=config.redis_cache_ttl_seconds,
        )

    def counter_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    # -- Primary tier -------------------------------------------------------

    async def _read_primary(self, key: str) -> Any:
        """Read and decode ``key`` from Redis, or return the missing sentinel."""
        client = await self.connection.get_client()
        if client is None:
            return _MISSING

        try:
            raw = await client.get(key)
        except TRANSPORT_ERRORS as e:
            await self.connection.mark_failed(e)
            return _MISSING

        if raw is None:
            return _MISSING
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw

    async def _write_primary(self, values: dict[str, Any]) -> bool:
        """Write ``values`` to Redis in one transaction with the shared expiry."""
        client = await self.connection.get_client()
        if client is None:
            return False

        try:
            async with client.pipeline(transaction=True) as pipe:
                for key, value in values.items():
                    pipe.set(key, json.dumps(value, default=str), ex=self.ttl_seconds)
                await pipe.execute()
        except TRANSPORT_ERRORS as e:
            await self.connection.mark_failed(e)
            return False

        logger.debug(f"Redis keys updated: {', '.join(values)}")
        return True

    async def _write_envelope(self, **fields: Any) -> bool:
        keys = {
            "images": self.images_key,
            "last_updated": self.last_updated_key,
            "initialized": self.initialized_key,
        }
        values = {}
        for field, value in fields.items():
            setattr(self.mirror, field, value)
            values[keys[field]] = format_timestamp(value) if field == "last_updated" else value
        return await self._write_primary(values)

    # -- Envelope operations ------------------------------------------------

    async def init(self, images: list[dict]) -> None:
        images = list(images or [])
        written = await self._write_envelope(
            images=images, last_updated=utc_now(), initialized=True
        )
        scope = "Redis" if written else "memory mirror only"
        logger.info(f"Redis cache initialized with {len(images)} images ({scope})")

    async def get_all(self) -> list[dict]:
        primary = await self._read_primary(self.images_key)
        if isinstance(primary, list):
            # Caches written by older deployments hold camelCase records.
            primary = normalize_images(primary)
            self.mirror.images = primary
        images = _first_available(primary, lambda: self.mirror.images)
        return images if isinstance(images, list) else []

    async def is_initialized(self) -> bool:
        primary = await self._read_primary(self.initialized_key)
        return bool(_first_available(primary, lambda: self.mirror.initialized))

    async def get_last_updated(self) -> datetime | None:
        primary = await self._read_primary(self.last_updated_key)
        return parse_timestamp(_first_available(primary, lambda: self.mirror.last_updated))

    async def add_or_update(self, image: dict) -> None:
        images = upsert_image(await self.get_all(), image)
        await self._write_envelope(images=images, last_updated=utc_now())

    async def remove(self, image_id: str) -> bool:
        images, removed = remove_image(await self.get_all(), image_id)
        if removed:
            await self._write_envelope(images=images, last_updated=utc_now())
        return removed

    async def update(self, image_id: str, fields: dict[str, Any]) -> bool:
        images, updated = patch_image(await self.get_all(), image_id, fields)
        if updated:
            await self._write_envelope(images=images, last_updated=utc_now())
        return updated

    async def clear(self) -> None:
        await self._write_envelope(images=[], last_updated=utc_now(), initialized=False)
        logger.info("Redis cache cleared")

    # -- Counters -----------------------------------------------------------

    async def get_counter(self, key: str) -> int:
        redis_key = self.counter_key(key)
        primary = await self._read_primary(redis_key)
        value = _first_available(primary, lambda: self.mirror.get_counter(redis_key))
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-integer counter value for {redis_key}: {value!r}")
            return 0

    async def increment_counter(self, key: str, ttl_seconds: int) -> int:
        redis_key = self.counter_key(key)
        client = await self.connection.get_client()
        if client is None:
            return self.mirror.increment_counter(redis_key, ttl_seconds)

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, ttl_seconds)
                results = await pipe.execute()
        except TRANSPORT_ERRORS as e:
            await self.connection.mark_failed(e)
            return self.mirror.increment_counter(redis_key, ttl_seconds)

        count = int(results[0])
        self.mirror.set_counter(redis_key, count, ttl_seconds)
        return count

    async def close(self) -> None:
        await self.connection.close()
