"""Shared pytest fixtures for Photoshow tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from photoshow.core.cache_store import CacheStoreBase
from photoshow.core.config import PhotoshowConfig
from photoshow.core.errors import ProviderError
from photoshow.core.object_store import LocalObjectStore
from photoshow.core.stores.file_store import FileCacheStore
from photoshow.core.stores.redis_store import RedisCacheStore, RedisConnection

# ---------------------------------------------------------------------------
# Test doubles.
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakePipeline:
    """Buffered transaction pipeline for :class:`FakeRedis`."""

    def __init__(self, client: "FakeRedis") -> None:
        self.client = client
        self.ops: list[tuple] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        self.ops = []
        return False

    def set(self, key: str, value: str, ex: int | None = None) -> "FakePipeline":
        self.ops.append(("set", key, value, ex))
        return self

    def incr(self, key: str) -> "FakePipeline":
        self.ops.append(("incr", key))
        return self

    def expire(self, key: str, seconds: int) -> "FakePipeline":
        self.ops.append(("expire", key, seconds))
        return self

    async def execute(self) -> list[Any]:
        self.client.check()
        results = []
        for op in self.ops:
            if op[0] == "set":
                _, key, value, ex = op
                self.client.data[key] = value
                if ex is not None:
                    self.client.expiries[key] = ex
                results.append(True)
            elif op[0] == "incr":
                value = int(self.client.data.get(op[1], 0)) + 1
                self.client.data[op[1]] = str(value)
                results.append(value)
            elif op[0] == "expire":
                self.client.expiries[op[1]] = op[2]
                results.append(True)
        self.client.transactions += 1
        self.ops = []
        return results


class FakeRedis:
    """In-memory stand-in for a ``redis.asyncio.Redis`` client.

    Values are stored as strings, like a client created with
    ``decode_responses=True``.  Setting ``down`` makes every command raise a
    connection error; ``ping_failures`` fails only the next N pings.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiries: dict[str, int] = {}
        self.down = False
        self.ping_failures = 0
        self.pings = 0
        self.transactions = 0
        self.closed = False

    def check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self.pings += 1
        if self.ping_failures > 0:
            self.ping_failures -= 1
            raise RedisConnectionError("Connection refused")
        self.check()
        return True

    async def get(self, key: str) -> str | None:
        self.check()
        return self.data.get(key)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


class CountingStore(FileCacheStore):
    """File store that counts reads reaching it."""

    def __init__(self) -> None:
        super().__init__(snapshot_path=None)
        self.reads = 0

    async def get_all(self) -> list[dict]:
        self.reads += 1
        return await super().get_all()

    async def is_initialized(self) -> bool:
        self.reads += 1
        return await super().is_initialized()

    async def get_last_updated(self):
        self.reads += 1
        return await super().get_last_updated()


class FailingStore(CacheStoreBase):
    """Backing store whose every operation raises."""

    name = "failing"

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or RuntimeError("backing store unavailable")

    async def _fail(self, *args, **kwargs):
        raise self.error

    init = get_all = is_initialized = get_last_updated = _fail
    add_or_update = remove = update = clear = _fail
    get_counter = increment_counter = sync = _fail


class FakeImageProvider:
    """Image provider returning fixed bytes, or failing on request."""

    def __init__(self, data: bytes = b"\x89PNG\r\n\x1a\nfake-image") -> None:
        self.data = data
        self.fail = False
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> bytes:
        self.prompts.append(prompt)
        if self.fail:
            raise ProviderError("provider returned no image")
        return self.data


# ---------------------------------------------------------------------------
# Fixtures.
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PhotoshowConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PhotoshowConfig instance for testing
    """
    return PhotoshowConfig(
        _env_file=None,
        cache_type="file",
        data_dir=temp_dir / "data",
        gallery_dir=temp_dir / "data" / "gallery",
        daily_generation_limit=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_connection(fake_redis: FakeRedis, sleep_recorder: SleepRecorder, clock: FakeClock):
    """RedisConnection wired to the fake client, with no real sleeping."""
    return RedisConnection(
        "redis://:secret@localhost:6379/0",
        max_retries=3,
        retry_backoff=0.5,
        retry_cooldown=30.0,
        client_factory=lambda: fake_redis,
        sleep=sleep_recorder,
        clock=clock,
    )


@pytest.fixture
def redis_store(redis_connection: RedisConnection) -> RedisCacheStore:
    return RedisCacheStore(redis_connection, key_prefix="photoshow:", ttl_seconds=86400)


@pytest.fixture
def file_store(temp_dir: Path) -> FileCacheStore:
    return FileCacheStore(snapshot_path=temp_dir / "cache.json")


@pytest.fixture
def counting_store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def failing_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def object_store(temp_dir: Path) -> LocalObjectStore:
    return LocalObjectStore(temp_dir / "objects")


@pytest.fixture
def image_provider() -> FakeImageProvider:
    return FakeImageProvider()


@pytest.fixture
def sample_images() -> list[dict]:
    """Canonical records with distinct timestamps, newest first.

    Returns:
        List of three image records
    """
    return [
        {
            "id": "img-3",
            "url": "/static/gallery/img-3.png",
            "prompt": "a lighthouse at dusk",
            "created_at": "2024-03-03T10:00:00+00:00",
            "tags": ["sea", "evening"],
            "is_cloud_image": True,
            "file_name": "img-3.png",
            "cloud_file_name": "img-3.png",
            "metadata": {},
        },
        {
            "id": "img-2",
            "url": "/static/gallery/img-2.png",
            "prompt": "a red fox in snow",
            "created_at": "2024-03-02T10:00:00+00:00",
            "tags": ["animal"],
            "is_cloud_image": True,
            "file_name": "img-2.png",
            "cloud_file_name": "img-2.png",
            "metadata": {},
        },
        {
            "id": "img-1",
            "url": "/static/gallery/img-1.png",
            "prompt": "a quiet forest",
            "created_at": "2024-03-01T10:00:00+00:00",
            "tags": [],
            "is_cloud_image": False,
            "file_name": "img-1.png",
            "cloud_file_name": "img-1.png",
            "metadata": {},
        },
    ]
