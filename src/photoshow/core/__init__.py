"""Core functionality for the image cache and generation quota.

This module provides the core components of Photoshow:

- **CacheManager**: Memory layer in front of one backing store
- **create_cache_store**: Builds the backing store selected by configuration
- **CacheRefresher**: Background rebuild of the cache from the object store
- **GenerationLimitService**: Per-day generation counter and quota check
- **PhotoshowConfig**: Configuration management using Pydantic Settings
- **config**: Global configuration instance (loads from environment variables)

Architecture Overview
---------------------
The core module follows a layered architecture:

1. **Configuration Layer** (config.py):
   - Environment-based configuration using Pydantic Settings
   - All settings prefixed with PHOTOSHOW_ in .env files
   - Automatic directory creation

2. **Record Layer** (images.py, merge.py):
   - Normalization of loosely-shaped image records into one canonical shape
   - Merge and deduplication of local and cloud image lists

3. **Backing Store Layer** (cache_store.py, stores/):
   - One async contract, two implementations (file snapshot, Redis)
   - The Redis store falls back to an in-process mirror when Redis is down

4. **Cache Layer** (cache_manager.py, refresh.py):
   - Short-lived memory layer, store-first writes
   - Background refresh from the object store when the cache is stale

5. **Quota and Usage** (generation_limit.py, storage_usage.py):
   - Daily generation counter with atomic increment
   - Cached storage usage report against a configured quota

Usage Example
-------------
    from photoshow.core import CacheManager, config, create_cache_store

    manager = CacheManager(create_cache_store(config))
    status = await manager.get_cache_status(expire_minutes=config.cache_expire_minutes)
    print(status.to_dict()["count"])

See Also
--------
- CacheStoreBase: Contract every backing store implements
- merge_images: Merge and deduplication rules
- PhotoshowConfig: Configuration options and environment variables
"""

from photoshow.core.cache_manager import CacheManager, CacheStatus
from photoshow.core.cache_store import CacheStoreBase, create_cache_store
from photoshow.core.config import PhotoshowConfig, config
from photoshow.core.errors import CacheStoreError, ObjectStoreError, PhotoshowError, ProviderError
from photoshow.core.generation_limit import GenerationLimitService, LimitStatus
from photoshow.core.merge import merge_images
from photoshow.core.refresh import CacheRefresher

__all__ = [
    "CacheManager",
    "CacheRefresher",
    "CacheStatus",
    "CacheStoreBase",
    "CacheStoreError",
    "GenerationLimitService",
    "LimitStatus",
    "ObjectStoreError",
    "PhotoshowConfig",
    "PhotoshowError",
    "ProviderError",
    "config",
    "create_cache_store",
    "merge_images",
]
