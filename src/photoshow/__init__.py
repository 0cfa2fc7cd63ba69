"""Photoshow - image gallery cache and daily generation quota service."""

__version__ = "0.3.0"

from photoshow.core.cache_manager import CacheManager, CacheStatus
from photoshow.core.config import PhotoshowConfig, config
from photoshow.core.generation_limit import GenerationLimitService, LimitStatus

__all__ = [
    "CacheManager",
    "CacheStatus",
    "GenerationLimitService",
    "LimitStatus",
    "PhotoshowConfig",
    "config",
]
