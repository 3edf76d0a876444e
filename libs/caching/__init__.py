"""
Caching utilities for the segmentation engine.

This module provides:
- Redis client management
- TTL caching of segmentation results (in-process or Redis backed)
"""

from libs.caching.redis_client import create_redis_client
from libs.caching.segmentation_cache import SegmentationCache, hash_query

__all__ = ["SegmentationCache", "create_redis_client", "hash_query"]
