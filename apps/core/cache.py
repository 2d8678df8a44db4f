"""
Caching utilities.

Centralizes cache key templates and TTLs so invalidation code and readers
agree on key names.
"""
import logging
from typing import Any
from django.core.cache import cache

logger = logging.getLogger(__name__)


class CacheKeys:
    """Centralized cache key definitions with consistent naming."""

    # Effective permission snapshot per membership (TTL: 5 minutes)
    USER_PERMISSIONS = "rbac:permissions:{tenant_id}:{user_id}"

    @classmethod
    def format(cls, key_template: str, **kwargs) -> str:
        """Format a cache key with provided parameters."""
        return key_template.format(**{k: str(v) for k, v in kwargs.items()})


class CacheTTL:
    """Cache TTL (Time To Live) constants in seconds."""

    RBAC_PERMISSIONS = 300  # 5 minutes


class CacheService:
    """
    Thin wrapper over Django's cache.

    Backend errors are logged and reported as a miss; callers always have a
    source of truth to fall back on.
    """

    @staticmethod
    def get(key: str, default: Any = None) -> Any:
        try:
            value = cache.get(key, default)
        except Exception as e:
            logger.error(f"Cache get error for key {key}: {e}")
            return default
        logger.debug(f"Cache {'HIT' if value is not None else 'MISS'}: {key}")
        return value

    @staticmethod
    def set(key: str, value: Any, ttl: int = None) -> bool:
        try:
            cache.set(key, value, timeout=ttl)
        except Exception as e:
            logger.error(f"Cache set error for key {key}: {e}")
            return False
        logger.debug(f"Cache SET: {key} (TTL: {ttl}s)")
        return True

    @staticmethod
    def delete(key: str) -> bool:
        try:
            cache.delete(key)
        except Exception as e:
            logger.error(f"Cache delete error for key {key}: {e}")
            return False
        logger.debug(f"Cache DELETE: {key}")
        return True

    @staticmethod
    def delete_many(keys) -> bool:
        """Delete several keys in one round trip."""
        keys = list(keys)
        if not keys:
            return True
        try:
            cache.delete_many(keys)
        except Exception as e:
            logger.error(f"Cache delete_many error for {len(keys)} keys: {e}")
            return False
        logger.debug(f"Cache DELETE_MANY: {len(keys)} keys")
        return True
