"""
Read cache capability for the repository layer.

Repositories call ``invalidate`` explicitly after every write that changes
a cached value; nothing expires implicitly except by TTL.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from django.core.cache import caches

logger = logging.getLogger(__name__)


class RepositoryCache(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        raise NotImplementedError

    @abstractmethod
    def invalidate(self, *keys: str):
        raise NotImplementedError


class NullCache(RepositoryCache):
    def get(self, key):
        return None

    def set(self, key, value, ttl=None):
        pass

    def invalidate(self, *keys):
        pass


class DjangoRepositoryCache(RepositoryCache):
    """Backed by one of Django's configured cache aliases"""

    def __init__(self, alias: str = "default", default_ttl: int = 300, prefix: str = "hotspot"):
        self._cache = caches[alias]
        self.default_ttl = default_ttl
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key):
        try:
            return self._cache.get(self._key(key))
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    def set(self, key, value, ttl=None):
        try:
            self._cache.set(self._key(key), value, ttl if ttl is not None else self.default_ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def invalidate(self, *keys):
        if keys:
            self._cache.delete_many([self._key(key) for key in keys])
