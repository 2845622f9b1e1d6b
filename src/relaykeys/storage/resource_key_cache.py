"""Resource key cache with TTL expiration."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..models import ResourceKey
from ..types import DEFAULT_KEY_CACHE_TTL_HOURS


@dataclass
class _CacheEntry:
    """Entry in the resource key cache with expiration."""
    key: ResourceKey
    expires_at: datetime


# Default TTL: 24 hours
DEFAULT_TTL = timedelta(hours=DEFAULT_KEY_CACHE_TTL_HOURS)


class ResourceKeyCache:
    """
    In-memory cache of unwrapped resource keys, keyed by (resource, version).

    Owned by one ChannelKeyManager. An expired entry reads as a miss, so the
    manager fetches and unwraps again instead of failing.
    """

    def __init__(self, ttl: timedelta = DEFAULT_TTL) -> None:
        """Creates a new resource key cache with the given TTL (default: 24 hours)."""
        self._cache: dict[tuple[str, int], _CacheEntry] = {}
        self._ttl = ttl

    def store(self, key: ResourceKey) -> None:
        """Store an unwrapped key."""
        self._cache[(key.resource_id, key.version)] = _CacheEntry(
            key=key,
            expires_at=datetime.now() + self._ttl,
        )

    def retrieve(self, resource_id: str, version: int) -> Optional[ResourceKey]:
        """Retrieve a key (returns None if missing or expired)."""
        entry = self._cache.get((resource_id, version))
        if entry is None:
            return None

        if entry.expires_at <= datetime.now():
            del self._cache[(resource_id, version)]
            return None

        return entry.key

    def latest(self, resource_id: str) -> Optional[ResourceKey]:
        """The highest cached, unexpired version for a resource."""
        versions = sorted(
            (version for rid, version in self._cache if rid == resource_id),
            reverse=True,
        )
        for version in versions:
            key = self.retrieve(resource_id, version)
            if key is not None:
                return key
        return None

    def invalidate(self, resource_id: str, version: Optional[int] = None) -> None:
        """Invalidate one version, or every version of a resource."""
        if version is not None:
            self._cache.pop((resource_id, version), None)
            return
        for cache_key in [k for k in self._cache if k[0] == resource_id]:
            del self._cache[cache_key]

    def clear(self) -> None:
        """Clear all cached keys."""
        self._cache.clear()

    def prune_expired(self) -> None:
        """Remove all expired entries."""
        now = datetime.now()
        expired = [k for k, entry in self._cache.items() if entry.expires_at <= now]
        for k in expired:
            del self._cache[k]

    def __len__(self) -> int:
        return len(self._cache)
