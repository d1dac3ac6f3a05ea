"""
Cache LRU + TTL en mémoire (process-local)

Remplace les Map globales : capacité bornée (éviction LRU), expiration
paresseuse à la lecture, invalidation par clé ou par motif glob.
"""
import fnmatch
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Dict, Optional


class TTLCache:
    """
    Thread-safe LRU cache with TTL expiration

    Usage:
        cache = TTLCache(max_entries=500, ttl_seconds=300)
        cache.set("locations:<tenant>:active", rows)
        cache.invalidate_pattern("locations:<tenant>:*")
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._cache: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            stored_at, value = entry
            if self._clock() - stored_at >= self._ttl_seconds:
                del self._cache[key]
                return None

            self._cache.move_to_end(key)
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if key in self._cache:
                del self._cache[key]

            while len(self._cache) >= self._max_entries:
                self._cache.popitem(last=False)

            self._cache[key] = (self._clock(), value)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str) -> int:
        """Supprime toutes les clés qui matchent le glob (ex: "locations:<tid>:*")"""
        with self._lock:
            keys = [key for key in self._cache if fnmatch.fnmatchcase(key, pattern)]
            for key in keys:
                del self._cache[key]
            return len(keys)

    def cleanup_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (stored_at, _) in self._cache.items() if now - stored_at >= self._ttl_seconds]
            for key in expired:
                del self._cache[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._cache),
                "max_entries": self._max_entries,
                "ttl_seconds": self._ttl_seconds,
            }


def _build_locations_cache() -> TTLCache:
    from ..config import settings

    return TTLCache(
        max_entries=settings.LOCATIONS_CACHE_MAX_ENTRIES,
        ttl_seconds=settings.LOCATIONS_CACHE_TTL_SECONDS,
    )


# Cache des listes de locations par tenant (lu par GET /api/gmb/locations)
locations_cache = _build_locations_cache()


def locations_cache_key(tenant_id, include_archived: bool = False) -> str:
    return f"locations:{tenant_id}:{'all' if include_archived else 'active'}"


def invalidate_tenant_locations(tenant_id) -> int:
    """Appelé après sync et disconnect"""
    return locations_cache.invalidate_pattern(f"locations:{tenant_id}:*")
