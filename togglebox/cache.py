"""
Cache layer for serialized definition snapshots.

The store only talks to ``NamespacedCache``; the concrete storage sits behind
the ``CacheBackend`` protocol so in-memory, file and Redis stores are
interchangeable.
"""

import base64
import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger("togglebox.cache")


@runtime_checkable
class CacheBackend(Protocol):
    """
    Key/value storage with advisory TTLs.

    Backends may evict entries at any time; callers treat a miss as
    "needs refresh", never as an error.
    """

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes, ttl: float) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


@runtime_checkable
class ScopedClear(Protocol):
    """Optional capability: delete every key starting with a prefix."""

    def delete_prefix(self, prefix: str) -> int:
        ...


@dataclass
class CacheEntry:
    """Cache entry with metadata."""

    value: bytes
    ttl: float
    inserted_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.ttl <= 0:
            return False
        return (now if now is not None else time.time()) - self.inserted_at >= self.ttl


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    errors: int = 0
    degraded_clears: int = 0


class MemoryBackend:
    """Process-local backend. Thread-safe, supports scoped clear."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: bytes, ttl: float) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, ttl=ttl, inserted_at=time.time())

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class FileBackend:
    """
    One JSON file per key under a directory.

    Survives process restarts, which lets a freshly started worker evaluate
    from the last known definitions before its first fetch completes.
    """

    def __init__(self, directory: str):
        self._directory = Path(directory)
        self._lock = threading.Lock()

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._directory / f"{digest}.json"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                data = json.loads(path.read_text())
            except (OSError, ValueError) as e:
                logger.warning(f"Discarding unreadable cache file {path}: {e}")
                path.unlink(missing_ok=True)
                return None

            entry = CacheEntry(
                value=base64.b64decode(data.get("value", "")),
                ttl=data.get("ttl", 0),
                inserted_at=data.get("insertedAt", 0),
            )
            if data.get("key") != key or entry.is_expired():
                path.unlink(missing_ok=True)
                return None
            return entry.value

    def set(self, key: str, value: bytes, ttl: float) -> None:
        data = {
            "version": 1,
            "key": key,
            "value": base64.b64encode(value).decode("ascii"),
            "ttl": ttl,
            "insertedAt": time.time(),
        }
        path = self._path_for(key)
        with self._lock:
            self._directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(data))
            os.replace(tmp, path)

    def delete(self, key: str) -> None:
        with self._lock:
            self._path_for(key).unlink(missing_ok=True)

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        with self._lock:
            if not self._directory.exists():
                return 0
            for path in self._directory.glob("*.json"):
                try:
                    key = json.loads(path.read_text()).get("key", "")
                except (OSError, ValueError):
                    continue
                if isinstance(key, str) and key.startswith(prefix):
                    path.unlink(missing_ok=True)
                    removed += 1
        return removed


class RedisBackend:
    """
    Backend over a synchronous ``redis.Redis`` client.

    Scoped clear walks ``SCAN MATCH prefix*`` so only this SDK's keys are
    removed; ``FLUSHDB`` is never issued.
    """

    def __init__(self, client: Any, scan_count: int = 500):
        self._client = client
        self._scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisBackend":
        import redis

        return cls(redis.Redis.from_url(url, **kwargs))

    def get(self, key: str) -> Optional[bytes]:
        value = self._client.get(key)
        if value is None:
            return None
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    def set(self, key: str, value: bytes, ttl: float) -> None:
        if ttl > 0:
            self._client.set(key, value, ex=max(1, int(ttl)))
        else:
            self._client.set(key, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def delete_prefix(self, prefix: str) -> int:
        pattern = _escape_glob(prefix) + "*"
        removed = 0
        batch = []
        for key in self._client.scan_iter(match=pattern, count=self._scan_count):
            batch.append(key)
            if len(batch) >= self._scan_count:
                removed += self._client.delete(*batch)
                batch = []
        if batch:
            removed += self._client.delete(*batch)
        return removed


def _escape_glob(value: str) -> str:
    for ch in ("\\", "*", "?", "[", "]"):
        value = value.replace(ch, "\\" + ch)
    return value


class NamespacedCache:
    """
    The get/set/delete/clear capability set used by the definition store.

    All keys are stored as ``{prefix}:{key}``. Backend failures are logged
    and reported as misses so a broken cache never blocks a refresh.

    Example:
        ```python
        cache = NamespacedCache(MemoryBackend(), prefix="togglebox", ttl=300)
        cache.set("definitions:web:production:stable", payload_bytes)
        cache.clear()  # removes only togglebox:* keys
        ```
    """

    def __init__(self, backend: CacheBackend, prefix: str = "togglebox", ttl: float = 300):
        self._backend = backend
        self._prefix = prefix
        self._ttl = ttl
        self._stats = CacheStats()

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def supports_scoped_clear(self) -> bool:
        return isinstance(self._backend, ScopedClear)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def get(self, key: str) -> Optional[bytes]:
        try:
            value = self._backend.get(self._key(key))
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache get failed for {key!r}: {e}")
            value = None

        if value is None:
            self._stats.misses += 1
            return None

        self._stats.hits += 1
        return value

    def set(self, key: str, value: bytes, ttl: Optional[float] = None) -> bool:
        try:
            self._backend.set(self._key(key), value, self._ttl if ttl is None else ttl)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache set failed for {key!r}: {e}")
            return False
        self._stats.sets += 1
        return True

    def delete(self, key: str) -> None:
        try:
            self._backend.delete(self._key(key))
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache delete failed for {key!r}: {e}")

    def clear(self) -> bool:
        """
        Remove every key in this namespace.

        Returns False, without touching the backend, when the backend cannot
        scope deletion to the namespace.
        """
        if not isinstance(self._backend, ScopedClear):
            self._stats.degraded_clears += 1
            logger.warning(
                f"Cache backend {type(self._backend).__name__} cannot clear by prefix; "
                f"leaving {self._prefix}:* entries to expire by TTL"
            )
            return False

        try:
            removed = self._backend.delete_prefix(f"{self._prefix}:")
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Cache clear failed: {e}")
            return False

        logger.debug(f"Cleared {removed} cache entries under {self._prefix}:")
        return True

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            sets=self._stats.sets,
            errors=self._stats.errors,
            degraded_clears=self._stats.degraded_clears,
        )

    def get_hit_rate(self) -> float:
        """Get hit rate (hits / (hits + misses))."""
        total = self._stats.hits + self._stats.misses
        if total == 0:
            return 0.0
        return self._stats.hits / total
