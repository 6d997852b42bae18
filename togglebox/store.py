"""
Definition store: the single active snapshot and how it gets replaced.
"""

import json
import logging
import time
from typing import Callable, List, Optional

from togglebox.cache import NamespacedCache
from togglebox.dedup import RequestDeduplicator
from togglebox.errors import ToggleBoxError, ValidationError, classify_error
from togglebox.models import Definitions, EMPTY_DEFINITIONS
from togglebox.transport import Transport

logger = logging.getLogger("togglebox.store")


class DefinitionStore:
    """
    Holds the active definitions snapshot.

    Readers get the current snapshot without locking; ``refresh`` is the only
    writer and replaces the reference in one assignment, so a reader sees
    either the old snapshot or the new one, never a mix. Concurrent
    refreshes share a single fetch.
    """

    def __init__(
        self,
        transport: Transport,
        platform: str,
        environment: str,
        version: str = "stable",
        cache: Optional[NamespacedCache] = None,
        ttl_seconds: float = 300.0,
    ):
        self._transport = transport
        self._platform = platform
        self._environment = environment
        self._version = version
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._snapshot: Definitions = EMPTY_DEFINITIONS
        self._loaded = False
        self._etag: Optional[str] = None
        self._dedup = RequestDeduplicator()
        self._listeners: List[Callable[[Definitions, Definitions], None]] = []
        self._fetch_count = 0

    @property
    def cache_key(self) -> str:
        return f"definitions:{self._platform}:{self._environment}:{self._version}"

    @property
    def snapshot(self) -> Definitions:
        """The active snapshot. Never blocks."""
        return self._snapshot

    def get_snapshot(self) -> Definitions:
        """Same as ``snapshot``, for callers that prefer a method."""
        return self._snapshot

    @property
    def loaded(self) -> bool:
        """Whether any snapshot has been adopted yet."""
        return self._loaded

    @property
    def fetch_count(self) -> int:
        """Number of network fetches actually issued."""
        return self._fetch_count

    def on_update(self, listener: Callable[[Definitions, Definitions], None]) -> None:
        """Register ``listener(old, new)``, called when new definitions are adopted."""
        self._listeners.append(listener)

    def is_stale(self, now: Optional[float] = None) -> bool:
        if not self._loaded:
            return True
        now = time.time() if now is None else now
        return now - self._snapshot.fetched_at >= self._ttl_seconds

    async def load(self) -> Definitions:
        """
        Adopt cached definitions if present, otherwise fetch them.

        Raises:
            ToggleBoxError: If nothing is cached and the fetch fails
        """
        if self._load_from_cache():
            return self._snapshot
        return await self.refresh()

    async def refresh(self) -> Definitions:
        """
        Fetch, validate and adopt the latest definitions.

        Returns:
            The snapshot active after the refresh

        Raises:
            ValidationError: The payload was malformed; the old snapshot stays
            ToggleBoxError: Any other failure; the old snapshot stays
        """
        return await self._dedup.dedupe(self.cache_key, self._do_refresh)

    async def _do_refresh(self) -> Definitions:
        self._fetch_count += 1
        try:
            result = await self._transport.fetch_definitions(
                self._platform,
                self._environment,
                self._version,
                etag=self._etag if self._loaded else None,
            )
        except Exception as e:
            classified = classify_error(e)
            logger.error(f"Error fetching definitions: {classified.message}")
            raise classified from e

        if result is None:
            # 304 Not Modified: same definitions, new freshness
            logger.debug("Definitions not modified")
            renewed = Definitions(
                version=self._snapshot.version,
                configs=self._snapshot.configs,
                flags=self._snapshot.flags,
                experiments=self._snapshot.experiments,
                fetched_at=time.time(),
            )
            self._swap(renewed, notify=False)
            self._write_cache(renewed)
            return renewed

        payload, etag = result
        try:
            definitions = Definitions.from_payload(payload)
        except ValidationError as e:
            logger.error(f"Rejected malformed definitions payload: {e.message}")
            raise

        self._swap(definitions)
        self._etag = etag
        self._write_cache(definitions)
        logger.info(
            f"Loaded definitions version {definitions.version!r}: "
            f"{len(definitions.flags)} flags, {len(definitions.experiments)} experiments, "
            f"{len(definitions.configs)} configs"
        )
        return definitions

    def _swap(self, definitions: Definitions, notify: bool = True) -> None:
        old = self._snapshot
        self._snapshot = definitions
        self._loaded = True
        if not notify:
            return
        for listener in self._listeners:
            try:
                listener(old, definitions)
            except Exception as e:
                logger.warning(f"Error in definitions listener: {e}")

    def _load_from_cache(self) -> bool:
        if self._cache is None:
            return False

        raw = self._cache.get(self.cache_key)
        if raw is None:
            return False

        try:
            envelope = json.loads(raw.decode("utf-8"))
            definitions = Definitions.from_payload(
                envelope["payload"], fetched_at=float(envelope["fetchedAt"])
            )
        except (ValueError, KeyError, TypeError, ToggleBoxError) as e:
            logger.warning(f"Ignoring unusable cached definitions: {e}")
            self._cache.delete(self.cache_key)
            return False

        self._swap(definitions)
        logger.debug(f"Adopted cached definitions version {definitions.version!r}")
        return True

    def _write_cache(self, definitions: Definitions) -> None:
        if self._cache is None:
            return
        envelope = {"fetchedAt": definitions.fetched_at, "payload": definitions.to_payload()}
        self._cache.set(self.cache_key, json.dumps(envelope).encode("utf-8"), self._ttl_seconds)

    def clear_cache(self) -> bool:
        """Clear this SDK's cache namespace. The in-memory snapshot is kept."""
        if self._cache is None:
            return True
        return self._cache.clear()
