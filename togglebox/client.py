"""
ToggleBox client: remote configs, feature flags and experiments.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from togglebox.cache import CacheBackend, CacheStats, MemoryBackend, NamespacedCache
from togglebox.config import ToggleBoxConfig
from togglebox.context import ContextBuilder, LocaleResolver, UserResolver
from togglebox.errors import ToggleBoxError, classify_error
from togglebox.evaluate import assign_variant, evaluate_flag
from togglebox.models import (
    Definitions,
    EvaluationContext,
    Event,
    EventKind,
    Experiment,
    Flag,
    FlagResult,
    VariantAssignment,
)
from togglebox.stats import FlushResult, StatsBatcher
from togglebox.store import DefinitionStore
from togglebox.transport import HttpTransport, Transport

logger = logging.getLogger("togglebox")

# Upper bound between stale-triggered refresh attempts
MAX_REFRESH_RETRY_SECONDS = 30.0


class ToggleBoxClient:
    """
    ToggleBox client.

    Construct one per process and share it; every method is safe to call
    from concurrent requests. Evaluation only reads the in-memory snapshot,
    so it never waits on the network.

    Example:
        ```python
        client = ToggleBoxClient(ToggleBoxConfig(platform="web", api_url="https://flags.internal"))
        await client.init()

        if client.is_flag_enabled("new-checkout", client.context(user_id="42")):
            ...

        variant = client.get_variant("pricing-page", client.context(user_id="42"))

        await client.close()
        ```
    """

    def __init__(
        self,
        config: ToggleBoxConfig,
        cache_backend: Optional[CacheBackend] = None,
        transport: Optional[Transport] = None,
        user_resolver: Optional[UserResolver] = None,
        locale_resolver: Optional[LocaleResolver] = None,
    ):
        """
        Initialize the ToggleBox client.

        Args:
            config: Client configuration
            cache_backend: Storage for fetched definitions (default: in-memory)
            transport: Backend transport (default: HTTP to ``config.base_url``)
            user_resolver: Strategy for the current user id
            locale_resolver: Strategy for the current locale
        """
        self._config = config
        self._transport = transport or HttpTransport(
            config.base_url,
            config.platform,
            config.environment,
            api_key=config.api_key,
            timeout_ms=config.timeout_ms,
            retry=config.retry,
        )
        self._cache: Optional[NamespacedCache] = None
        if config.cache.enabled:
            self._cache = NamespacedCache(
                cache_backend or MemoryBackend(),
                prefix=config.cache.prefix,
                ttl=config.cache.ttl_seconds,
            )
        self._store = DefinitionStore(
            self._transport,
            config.platform,
            config.environment,
            version=config.config_version,
            cache=self._cache,
            ttl_seconds=config.cache.ttl_seconds,
        )
        self._stats = StatsBatcher(self._transport, config.stats)
        self._contexts = ContextBuilder(user_resolver, locale_resolver)
        self._initialized = False
        self._closing = False
        self._poll_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._last_refresh_attempt = 0.0
        self._refresh_retry_seconds = min(MAX_REFRESH_RETRY_SECONDS, config.cache.ttl_seconds)

        self._callbacks: Dict[str, List[Callable]] = {
            "ready": [],
            "definitions_updated": [],
            "error": [],
        }
        self._store.on_update(lambda old, new: self._emit("definitions_updated", new))

    def on(self, event: str, callback: Callable) -> "ToggleBoxClient":
        """
        Register an event callback.

        Args:
            event: Event name
            callback: Callback function

        Returns:
            Self for chaining
        """
        if event in self._callbacks:
            self._callbacks[event].append(callback)
        return self

    def off(self, event: str, callback: Callable) -> "ToggleBoxClient":
        """Remove an event callback."""
        if event in self._callbacks and callback in self._callbacks[event]:
            self._callbacks[event].remove(callback)
        return self

    def _emit(self, event: str, *args) -> None:
        """Emit an event to all registered callbacks."""
        for callback in self._callbacks.get(event, []):
            try:
                callback(*args)
            except Exception as e:
                logger.warning(f"Error in event callback: {e}")

    async def init(self) -> None:
        """
        Load definitions and start background work.

        A failed initial fetch is reported through the ``error`` callback;
        the client still starts and serves defaults until a refresh succeeds.
        """
        self._stats.start()
        self._last_refresh_attempt = time.time()

        try:
            await self._store.load()
        except ToggleBoxError as e:
            logger.error(f"Initial definitions load failed: {e.message}")
            self._emit("error", e)

        self._initialized = True

        if self._config.refresh_interval_ms > 0:
            self._poll_task = asyncio.create_task(self._start_polling())

        self._emit("ready")

    async def _start_polling(self) -> None:
        """Start background polling for definition updates."""
        while not self._closing:
            await asyncio.sleep(self._config.refresh_interval_ms / 1000)
            if self._closing:
                break
            await self._background_refresh()

    async def _background_refresh(self) -> None:
        self._last_refresh_attempt = time.time()
        try:
            await self._store.refresh()
        except ToggleBoxError as e:
            logger.warning(f"Background refresh failed, keeping current definitions: {e.message}")
            self._emit("error", e)

    def _snapshot(self) -> Definitions:
        """Current snapshot; schedules a background refresh once it is past its TTL."""
        if self._initialized and not self._closing and self._store.is_stale():
            self._schedule_refresh()
        return self._store.snapshot

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        if time.time() - self._last_refresh_attempt < self._refresh_retry_seconds:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._refresh_task = loop.create_task(self._background_refresh())

    def context(
        self,
        user_id: Optional[str] = None,
        country: Optional[str] = None,
        language: Optional[str] = None,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> EvaluationContext:
        """
        Build an evaluation context.

        Missing ``user_id`` and ``language`` come from the configured
        resolvers; the language is normalized to two characters.
        """
        return self._contexts.build(user_id, country, language, attributes)

    def _track(self, kind: EventKind, key: str, context: EvaluationContext, **kwargs) -> None:
        try:
            self._stats.track(Event(kind=kind, key=key, context=context.to_dict(), **kwargs))
        except Exception as e:
            logger.warning(f"Failed to record {kind.value} event for {key!r}: {e}")

    # Remote configs

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """Get a remote config value, or ``default`` when it is not defined."""
        return self._snapshot().configs.get(key, default)

    def get_all_configs(self) -> Dict[str, Any]:
        """Get all remote config values."""
        return dict(self._snapshot().configs)

    # Feature flags

    def get_flag(
        self,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
        default_value: bool = False,
    ) -> FlagResult:
        """
        Evaluate a flag with full details.

        Never raises: any internal failure resolves to ``default_value``.
        """
        context = context or self.context()
        try:
            flag = self._snapshot().flags.get(flag_key)
            result = evaluate_flag(flag, context, default_value, flag_key=flag_key)
        except Exception as e:
            logger.error(f"Error evaluating flag {flag_key!r}: {e}")
            self._emit("error", classify_error(e))
            result = evaluate_flag(None, context, default_value, flag_key=flag_key)

        self._track(
            EventKind.EVALUATION,
            flag_key,
            context,
            data={"type": "flag", "enabled": result.enabled, "source": result.source.value},
        )
        return result

    def is_flag_enabled(
        self,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
        default_value: bool = False,
    ) -> bool:
        """
        Check if a flag is enabled.

        Args:
            flag_key: The flag key to check
            context: Evaluation context (default: built from the resolvers)
            default_value: Value when the flag is unknown

        Returns:
            True if the flag is enabled
        """
        if not self._initialized:
            logger.warning("Client not initialized. Call init() first.")
        return self.get_flag(flag_key, context, default_value).enabled

    def should_render(self, flag_key: str, context: Optional[EvaluationContext] = None) -> bool:
        """Whether a flag-gated block should be rendered. For templating layers."""
        return self.is_flag_enabled(flag_key, context, default_value=False)

    def get_flag_info(self, flag_key: str) -> Optional[Flag]:
        """Get a flag definition without evaluating it."""
        return self._snapshot().flags.get(flag_key)

    def get_flags(self) -> List[Flag]:
        """Get all flag definitions."""
        return list(self._snapshot().flags.values())

    # Experiments

    def get_variant(
        self,
        experiment_key: str,
        context: Optional[EvaluationContext] = None,
    ) -> Optional[VariantAssignment]:
        """
        Get the assigned variation for an experiment.

        Returns None when the experiment is unknown, not running, or the
        context is outside its audience. Never raises.
        """
        context = context or self.context()
        try:
            assignment = assign_variant(self._snapshot().experiments.get(experiment_key), context)
        except Exception as e:
            logger.error(f"Error assigning experiment {experiment_key!r}: {e}")
            self._emit("error", classify_error(e))
            assignment = None

        data: Dict[str, Any] = {"type": "experiment", "variationKey": None}
        if assignment is not None:
            data["variationKey"] = assignment.variation_key
            data["method"] = assignment.method.value
        self._track(EventKind.EVALUATION, experiment_key, context, data=data)
        return assignment

    def in_variation(
        self,
        experiment_key: str,
        variation_key: str,
        context: Optional[EvaluationContext] = None,
    ) -> bool:
        """Check if the context is assigned to a specific variation."""
        variant = self.get_variant(experiment_key, context)
        return variant is not None and variant.variation_key == variation_key

    def get_experiment_info(self, experiment_key: str) -> Optional[Experiment]:
        """Get an experiment definition without assigning."""
        return self._snapshot().experiments.get(experiment_key)

    def get_experiments(self) -> List[Experiment]:
        """Get all experiment definitions."""
        return list(self._snapshot().experiments.values())

    def track_conversion(
        self,
        experiment_key: str,
        metric_name: str,
        value: Optional[float] = None,
        context: Optional[EvaluationContext] = None,
    ) -> None:
        """
        Record a conversion for an experiment.

        The current assignment is attached so the backend can attribute it.
        """
        context = context or self.context()
        data: Dict[str, Any] = {"metricName": metric_name}
        try:
            assignment = assign_variant(self._snapshot().experiments.get(experiment_key), context)
            if assignment is not None:
                data["variationKey"] = assignment.variation_key
        except Exception as e:
            logger.warning(f"Could not resolve assignment for conversion on {experiment_key!r}: {e}")
        self._track(EventKind.CONVERSION, experiment_key, context, value=value, data=data)

    def track_event(
        self,
        event_name: str,
        data: Optional[Dict[str, Any]] = None,
        context: Optional[EvaluationContext] = None,
    ) -> None:
        """Record a custom event."""
        context = context or self.context()
        self._track(EventKind.CUSTOM, event_name, context, data=data)

    # Utility

    async def refresh(self) -> Definitions:
        """
        Force a refresh of the definitions.

        Raises:
            ToggleBoxError: On network or validation failure. The previous
                definitions stay active.
        """
        return await self._store.refresh()

    async def flush_stats(self) -> FlushResult:
        """
        Send pending stats now.

        Raises:
            ToggleBoxError: If the batch could not be delivered
        """
        result = await self._stats.flush()
        if result.error is not None:
            raise result.error
        return result

    def clear_cache(self) -> bool:
        """
        Clear this SDK's cached definitions.

        Returns False when the cache backend cannot clear by namespace; in
        that case nothing is deleted.
        """
        return self._store.clear_cache()

    async def check_connection(self) -> Dict[str, Any]:
        """
        Check API connectivity and service health.

        Raises:
            ToggleBoxError: If the API is unreachable
        """
        try:
            return await self._transport.check_connection()
        except Exception as e:
            raise classify_error(e) from e

    def get_cache_stats(self) -> Optional[CacheStats]:
        """Get cache statistics, or None when caching is disabled."""
        return self._cache.get_stats() if self._cache else None

    def get_stats_info(self) -> Dict[str, Any]:
        """Get stats batcher counters."""
        return self._stats.get_stats()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def snapshot(self) -> Definitions:
        """The active definitions snapshot."""
        return self._store.snapshot

    async def close(self) -> None:
        """Stop background work, flush stats within the grace period, release the transport."""
        self._closing = True

        for task in (self._poll_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self._stats.shutdown(flush=self._config.stats.flush_on_terminate)

        await self._transport.close()

    async def __aenter__(self) -> "ToggleBoxClient":
        """Async context manager entry."""
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
