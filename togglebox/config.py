"""Configuration classes for the ToggleBox SDK."""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from togglebox.errors import ConfigurationError
from togglebox.retry import RetryConfig, DEFAULT_RETRY_CONFIG

CLOUD_DOMAIN = "togglebox.io"


@dataclass
class CacheConfig:
    """Definition cache settings."""

    enabled: bool = True
    """Cache fetched definitions in the configured backend."""

    ttl_seconds: float = 300.0
    """How long a snapshot is considered fresh (default: 5 minutes)."""

    prefix: str = "togglebox"
    """Namespace for every key this SDK writes."""


@dataclass
class StatsConfig:
    """Telemetry batching settings."""

    enabled: bool = True
    """Collect evaluation and conversion events."""

    batch_size: int = 20
    """Queue length that triggers an asynchronous flush."""

    flush_on_terminate: bool = True
    """Flush remaining events when the client is closed."""

    flush_interval_ms: int = 0
    """Periodic flush interval in milliseconds. 0 disables it."""

    max_queue_size: int = 1000
    """Hard cap on buffered events; the oldest are dropped beyond it."""

    shutdown_grace_ms: int = 2000
    """Upper bound for the final flush on close."""


@dataclass
class ToggleBoxConfig:
    """Configuration for the ToggleBox client."""

    platform: str = "web"
    """Platform identifier, e.g. 'web', 'mobile', 'api'."""

    environment: str = "production"
    """Environment to fetch definitions for."""

    api_url: Optional[str] = None
    """Base URL of a self-hosted API. Mutually exclusive with tenant_subdomain."""

    tenant_subdomain: Optional[str] = None
    """Cloud tenant; the API lives at https://{tenant_subdomain}.togglebox.io."""

    api_key: Optional[str] = None
    """API key. Optional for self-hosted deployments."""

    config_version: str = "stable"
    """'stable', 'latest', or a specific version label."""

    timeout_ms: int = 5000
    """Request timeout in milliseconds."""

    refresh_interval_ms: int = 0
    """Background polling interval in milliseconds. 0 disables polling."""

    retry: RetryConfig = field(default_factory=lambda: DEFAULT_RETRY_CONFIG)
    """Retry configuration for definition fetches."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    """Cache configuration."""

    stats: StatsConfig = field(default_factory=StatsConfig)
    """Stats configuration."""

    def __post_init__(self):
        if self.api_url and self.tenant_subdomain:
            raise ConfigurationError("api_url and tenant_subdomain are mutually exclusive")
        if not self.api_url and not self.tenant_subdomain:
            raise ConfigurationError("Either api_url or tenant_subdomain is required")
        if not self.platform:
            raise ConfigurationError("platform is required")
        if not self.environment:
            raise ConfigurationError("environment is required")
        if self.stats.batch_size < 1:
            raise ConfigurationError("stats.batch_size must be at least 1")
        if self.timeout_ms <= 0:
            raise ConfigurationError("timeout_ms must be positive")

    @property
    def base_url(self) -> str:
        """Resolved API base URL without a trailing slash."""
        if self.api_url:
            return self.api_url.rstrip("/")
        return f"https://{self.tenant_subdomain}.{CLOUD_DOMAIN}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ToggleBoxConfig":
        """
        Build a configuration from ``TOGGLEBOX_*`` environment variables.

        ``TOGGLEBOX_ENVIRONMENT`` falls back to ``APP_ENV``, then 'production'.
        """
        env = os.environ if environ is None else environ

        return cls(
            platform=env.get("TOGGLEBOX_PLATFORM", "web"),
            environment=env.get("TOGGLEBOX_ENVIRONMENT", env.get("APP_ENV", "production")),
            api_url=env.get("TOGGLEBOX_API_URL") or None,
            tenant_subdomain=env.get("TOGGLEBOX_TENANT_SUBDOMAIN") or None,
            api_key=env.get("TOGGLEBOX_API_KEY") or None,
            config_version=env.get("TOGGLEBOX_CONFIG_VERSION", "stable"),
            timeout_ms=_env_int(env, "TOGGLEBOX_TIMEOUT_MS", 5000),
            refresh_interval_ms=_env_int(env, "TOGGLEBOX_REFRESH_INTERVAL_MS", 0),
            cache=CacheConfig(
                enabled=_env_bool(env, "TOGGLEBOX_CACHE_ENABLED", True),
                ttl_seconds=float(_env_int(env, "TOGGLEBOX_CACHE_TTL", 300)),
                prefix=env.get("TOGGLEBOX_CACHE_PREFIX", "togglebox"),
            ),
            stats=StatsConfig(
                enabled=_env_bool(env, "TOGGLEBOX_STATS_ENABLED", True),
                batch_size=_env_int(env, "TOGGLEBOX_STATS_BATCH_SIZE", 20),
                flush_on_terminate=_env_bool(env, "TOGGLEBOX_STATS_FLUSH_ON_TERMINATE", True),
            ),
        )


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
