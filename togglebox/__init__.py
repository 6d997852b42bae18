"""
ToggleBox Python SDK - remote configs, feature flags and experiments.

Usage:
    from togglebox import ToggleBoxClient, ToggleBoxConfig

    client = ToggleBoxClient(ToggleBoxConfig(platform="web", tenant_subdomain="acme"))
    await client.init()

    if client.is_flag_enabled("my-feature", client.context(user_id="42")):
        # Feature is enabled
        pass
"""

from togglebox.client import ToggleBoxClient
from togglebox.config import CacheConfig, StatsConfig, ToggleBoxConfig
from togglebox.retry import RetryConfig, calculate_backoff, is_retryable_error
from togglebox.cache import (
    CacheBackend,
    CacheStats,
    FileBackend,
    MemoryBackend,
    NamespacedCache,
    RedisBackend,
    ScopedClear,
)
from togglebox.context import (
    AnonymousUserResolver,
    CallableUserResolver,
    ContextBuilder,
    LocaleResolver,
    RequestLocaleResolver,
    RequestUserResolver,
    StaticLocaleResolver,
    UserResolver,
    bind_request,
    normalize_language,
)
from togglebox.dedup import DedupConfig, DedupStats, RequestDeduplicator
from togglebox.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorCategory,
    InternalError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ToggleBoxError,
    ValidationError,
    classify_error,
    error_for_status,
)
from togglebox.evaluate import Evaluator, assign_variant, evaluate_flag, fnv1a_32
from togglebox.models import (
    AssignmentMethod,
    Condition,
    Definitions,
    EvaluationContext,
    EvaluationSource,
    Event,
    EventKind,
    Experiment,
    ExperimentStatus,
    Flag,
    FlagResult,
    TargetingRule,
    Variation,
    VariantAssignment,
)
from togglebox.stats import FlushResult, StatsBatcher
from togglebox.store import DefinitionStore
from togglebox.transport import HttpTransport, Transport

__version__ = "0.1.0"
__all__ = [
    # Client
    "ToggleBoxClient",
    "ToggleBoxConfig",
    "CacheConfig",
    "StatsConfig",
    # Retry
    "RetryConfig",
    "calculate_backoff",
    "is_retryable_error",
    # Cache
    "CacheBackend",
    "CacheStats",
    "FileBackend",
    "MemoryBackend",
    "NamespacedCache",
    "RedisBackend",
    "ScopedClear",
    # Context
    "AnonymousUserResolver",
    "CallableUserResolver",
    "ContextBuilder",
    "LocaleResolver",
    "RequestLocaleResolver",
    "RequestUserResolver",
    "StaticLocaleResolver",
    "UserResolver",
    "bind_request",
    "normalize_language",
    # Dedup
    "DedupConfig",
    "DedupStats",
    "RequestDeduplicator",
    # Errors
    "AuthenticationError",
    "ConfigurationError",
    "ErrorCategory",
    "InternalError",
    "NetworkError",
    "NotFoundError",
    "RateLimitError",
    "ToggleBoxError",
    "ValidationError",
    "classify_error",
    "error_for_status",
    # Evaluation
    "Evaluator",
    "assign_variant",
    "evaluate_flag",
    "fnv1a_32",
    # Models
    "AssignmentMethod",
    "Condition",
    "Definitions",
    "EvaluationContext",
    "EvaluationSource",
    "Event",
    "EventKind",
    "Experiment",
    "ExperimentStatus",
    "Flag",
    "FlagResult",
    "TargetingRule",
    "Variation",
    "VariantAssignment",
    # Stats
    "FlushResult",
    "StatsBatcher",
    # Store / transport
    "DefinitionStore",
    "HttpTransport",
    "Transport",
]
