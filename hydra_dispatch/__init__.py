"""
hydra-dispatch: request orchestration across local and cloud LLM backends.

Routes generation requests with:
- Classification-driven tier selection (AI judge with pattern fallback)
- Per-backend sliding-window rate limits
- Host-load-aware local/cloud placement
- Speculative, racing, consensus and batch execution strategies
- A persistent priority queue with exponential backoff retries
"""

__version__ = "0.1.0"

from .classifier import PatternClassifier, TaskClassifier
from .config import (
    BackendConfig,
    ClassifierConfig,
    ConcurrencyConfig,
    CostConfig,
    DispatchConfig,
    ExecutionConfig,
    LoadThresholds,
    ModelCandidate,
    QueueConfig,
    RetryConfig,
    TierCandidates,
)
from .cost_tracker import CostTracker, estimate_tokens
from .dispatcher import Dispatcher, get_dispatcher
from .execution_engine import ExecutionEngine
from .load_balancer import LoadBalancer, RouteOverrides
from .model_selector import FallbackExecutor, ModelSelector
from .persistence import QueueSnapshot, QueueSnapshotStore, QueueState
from .providers import (
    AnthropicProvider,
    BaseProvider,
    OllamaProvider,
    OpenAIProvider,
    ProviderRegistry,
)
from .queue_manager import QueueManager
from .rate_limiter import Capacity, RateLimiter
from .resource_monitor import ResourceMonitor
from .types import (
    AuthError,
    BackendSaturatedError,
    CallOutcome,
    Classification,
    ClassificationParseError,
    ClassificationSource,
    ConfigError,
    DispatchError,
    ExecutionFailedError,
    ExecutionPlan,
    ExecutionResult,
    ItemStatus,
    LoadLevel,
    LoadSample,
    NetworkError,
    NoBackendAvailableError,
    OverloadError,
    Priority,
    ProviderError,
    ProviderResponse,
    ProviderTimeoutError,
    QueueItem,
    RateLimitError,
    Recommendation,
    Reservation,
    Strategy,
    TaskCategory,
    Tier,
)

__all__ = [
    # Version
    "__version__",
    # Orchestration
    "Dispatcher",
    "get_dispatcher",
    "QueueManager",
    "TaskClassifier",
    "PatternClassifier",
    "ModelSelector",
    "FallbackExecutor",
    "LoadBalancer",
    "RouteOverrides",
    "ExecutionEngine",
    "RateLimiter",
    "Capacity",
    "ResourceMonitor",
    "CostTracker",
    "estimate_tokens",
    # Persistence
    "QueueSnapshot",
    "QueueSnapshotStore",
    "QueueState",
    # Providers
    "BaseProvider",
    "OllamaProvider",
    "AnthropicProvider",
    "OpenAIProvider",
    "ProviderRegistry",
    # Config
    "BackendConfig",
    "ClassifierConfig",
    "ConcurrencyConfig",
    "CostConfig",
    "DispatchConfig",
    "ExecutionConfig",
    "LoadThresholds",
    "ModelCandidate",
    "QueueConfig",
    "RetryConfig",
    "TierCandidates",
    # Types
    "CallOutcome",
    "Classification",
    "ClassificationSource",
    "ExecutionPlan",
    "ExecutionResult",
    "ItemStatus",
    "LoadLevel",
    "LoadSample",
    "Priority",
    "ProviderResponse",
    "QueueItem",
    "Recommendation",
    "Reservation",
    "Strategy",
    "TaskCategory",
    "Tier",
    # Errors
    "DispatchError",
    "ConfigError",
    "ProviderError",
    "AuthError",
    "RateLimitError",
    "OverloadError",
    "NetworkError",
    "ProviderTimeoutError",
    "ClassificationParseError",
    "NoBackendAvailableError",
    "BackendSaturatedError",
    "ExecutionFailedError",
]
