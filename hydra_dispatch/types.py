"""
Shared type definitions for hydra-dispatch.

Contains the records passed between the classifier, selector, execution
engine and queue, plus the dispatch error classes.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class TaskCategory(str, Enum):
    """Kind of work a prompt asks for."""

    CODE = "code"
    DEBUGGING = "debugging"
    ANALYSIS = "analysis"
    CREATIVE = "creative"
    SUMMARIZATION = "summarization"
    TRANSLATION = "translation"
    PLANNING = "planning"
    FACTUAL = "factual"
    GENERAL = "general"


class Tier(str, Enum):
    """Complexity bucket selecting eligible model candidates."""

    LITE = "lite"
    STANDARD = "standard"
    PRO = "pro"

    @classmethod
    def from_complexity(cls, complexity: int) -> Tier:
        if complexity <= 3:
            return cls.LITE
        if complexity <= 7:
            return cls.STANDARD
        return cls.PRO

    def lighter(self) -> Tier:
        """One step down, saturating at lite."""
        if self is Tier.PRO:
            return Tier.STANDARD
        return Tier.LITE


class ClassificationSource(str, Enum):
    """Which path produced a classification."""

    AI = "ai"
    PATTERN = "pattern"
    CACHE = "cache"


class Priority(str, Enum):
    """Queue priority. Lower ordinal dequeues first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def ordinal(self) -> int:
        return _PRIORITY_ORDINALS[self]


_PRIORITY_ORDINALS = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class ItemStatus(str, Enum):
    """Lifecycle state of a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


class Strategy(str, Enum):
    """Execution strategy for a dispatched item."""

    SINGLE = "single"
    SPECULATIVE = "speculative"
    RACE = "race"
    CONSENSUS = "consensus"


class LoadLevel(str, Enum):
    """Host load bucket."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Recommendation(str, Enum):
    """Where new work should run given current load."""

    LOCAL = "local"
    HYBRID = "hybrid"
    CLOUD = "cloud"


# Local parallel-safety: categories that carry no cross-request state
PARALLEL_SAFE_CATEGORIES = frozenset(
    {
        TaskCategory.FACTUAL,
        TaskCategory.SUMMARIZATION,
        TaskCategory.TRANSLATION,
        TaskCategory.CODE,
        TaskCategory.CREATIVE,
        TaskCategory.GENERAL,
    }
)

LOCAL_SUITABLE_MAX_COMPLEXITY = 6


@dataclass(frozen=True)
class Classification:
    """
    Routing classification of a prompt.

    Immutable; the classifier cache stores these by value.
    """

    category: TaskCategory
    complexity: int
    tier: Tier
    local_suitable: bool
    parallel_safe: bool
    estimated_tokens: int
    source: ClassificationSource
    classified_at: float = field(default_factory=time.time)

    @classmethod
    def build(
        cls,
        category: TaskCategory,
        complexity: int,
        estimated_tokens: int,
        source: ClassificationSource,
        tier: Tier | None = None,
    ) -> Classification:
        """Derive tier and suitability flags from category and complexity."""
        complexity = max(1, min(10, int(complexity)))
        return cls(
            category=category,
            complexity=complexity,
            tier=tier or Tier.from_complexity(complexity),
            local_suitable=complexity <= LOCAL_SUITABLE_MAX_COMPLEXITY,
            parallel_safe=category in PARALLEL_SAFE_CATEGORIES,
            estimated_tokens=max(0, int(estimated_tokens)),
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["tier"] = self.tier.value
        data["source"] = self.source.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Classification:
        return cls(
            category=TaskCategory(data["category"]),
            complexity=data["complexity"],
            tier=Tier(data["tier"]),
            local_suitable=data["local_suitable"],
            parallel_safe=data["parallel_safe"],
            estimated_tokens=data["estimated_tokens"],
            source=ClassificationSource(data["source"]),
            classified_at=data.get("classified_at", time.time()),
        )


@dataclass(frozen=True)
class Reservation:
    """Handle for one admitted-but-unsettled rate-limit slot."""

    backend_key: str
    id: int
    generation: int  # window the slot was taken from
    tokens: int = 0


@dataclass
class ExecutionPlan:
    """Resolved backend + model for one dispatch attempt."""

    backend: str
    model: str
    is_local: bool
    tier: Tier
    cost_estimate: float = 0.0
    reason: str | None = None
    reserved: bool = False  # holds a rate-limiter reservation
    reservation: Reservation | None = None

    @property
    def key(self) -> str:
        return f"{self.backend}/{self.model}"


@dataclass
class LoadSample:
    """Point-in-time host load measurement."""

    cpu_percent: float
    memory_percent: float
    sampled_at: float
    level: LoadLevel
    recommendation: Recommendation
    degraded: bool = False


@dataclass
class QueueItem:
    """A unit of work owned by the queue manager."""

    prompt: str
    priority: Priority = Priority.NORMAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    classification: Classification | None = None
    status: ItemStatus = ItemStatus.PENDING
    strategy: Strategy = Strategy.SINGLE
    attempts: int = 0
    last_error: str | None = None
    queued_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    next_retry_at: float | None = None
    last_delay_ms: int | None = None
    result: str | None = None
    backend: str | None = None
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ItemStatus.COMPLETED, ItemStatus.FAILED)

    def is_due(self, now: float | None = None) -> bool:
        """Retry eligibility: now >= next_retry_at."""
        if self.next_retry_at is None:
            return True
        return (now if now is not None else time.time()) >= self.next_retry_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "priority": self.priority.value,
            "classification": self.classification.to_dict() if self.classification else None,
            "status": self.status.value,
            "strategy": self.strategy.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "queued_at": self.queued_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "next_retry_at": self.next_retry_at,
            "last_delay_ms": self.last_delay_ms,
            "result": self.result,
            "backend": self.backend,
            "model": self.model,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueItem:
        classification = data.get("classification")
        return cls(
            id=data["id"],
            prompt=data["prompt"],
            priority=Priority(data.get("priority", "normal")),
            classification=Classification.from_dict(classification) if classification else None,
            status=ItemStatus(data.get("status", "pending")),
            strategy=Strategy(data.get("strategy", "single")),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
            queued_at=data.get("queued_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            next_retry_at=data.get("next_retry_at"),
            last_delay_ms=data.get("last_delay_ms"),
            result=data.get("result"),
            backend=data.get("backend"),
            model=data.get("model"),
            metadata=data.get("metadata", {}),
        )


@dataclass
class ProviderResponse:
    """Response from a generation backend."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    stop_reason: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CallOutcome:
    """Outcome of one backend call inside a strategy."""

    plan: ExecutionPlan
    response: ProviderResponse | None = None
    error: Exception | None = None
    elapsed_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.response is not None


@dataclass
class ExecutionResult:
    """Reduced result of a strategy run."""

    content: str
    backend: str
    model: str
    strategy: Strategy
    elapsed_ms: float
    input_tokens: int = 0
    output_tokens: int = 0
    consensus: bool | None = None
    reason: str | None = None
    responses: list[CallOutcome] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# Dispatch Error Classes


class DispatchError(Exception):
    """Base class for dispatch errors."""

    pass


class ConfigError(DispatchError):
    """Configuration failed validation."""

    pass


class ProviderError(DispatchError):
    """A backend call failed."""

    kind = "provider"
    # Whether the selector should re-resolve excluding the failed backend
    triggers_fallback = False

    def __init__(self, message: str, backend: str = ""):
        self.backend = backend
        super().__init__(message)


class AuthError(ProviderError):
    """Bad or missing credential."""

    kind = "auth"
    triggers_fallback = True


class RateLimitError(ProviderError):
    """Backend refused the call due to rate limits."""

    kind = "rate_limit"
    triggers_fallback = True


class OverloadError(ProviderError):
    """Backend is overloaded or temporarily unavailable."""

    kind = "overload"
    triggers_fallback = True


class NetworkError(ProviderError):
    """Connection-level failure."""

    kind = "network"


class ProviderTimeoutError(ProviderError):
    """Backend did not answer within the call timeout."""

    kind = "timeout"


class ClassificationParseError(DispatchError):
    """Classifier reply could not be parsed."""

    pass


class NoBackendAvailableError(DispatchError):
    """No backend of any kind is reachable for an item."""

    pass


class BackendSaturatedError(DispatchError):
    """Reachable backends exist but none admits the request right now."""

    pass


class ExecutionFailedError(DispatchError):
    """Every call of a strategy failed."""

    def __init__(self, message: str, outcomes: list[CallOutcome] | None = None):
        self.outcomes = outcomes or []
        super().__init__(message)

    @property
    def errors(self) -> list[Exception]:
        return [o.error for o in self.outcomes if o.error is not None]
