"""
Configuration management for hydra-dispatch.

All limits, thresholds and model candidate lists are supplied here and
validated at load time.
"""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .types import ConfigError, Tier

DEFAULT_CONFIG_PATH = Path.home() / ".hydra" / "dispatch-config.json"


@dataclass
class BackendConfig:
    """Per-backend limits and connection settings."""

    requests_per_minute: int | None = None
    tokens_per_minute: int | None = None
    local: bool = False
    credential_env: str | None = None  # env var whose presence enables a cloud backend
    base_url: str | None = None


@dataclass
class ConcurrencyConfig:
    """Separate caps for local and cloud executions."""

    max_concurrent_local: int = 2
    max_concurrent_cloud: int = 4


@dataclass
class RetryConfig:
    """Exponential backoff policy."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    def delay_ms(self, attempts: int) -> int:
        """Backoff before the next attempt after `attempts` failures."""
        exponent = max(0, attempts - 1)
        return min(self.base_delay_ms * (2**exponent), self.max_delay_ms)


@dataclass
class LoadThresholds:
    """Host load thresholds (percent)."""

    cpu_high: float = 90.0
    cpu_medium: float = 70.0
    memory_high: float = 85.0
    cache_ttl_s: float = 5.0


@dataclass
class ModelCandidate:
    """One backend/model pair eligible for a tier."""

    backend: str
    model: str


@dataclass
class TierCandidates:
    """Ordered candidates for a tier, split by placement."""

    local: list[ModelCandidate] = field(default_factory=list)
    cloud: list[ModelCandidate] = field(default_factory=list)


@dataclass
class ExecutionConfig:
    """Timeouts and strategy parameters for the execution engine."""

    call_timeout_s: float = 120.0
    strategy_timeout_s: float = 60.0
    grace_period_s: float = 2.0
    consensus_threshold: float = 0.7
    max_parallel: int = 4
    min_valid_length: int = 10
    max_tokens: int = 4096
    temperature: float = 0.7


@dataclass
class ClassifierConfig:
    """Classifier behavior."""

    use_ai: bool = True
    backend: str | None = None  # defaults to the first lite candidate
    model: str | None = None
    cache_ttl_s: float = 300.0
    cache_size: int = 500
    fingerprint_chars: int = 500
    timeout_s: float = 5.0  # AI judgement budget before falling back to patterns


@dataclass
class CostConfig:
    """Spend tracking; alerts fire when a budget is set."""

    budget_dollars: float | None = None
    warning_threshold: float = 0.8


@dataclass
class QueueConfig:
    """Queue persistence and loop settings."""

    snapshot_path: str = "~/.hydra/queue-snapshot.json"
    state_path: str = "~/.hydra/queue-state.json"
    snapshot_interval_s: float = 30.0
    history_size: int = 100
    idle_poll_s: float = 1.0
    restore_on_start: bool = True


def _default_backends() -> dict[str, BackendConfig]:
    return {
        "ollama": BackendConfig(local=True, base_url="http://127.0.0.1:11434"),
        "anthropic": BackendConfig(
            requests_per_minute=50,
            tokens_per_minute=40000,
            credential_env="ANTHROPIC_API_KEY",
        ),
        "openai": BackendConfig(
            requests_per_minute=60,
            tokens_per_minute=90000,
            credential_env="OPENAI_API_KEY",
        ),
    }


def _default_tiers() -> dict[str, TierCandidates]:
    return {
        Tier.LITE.value: TierCandidates(
            local=[
                ModelCandidate("ollama", "llama3.2:1b"),
                ModelCandidate("ollama", "llama3.2:3b"),
            ],
            cloud=[
                ModelCandidate("anthropic", "claude-haiku-4-5-20251001"),
                ModelCandidate("openai", "gpt-4o-mini"),
            ],
        ),
        Tier.STANDARD.value: TierCandidates(
            local=[
                ModelCandidate("ollama", "llama3.2:3b"),
                ModelCandidate("ollama", "qwen2.5-coder:7b"),
            ],
            cloud=[
                ModelCandidate("anthropic", "claude-sonnet-4-20250514"),
                ModelCandidate("openai", "gpt-4o"),
            ],
        ),
        Tier.PRO.value: TierCandidates(
            local=[ModelCandidate("ollama", "qwen2.5-coder:14b")],
            cloud=[
                ModelCandidate("anthropic", "claude-opus-4-5-20251101"),
                ModelCandidate("openai", "o1"),
            ],
        ),
    }


@dataclass
class DispatchConfig:
    """
    Complete dispatch configuration.

    Loaded from JSON; missing sections fall back to defaults.
    """

    backends: dict[str, BackendConfig] = field(default_factory=_default_backends)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    load: LoadThresholds = field(default_factory=LoadThresholds)
    tiers: dict[str, TierCandidates] = field(default_factory=_default_tiers)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    cost: CostConfig = field(default_factory=CostConfig)

    def candidates(self, tier: Tier) -> TierCandidates:
        return self.tiers.get(tier.value) or TierCandidates()

    def is_local(self, backend: str) -> bool:
        backend_config = self.backends.get(backend)
        return bool(backend_config and backend_config.local)

    def validate(self) -> None:
        """Raise ConfigError on the first invalid value."""
        for name, backend in self.backends.items():
            for attr in ("requests_per_minute", "tokens_per_minute"):
                value = getattr(backend, attr)
                if value is not None and value <= 0:
                    raise ConfigError(f"backends.{name}.{attr} must be positive, got {value}")
            if not backend.local and not backend.credential_env:
                raise ConfigError(f"backends.{name}: cloud backend needs credential_env")

        if self.concurrency.max_concurrent_local < 0 or self.concurrency.max_concurrent_cloud < 0:
            raise ConfigError("concurrency caps must be >= 0")
        if self.concurrency.max_concurrent_local + self.concurrency.max_concurrent_cloud == 0:
            raise ConfigError("at least one concurrency slot is required")

        if self.retry.max_retries < 1:
            raise ConfigError("retry.max_retries must be >= 1")
        if self.retry.base_delay_ms < 0 or self.retry.max_delay_ms < self.retry.base_delay_ms:
            raise ConfigError("retry delays must satisfy 0 <= base_delay_ms <= max_delay_ms")

        if not 0 < self.load.cpu_medium < self.load.cpu_high <= 100:
            raise ConfigError("load thresholds must satisfy 0 < cpu_medium < cpu_high <= 100")
        if not 0 < self.load.memory_high <= 100:
            raise ConfigError("load.memory_high must be in (0, 100]")

        if not 0.0 <= self.execution.consensus_threshold <= 1.0:
            raise ConfigError("execution.consensus_threshold must be in [0, 1]")
        if self.execution.max_parallel < 1:
            raise ConfigError("execution.max_parallel must be >= 1")

        if self.classifier.timeout_s <= 0:
            raise ConfigError("classifier.timeout_s must be positive")
        if self.cost.budget_dollars is not None and self.cost.budget_dollars <= 0:
            raise ConfigError("cost.budget_dollars must be positive when set")
        if not 0 < self.cost.warning_threshold <= 1:
            raise ConfigError("cost.warning_threshold must be in (0, 1]")

        for tier_name, tier in self.tiers.items():
            try:
                Tier(tier_name)
            except ValueError as e:
                raise ConfigError(f"unknown tier {tier_name!r}") from e
            for candidate in [*tier.local, *tier.cloud]:
                if candidate.backend not in self.backends:
                    raise ConfigError(
                        f"tiers.{tier_name}: candidate {candidate.model!r} "
                        f"references unknown backend {candidate.backend!r}"
                    )
            for candidate in tier.local:
                if not self.is_local(candidate.backend):
                    raise ConfigError(
                        f"tiers.{tier_name}.local lists cloud backend {candidate.backend!r}"
                    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchConfig":
        defaults = cls()
        try:
            backends = (
                {name: BackendConfig(**cfg) for name, cfg in data["backends"].items()}
                if "backends" in data
                else defaults.backends
            )
            tiers = defaults.tiers
            if "tiers" in data:
                tiers = {
                    name: TierCandidates(
                        local=[ModelCandidate(**c) for c in cfg.get("local", [])],
                        cloud=[ModelCandidate(**c) for c in cfg.get("cloud", [])],
                    )
                    for name, cfg in data["tiers"].items()
                }
            return cls(
                backends=backends,
                concurrency=ConcurrencyConfig(**data.get("concurrency", {})),
                retry=RetryConfig(**data.get("retry", {})),
                load=LoadThresholds(**data.get("load", {})),
                tiers=tiers,
                execution=ExecutionConfig(**data.get("execution", {})),
                classifier=ClassifierConfig(**data.get("classifier", {})),
                queue=QueueConfig(**data.get("queue", {})),
                cost=CostConfig(**data.get("cost", {})),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def load(cls, path: Path | None = None) -> "DispatchConfig":
        """Load and validate configuration from file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if not path.exists():
            config = cls()
        else:
            with open(path) as f:
                try:
                    data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ConfigError(f"Failed to parse config {path}: {e}") from e
            config = cls.from_dict(data)

        config.validate()
        return config

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


# Default configuration instance
default_config = DispatchConfig()
