"""
Cost tracking and token estimation for dispatched calls.

Local backends are free; cloud calls are priced per 1M tokens.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import tiktoken

from .types import ProviderResponse

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_encoding() -> Any:
    """Get cached tiktoken encoding (cl100k_base)."""
    try:
        return tiktoken.get_encoding("cl100k_base")
    except (OSError, ValueError) as e:
        # Encoding files are fetched on first use; offline hosts can't load them
        logger.warning(f"tiktoken encoding unavailable, using character estimate: {e}")
        return None


# Token costs per model (per 1M tokens), input / output in dollars
MODEL_COSTS: dict[str, dict[str, float]] = {
    "claude-opus-4-5-20251101": {"input": 15.0, "output": 75.0},
    "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
    "opus": {"input": 15.0, "output": 75.0},
    "sonnet": {"input": 3.0, "output": 15.0},
    "haiku": {"input": 1.0, "output": 5.0},
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "o1": {"input": 15.0, "output": 60.0},
    "o3-mini": {"input": 1.10, "output": 4.40},
}

FREE = {"input": 0.0, "output": 0.0}

# Default model for cost calculations when model is unknown
DEFAULT_MODEL_FOR_COSTS = "sonnet"


def get_model_costs(model: str, is_local: bool = False) -> dict[str, float]:
    """
    Get cost rates for a model.

    Args:
        model: Model name or alias
        is_local: Local models cost nothing

    Returns:
        Dict with 'input' and 'output' costs per 1M tokens
    """
    if is_local:
        return FREE

    if model in MODEL_COSTS:
        return MODEL_COSTS[model]

    # Match by family (e.g., "claude-sonnet-4-5" matches "sonnet")
    model_lower = model.lower()
    for key, costs in MODEL_COSTS.items():
        if key in model_lower or model_lower in key:
            return costs

    return MODEL_COSTS[DEFAULT_MODEL_FOR_COSTS]


def estimate_call_cost(
    input_tokens: int,
    output_tokens: int,
    model: str,
    is_local: bool = False,
) -> float:
    """Estimate cost in dollars for a single call."""
    costs = get_model_costs(model, is_local)
    return (input_tokens / 1_000_000) * costs["input"] + (output_tokens / 1_000_000) * costs[
        "output"
    ]


@dataclass
class UsageRecord:
    """Token usage for one completed call."""

    backend: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    is_local: bool = False
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cost(self) -> float:
        return estimate_call_cost(self.input_tokens, self.output_tokens, self.model, self.is_local)


@dataclass
class BudgetAlert:
    """Alert when the dollar budget threshold is crossed."""

    threshold_name: str
    threshold_value: float
    current_value: float
    message: str
    severity: str  # "warning", "critical"
    timestamp: float = field(default_factory=time.time)


class CostTracker:
    """
    Ledger of token usage and spend per backend and model.

    Thread-safe; records arrive from concurrent workers.
    """

    def __init__(self, budget_dollars: float | None = None, warning_threshold: float = 0.8):
        self.budget_dollars = budget_dollars
        self.warning_threshold = warning_threshold
        self._usage: list[UsageRecord] = []
        self._alerts: list[BudgetAlert] = []
        self._alert_callbacks: list[Callable[[BudgetAlert], None]] = []
        self._lock = threading.Lock()

    def record_usage(
        self,
        backend: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        is_local: bool = False,
        latency_ms: float = 0.0,
    ) -> UsageRecord:
        """Record token usage of a finished call."""
        usage = UsageRecord(
            backend=backend,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            is_local=is_local,
            latency_ms=latency_ms,
        )
        with self._lock:
            self._usage.append(usage)
        self._check_budget()
        return usage

    def _check_budget(self) -> None:
        if not self.budget_dollars:
            return
        total = self.total_cost
        fraction = total / self.budget_dollars
        if fraction >= 1.0:
            self._emit_alert(
                "cost_budget",
                self.budget_dollars,
                total,
                f"Cost budget exceeded: ${total:.2f} / ${self.budget_dollars:.2f}",
                "critical",
            )
        elif fraction >= self.warning_threshold:
            self._emit_alert(
                "cost_warning",
                self.budget_dollars * self.warning_threshold,
                total,
                f"Approaching cost budget: ${total:.2f} / ${self.budget_dollars:.2f} ({fraction:.0%})",
                "warning",
            )

    def _emit_alert(
        self,
        name: str,
        threshold: float,
        current: float,
        message: str,
        severity: str,
    ) -> None:
        with self._lock:
            for alert in self._alerts:
                if alert.threshold_name == name and alert.severity == severity:
                    return
            alert = BudgetAlert(
                threshold_name=name,
                threshold_value=threshold,
                current_value=current,
                message=message,
                severity=severity,
            )
            self._alerts.append(alert)

        logger.warning(message)
        for callback in self._alert_callbacks:
            callback(alert)

    def on_alert(self, callback: Callable[[BudgetAlert], None]) -> None:
        """Register callback for budget alerts."""
        self._alert_callbacks.append(callback)

    @property
    def total_tokens(self) -> int:
        with self._lock:
            return sum(u.total_tokens for u in self._usage)

    @property
    def total_cost(self) -> float:
        with self._lock:
            return sum(u.cost for u in self._usage)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self._usage)

    def get_breakdown_by_backend(self) -> dict[str, dict[str, Any]]:
        """Get usage and cost grouped by backend."""
        breakdown: dict[str, dict[str, Any]] = {}
        with self._lock:
            for usage in self._usage:
                entry = breakdown.setdefault(
                    usage.backend, {"calls": 0, "tokens": 0, "cost": 0.0, "latency_ms": 0.0}
                )
                entry["calls"] += 1
                entry["tokens"] += usage.total_tokens
                entry["cost"] += usage.cost
                entry["latency_ms"] += usage.latency_ms
        return breakdown

    def get_breakdown_by_model(self) -> dict[str, dict[str, Any]]:
        """Get usage and cost grouped by model."""
        breakdown: dict[str, dict[str, Any]] = {}
        with self._lock:
            for usage in self._usage:
                entry = breakdown.setdefault(
                    usage.model, {"input_tokens": 0, "output_tokens": 0, "cost": 0.0}
                )
                entry["input_tokens"] += usage.input_tokens
                entry["output_tokens"] += usage.output_tokens
                entry["cost"] += usage.cost
        return breakdown

    def get_summary(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "api_calls": self.call_count,
            "budget_dollars": self.budget_dollars,
            "by_backend": self.get_breakdown_by_backend(),
            "by_model": self.get_breakdown_by_model(),
            "alerts": [
                {"name": a.threshold_name, "message": a.message, "severity": a.severity}
                for a in self._alerts
            ],
        }

    def reset(self) -> None:
        with self._lock:
            self._usage.clear()
            self._alerts.clear()


# Token estimation utilities


def estimate_tokens(text: str) -> int:
    """
    Cheap token estimate (~4 characters per token).

    Used on the routing hot path; never touches the tokenizer.
    """
    if not text:
        return 0
    return max(1, len(text) // 4)


def estimate_tokens_accurate(text: str) -> int:
    """
    Count tokens with tiktoken (cl100k_base).

    Falls back to the character estimate when the encoding can't be loaded.
    """
    enc = _get_encoding()
    if enc is not None:
        return len(enc.encode(text))
    return estimate_tokens(text)


def estimate_messages_tokens(messages: list[dict[str, str]]) -> int:
    """Count input tokens for a chat message list."""
    total = 0
    for msg in messages:
        total += estimate_tokens_accurate(msg.get("content", ""))
        total += 4  # role and framing overhead
    return total


def fill_missing_usage(
    response: ProviderResponse, messages: list[dict[str, str]]
) -> ProviderResponse:
    """
    Count tokens a backend didn't report.

    Ollama omits prompt_eval_count on prompt-cache hits; without a count the
    rate limiter and the ledger would see the call as free of tokens.
    """
    if response.input_tokens and response.output_tokens:
        return response
    return dataclasses.replace(
        response,
        input_tokens=response.input_tokens or estimate_messages_tokens(messages),
        output_tokens=response.output_tokens or estimate_tokens_accurate(response.content),
    )


__all__ = [
    "BudgetAlert",
    "CostTracker",
    "DEFAULT_MODEL_FOR_COSTS",
    "MODEL_COSTS",
    "UsageRecord",
    "estimate_call_cost",
    "estimate_messages_tokens",
    "estimate_tokens",
    "estimate_tokens_accurate",
    "fill_missing_usage",
    "get_model_costs",
]
