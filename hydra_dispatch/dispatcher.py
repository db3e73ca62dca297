"""
Top-level dispatcher wiring every component from one DispatchConfig.

Usage:
    async with Dispatcher() as dispatcher:
        item = await dispatcher.generate("Summarize this changelog ...")
        print(item.result)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .classifier import TaskClassifier
from .config import DispatchConfig
from .cost_tracker import CostTracker
from .execution_engine import ExecutionEngine
from .load_balancer import LoadBalancer, RouteOverrides
from .model_selector import ModelSelector
from .persistence import QueueSnapshotStore
from .providers import ProviderRegistry
from .queue_manager import QueueManager
from .rate_limiter import RateLimiter
from .resource_monitor import ResourceMonitor
from .types import Classification, ExecutionPlan, Priority, QueueItem, Strategy

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Owns the classifier, selector, balancer, engine and queue.

    Components can be injected for testing; anything omitted is built from
    the config.
    """

    def __init__(
        self,
        config: DispatchConfig | None = None,
        registry: ProviderRegistry | None = None,
        monitor: ResourceMonitor | None = None,
        store: QueueSnapshotStore | None = None,
        persist: bool = True,
    ):
        self.config = config or DispatchConfig()
        self.config.validate()

        self.registry = registry or ProviderRegistry.from_config(self.config)
        self.rate_limiter = RateLimiter(self.config.backends)
        self.monitor = monitor or ResourceMonitor(self.config.load)
        self.selector = ModelSelector(self.config, self.registry, self.rate_limiter)
        self.balancer = LoadBalancer(self.monitor, self.selector)
        self.classifier = TaskClassifier.from_config(self.config, self.registry)
        self.engine = ExecutionEngine(self.registry, self.config.execution, self.config.concurrency)
        self.cost_tracker = CostTracker(
            budget_dollars=self.config.cost.budget_dollars,
            warning_threshold=self.config.cost.warning_threshold,
        )

        if store is None and persist:
            store = QueueSnapshotStore(self.config.queue.snapshot_path, self.config.queue.state_path)
        self.queue = QueueManager(
            config=self.config,
            classifier=self.classifier,
            balancer=self.balancer,
            selector=self.selector,
            engine=self.engine,
            store=store,
            cost_tracker=self.cost_tracker,
        )

    @classmethod
    def from_config_file(cls, path: Path | None = None, **kwargs: Any) -> Dispatcher:
        return cls(config=DispatchConfig.load(path), **kwargs)

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self, force: bool = False) -> None:
        await self.queue.stop(force=force)

    async def __aenter__(self) -> Dispatcher:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def submit(
        self,
        prompt: str,
        priority: Priority = Priority.NORMAL,
        strategy: Strategy = Strategy.SINGLE,
        **metadata: Any,
    ) -> str:
        """Enqueue without waiting. Returns the item id."""
        return self.queue.enqueue(prompt, priority=priority, strategy=strategy, metadata=metadata)

    async def generate(
        self,
        prompt: str,
        priority: Priority = Priority.NORMAL,
        strategy: Strategy = Strategy.SINGLE,
        timeout: float | None = None,
        **metadata: Any,
    ) -> QueueItem:
        """
        Enqueue a prompt and wait for its terminal state.

        Args:
            prompt: Prompt text
            priority: Queue priority
            strategy: Execution strategy
            timeout: Seconds to wait before giving up
            **metadata: Stored on the item (e.g. force_local=True, system="...")

        Returns:
            The completed or failed QueueItem
        """
        if not self.queue.is_running:
            await self.start()
        item_id = self.submit(prompt, priority=priority, strategy=strategy, **metadata)
        return await self.queue.wait_for(item_id, timeout=timeout)

    async def generate_batch(
        self,
        prompts: list[str],
        priority: Priority = Priority.NORMAL,
        strategy: Strategy = Strategy.SINGLE,
        timeout: float | None = None,
    ) -> list[QueueItem]:
        """Enqueue several prompts and wait for all of them, in input order."""
        if not self.queue.is_running:
            await self.start()
        ids = [self.submit(p, priority=priority, strategy=strategy) for p in prompts]
        return list(
            await asyncio.gather(*(self.queue.wait_for(i, timeout=timeout) for i in ids))
        )

    async def classify(self, prompt: str, skip_ai: bool = False) -> Classification:
        return await self.classifier.classify(prompt, skip_ai=skip_ai)

    async def preview_route(
        self, prompt: str, overrides: RouteOverrides | None = None
    ) -> ExecutionPlan | None:
        """Plan a prompt would get right now, without dispatching it."""
        classification = await self.classifier.classify(prompt)
        plan = await self.balancer.resolve_route(classification, overrides)
        if plan is not None:
            self.selector.settle(plan, None)
        return plan

    def get_status(self) -> dict[str, Any]:
        return {
            "queue": self.queue.get_status(),
            "rate_limits": self.rate_limiter.get_statistics(),
            "load": self.monitor.get_statistics(),
            "classifier": self.classifier.get_statistics(),
            "costs": self.cost_tracker.get_summary(),
            "backends": self.registry.backends,
        }


# Global dispatcher instance
_dispatcher: Dispatcher | None = None


def get_dispatcher() -> Dispatcher:
    """Get global dispatcher, built from the default config file."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher.from_config_file()
    return _dispatcher


__all__ = ["Dispatcher", "get_dispatcher"]
