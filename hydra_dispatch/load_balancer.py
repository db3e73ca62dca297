"""
Load-aware route resolution.

Combines the host load recommendation with the model selector: low load
routes locally, medium load routes locally on a lighter tier, and high load
moves work to the cloud when a credential exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .model_selector import ModelSelector
from .resource_monitor import ResourceMonitor
from .types import Classification, ExecutionPlan, Recommendation

logger = logging.getLogger(__name__)


@dataclass
class RouteOverrides:
    """Caller-forced placement."""

    force_local: bool = False
    force_cloud: bool = False

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> RouteOverrides:
        metadata = metadata or {}
        return cls(
            force_local=bool(metadata.get("force_local", False)),
            force_cloud=bool(metadata.get("force_cloud", False)),
        )


class LoadBalancer:
    """Resolve routes from host load and classification."""

    def __init__(self, monitor: ResourceMonitor, selector: ModelSelector):
        self.monitor = monitor
        self.selector = selector

    async def resolve_route(
        self,
        task: Classification,
        overrides: RouteOverrides | None = None,
        exclude: tuple[str, ...] = (),
    ) -> ExecutionPlan | None:
        """
        Plan for a classified task.

        Args:
            task: Classification of the prompt
            overrides: Forced placement, checked before load
            exclude: Backends to skip

        Returns:
            ExecutionPlan or None if nothing is reachable
        """
        overrides = overrides or RouteOverrides()

        if overrides.force_local:
            return await self.selector.local_plan(task, exclude, reason="forced_local")
        if overrides.force_cloud:
            return await self.selector.cloud_plan(task, exclude, reason="forced_cloud")

        sample = self.monitor.sample_load()

        if sample.recommendation is Recommendation.LOCAL:
            return await self.selector.resolve_plan(task, prefer_local=True, exclude=exclude)

        if sample.recommendation is Recommendation.HYBRID:
            return await self.selector.resolve_plan(
                task, prefer_local=True, exclude=exclude, local_tier=task.tier.lighter()
            )

        if await self.selector.has_cloud_backend(exclude):
            return await self.selector.resolve_plan(task, prefer_local=False, exclude=exclude)

        logger.warning(
            f"High load (cpu={sample.cpu_percent:.0f}%) but no cloud credential; "
            f"degrading to lightest local model"
        )
        return await self.selector.lightest_local_plan(task, exclude, reason="no_cloud_available")

    def prefers_local(self) -> bool:
        return self.monitor.sample_load().recommendation is not Recommendation.CLOUD

    def local_concurrency(self, base_limit: int) -> int:
        """Local slot cap adjusted for current load."""
        if base_limit <= 0:
            return 0
        recommendation = self.monitor.sample_load().recommendation
        if recommendation is Recommendation.HYBRID:
            return max(1, base_limit // 2)
        if recommendation is Recommendation.CLOUD:
            return 1
        return base_limit

    async def candidate_plans(
        self, task: Classification, limit: int, exclude: tuple[str, ...] = ()
    ) -> list[ExecutionPlan]:
        """Distinct admitted plans for racing or consensus, skipping `exclude`."""
        recommendation = self.monitor.sample_load().recommendation
        local_tier = task.tier.lighter() if recommendation is Recommendation.HYBRID else None
        return await self.selector.candidate_plans(
            task,
            limit,
            prefer_local=recommendation is not Recommendation.CLOUD,
            local_tier=local_tier,
            exclude=exclude,
        )


__all__ = ["LoadBalancer", "RouteOverrides"]
