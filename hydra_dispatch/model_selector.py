"""
Model selection and cross-backend fallback.

Turns a Classification into an ExecutionPlan by walking the tier's ordered
local and cloud candidates, probing availability and rate-limit admission.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from .config import DispatchConfig, ModelCandidate
from .cost_tracker import estimate_call_cost
from .providers import ProviderRegistry
from .rate_limiter import RateLimiter
from .types import (
    BackendSaturatedError,
    CallOutcome,
    Classification,
    ExecutionFailedError,
    ExecutionPlan,
    ExecutionResult,
    ProviderError,
    Reservation,
    Tier,
)

logger = logging.getLogger(__name__)


class ModelSelector:
    """
    Resolve execution plans from tiered candidate lists.

    Every plan returned with `reserved=True` holds one rate-limiter
    reservation that must be settled with `settle()` or `settle_outcomes()`.
    """

    def __init__(
        self,
        config: DispatchConfig,
        registry: ProviderRegistry,
        rate_limiter: RateLimiter | None = None,
    ):
        self.config = config
        self.registry = registry
        self.rate_limiter = rate_limiter or RateLimiter(config.backends)

    def _plan(
        self,
        candidate: ModelCandidate,
        tier: Tier,
        estimated_tokens: int,
        reservation: Reservation,
        reason: str | None = None,
    ) -> ExecutionPlan:
        is_local = self.config.is_local(candidate.backend)
        half = estimated_tokens // 2
        return ExecutionPlan(
            backend=candidate.backend,
            model=candidate.model,
            is_local=is_local,
            tier=tier,
            cost_estimate=estimate_call_cost(half, estimated_tokens - half, candidate.model, is_local),
            reason=reason,
            reserved=True,
            reservation=reservation,
        )

    async def _first_admissible(
        self,
        candidates: Iterable[ModelCandidate],
        tier: Tier,
        estimated_tokens: int,
        exclude: Iterable[str],
        reason: str | None = None,
    ) -> tuple[ExecutionPlan | None, bool]:
        """
        First reachable candidate that is admitted.

        Returns:
            (plan, saw_saturated): saw_saturated is True when some reachable
            candidate was refused admission
        """
        excluded = set(exclude)
        saturated = False
        for candidate in candidates:
            if candidate.backend in excluded or not self._fits(candidate, estimated_tokens):
                continue
            if not await self.registry.is_available(candidate.backend):
                continue
            reservation = self.rate_limiter.reserve(candidate.backend, estimated_tokens)
            if reservation is not None:
                return self._plan(candidate, tier, estimated_tokens, reservation, reason), saturated
            saturated = True
        return None, saturated

    def _fits(self, candidate: ModelCandidate, estimated_tokens: int) -> bool:
        """Skip backends whose whole-window token budget is smaller than the request."""
        if self.rate_limiter.can_fit(candidate.backend, estimated_tokens):
            return True
        logger.warning(
            f"{candidate.backend} token budget can never admit ~{estimated_tokens} tokens; skipping"
        )
        return False

    async def resolve_plan(
        self,
        classification: Classification,
        prefer_local: bool,
        exclude: Iterable[str] = (),
        tier: Tier | None = None,
        local_tier: Tier | None = None,
    ) -> ExecutionPlan | None:
        """
        Resolve a plan for one dispatch attempt.

        Args:
            classification: Prompt classification
            prefer_local: Try local candidates first (only if local_suitable)
            exclude: Backends to skip (already failed this attempt)
            tier: Override the classification's tier
            local_tier: Tier used for local candidates (defaults to `tier`)

        Returns:
            ExecutionPlan, or None when no backend of any kind is reachable

        Raises:
            BackendSaturatedError: reachable backends exist but none admits
        """
        tier = tier or classification.tier
        local_tier = local_tier or tier
        exclude = tuple(exclude)
        estimated = classification.estimated_tokens
        saturated = False

        if prefer_local and classification.local_suitable:
            plan, hit = await self._first_admissible(
                self.config.candidates(local_tier).local, local_tier, estimated, exclude
            )
            saturated |= hit
            if plan is not None:
                logger.debug(f"Selected local {plan.key} for {classification.category.value}")
                return plan

        plan, hit = await self._first_admissible(
            self.config.candidates(tier).cloud, tier, estimated, exclude
        )
        saturated |= hit
        if plan is not None:
            logger.debug(f"Selected cloud {plan.key} for tier {tier.value}")
            return plan

        plan, hit = await self._first_admissible(
            self._lightest_local_candidates(), Tier.LITE, estimated, exclude, reason="last_resort"
        )
        saturated |= hit
        if plan is not None:
            logger.info(f"Falling back to lightest local model {plan.key}")
            return plan

        if saturated:
            raise BackendSaturatedError(
                f"All reachable backends refused admission for tier {tier.value}"
            )
        logger.warning(f"No backend reachable for tier {tier.value} (excluded: {list(exclude)})")
        return None

    def _lightest_local_candidates(self) -> list[ModelCandidate]:
        """Local candidates ordered lightest tier first, without duplicates."""
        seen: set[tuple[str, str]] = set()
        ordered: list[ModelCandidate] = []
        for tier in (Tier.LITE, Tier.STANDARD, Tier.PRO):
            for candidate in self.config.candidates(tier).local:
                key = (candidate.backend, candidate.model)
                if key not in seen:
                    seen.add(key)
                    ordered.append(candidate)
        return ordered

    async def lightest_local_plan(
        self,
        classification: Classification,
        exclude: Iterable[str] = (),
        reason: str | None = "last_resort",
    ) -> ExecutionPlan | None:
        """Smallest reachable local model, or None."""
        plan, saturated = await self._first_admissible(
            self._lightest_local_candidates(),
            Tier.LITE,
            classification.estimated_tokens,
            exclude,
            reason=reason,
        )
        if plan is None and saturated:
            raise BackendSaturatedError("Local backends refused admission")
        return plan

    async def local_plan(
        self,
        classification: Classification,
        exclude: Iterable[str] = (),
        reason: str | None = None,
    ) -> ExecutionPlan | None:
        """Local candidate of the classification's tier, ignoring suitability."""
        tier = classification.tier
        plan, saturated = await self._first_admissible(
            self.config.candidates(tier).local,
            tier,
            classification.estimated_tokens,
            exclude,
            reason=reason,
        )
        if plan is not None:
            return plan
        if saturated:
            raise BackendSaturatedError("Local backends refused admission")
        return await self.lightest_local_plan(classification, exclude, reason=reason)

    async def cloud_plan(
        self,
        classification: Classification,
        exclude: Iterable[str] = (),
        reason: str | None = None,
    ) -> ExecutionPlan | None:
        """Cloud candidate of the classification's tier, or None."""
        tier = classification.tier
        plan, saturated = await self._first_admissible(
            self.config.candidates(tier).cloud,
            tier,
            classification.estimated_tokens,
            exclude,
            reason=reason,
        )
        if plan is None and saturated:
            raise BackendSaturatedError("Cloud backends refused admission")
        return plan

    async def has_cloud_backend(self, exclude: Iterable[str] = ()) -> bool:
        """Whether any configured cloud backend is usable (credential present)."""
        excluded = set(exclude)
        for name, backend in self.config.backends.items():
            if backend.local or name in excluded:
                continue
            if await self.registry.is_available(name):
                return True
        return False

    async def candidate_plans(
        self,
        classification: Classification,
        limit: int,
        prefer_local: bool = True,
        local_tier: Tier | None = None,
        exclude: Iterable[str] = (),
    ) -> list[ExecutionPlan]:
        """
        Up to `limit` admitted plans for multi-backend strategies.

        Distinct backends are taken before a second model of the same backend.
        Backends in `exclude` (failed earlier in the fallback chain) are skipped.
        """
        excluded = set(exclude)
        tier = classification.tier
        local_tier = local_tier or tier
        local = [(c, local_tier) for c in self.config.candidates(local_tier).local]
        cloud = [(c, tier) for c in self.config.candidates(tier).cloud]
        ordered = local + cloud if prefer_local and classification.local_suitable else cloud + local

        # One model per backend first, then the remaining models
        seen: set[str] = set()
        first: list[tuple[ModelCandidate, Tier]] = []
        rest: list[tuple[ModelCandidate, Tier]] = []
        for pair in ordered:
            (rest if pair[0].backend in seen else first).append(pair)
            seen.add(pair[0].backend)

        estimated = classification.estimated_tokens
        plans: list[ExecutionPlan] = []
        for candidate, candidate_tier in [*first, *rest]:
            if len(plans) >= limit:
                break
            if candidate.backend in excluded or not self._fits(candidate, estimated):
                continue
            if not await self.registry.is_available(candidate.backend):
                continue
            reservation = self.rate_limiter.reserve(candidate.backend, estimated)
            if reservation is None:
                continue
            plans.append(self._plan(candidate, candidate_tier, estimated, reservation))
        return plans

    def settle(self, plan: ExecutionPlan, tokens_used: int | None) -> None:
        """Commit usage (tokens_used given) or release the plan's reservation."""
        if not plan.reserved:
            return
        if tokens_used is None:
            self.rate_limiter.release(plan.backend, plan.reservation)
        else:
            self.rate_limiter.commit(plan.backend, tokens_used, plan.reservation)
        plan.reserved = False
        plan.reservation = None

    def settle_outcomes(self, outcomes: Iterable[CallOutcome]) -> None:
        for outcome in outcomes:
            if outcome.succeeded and outcome.response is not None:
                self.settle(outcome.plan, outcome.response.total_tokens)
            else:
                self.settle(outcome.plan, None)


def _fallback_backends(error: Exception) -> list[str] | None:
    """Backends to exclude if `error` should fall back, else None."""
    if isinstance(error, ProviderError):
        return [error.backend] if error.triggers_fallback else None
    if isinstance(error, ExecutionFailedError):
        errors = error.errors
        if errors and all(isinstance(e, ProviderError) and e.triggers_fallback for e in errors):
            return [o.plan.backend for o in error.outcomes if o.error is not None]
    return None


class FallbackExecutor:
    """Run a plan, re-resolving to another backend on auth/rate-limit/overload errors."""

    def __init__(self, selector: ModelSelector):
        self.selector = selector
        self._execution_history: list[dict[str, Any]] = []

    async def execute(
        self,
        classification: Classification,
        plan: ExecutionPlan,
        run: Callable[[ExecutionPlan, tuple[str, ...]], Awaitable[ExecutionResult]],
        prefer_local: bool = True,
    ) -> ExecutionResult:
        """
        Execute with the cross-backend fallback chain.

        Args:
            classification: Classification used for re-resolution
            plan: Initial plan (holding a reservation)
            run: Async function(plan, excluded_backends) -> ExecutionResult;
                multi-backend strategies must not pick excluded backends
            prefer_local: Passed through to re-resolution

        Returns:
            ExecutionResult of the first plan that succeeds

        Raises:
            The last error when the chain is exhausted or the error is not
            fallback-eligible; BackendSaturatedError from re-resolution
        """
        excluded: list[str] = []
        current: ExecutionPlan | None = plan

        while current is not None:
            start = time.time()
            try:
                result = await run(current, tuple(excluded))
            except asyncio.CancelledError:
                self.selector.settle(current, None)
                raise
            except (ProviderError, ExecutionFailedError) as e:
                latency = (time.time() - start) * 1000
                self._settle_failure(current, e)
                self._record(current, False, latency, str(e))

                failed = _fallback_backends(e)
                if failed is None:
                    raise

                excluded.extend(b for b in failed if b not in excluded)
                logger.warning(f"{current.key} failed ({e}), re-resolving without {excluded}")
                next_plan = await self.selector.resolve_plan(
                    classification, prefer_local, exclude=excluded, tier=current.tier
                )
                if next_plan is None:
                    raise
                current = next_plan
                continue

            latency = (time.time() - start) * 1000
            if result.responses:
                self.selector.settle_outcomes(result.responses)
            self.selector.settle(current, result.total_tokens)
            self._record(current, True, latency)
            return result

        raise RuntimeError("Fallback chain started without a plan")

    def _settle_failure(self, plan: ExecutionPlan, error: Exception) -> None:
        if isinstance(error, ExecutionFailedError) and error.outcomes:
            self.selector.settle_outcomes(error.outcomes)
        self.selector.settle(plan, None)

    def _record(self, plan: ExecutionPlan, success: bool, latency_ms: float, error: str | None = None) -> None:
        entry: dict[str, Any] = {
            "backend": plan.backend,
            "model": plan.model,
            "success": success,
            "latency_ms": latency_ms,
        }
        if error is not None:
            entry["error"] = error
        self._execution_history.append(entry)

    def get_history(self) -> list[dict[str, Any]]:
        return list(self._execution_history)


__all__ = ["FallbackExecutor", "ModelSelector"]
