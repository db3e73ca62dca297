"""
Concurrent multi-backend execution strategies.

Strategies:
- single: one call with the per-call timeout
- speculative: a fast and an accurate call in parallel
- race: first successful non-empty response wins
- consensus: all responses compared by word-set overlap
- batch: many independent jobs under local/cloud semaphores

Call errors are captured per call; a strategy only fails when every call
failed. Branches that lose are cancelled.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
import time
from collections.abc import Sequence
from typing import Any

from .config import ConcurrencyConfig, ExecutionConfig
from .cost_tracker import fill_missing_usage
from .providers import ProviderRegistry
from .types import (
    CallOutcome,
    DispatchError,
    ExecutionFailedError,
    ExecutionPlan,
    ExecutionResult,
    ProviderError,
    ProviderTimeoutError,
    Strategy,
)

logger = logging.getLogger(__name__)

Messages = list[dict[str, str]]

# Lowercase markers of refusals and error echoes
FAILURE_MARKERS = (
    "i cannot",
    "i can't",
    "i'm sorry",
    "i am sorry",
    "i'm unable",
    "i am unable",
    "as an ai",
    "error:",
)

_WORD_RE = re.compile(r"[a-z0-9']+")


def is_valid_response(content: str | None, min_length: int = 10) -> bool:
    """Non-empty, long enough, and free of failure markers."""
    if not content or not content.strip():
        return False
    text = content.strip()
    if len(text) < min_length:
        return False
    lowered = text.lower()
    return not any(marker in lowered for marker in FAILURE_MARKERS)


def word_set(text: str) -> set[str]:
    return set(_WORD_RE.findall(text.lower()))


def jaccard_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over normalized word sets."""
    words_a, words_b = word_set(a), word_set(b)
    union = words_a | words_b
    if not union:
        return 1.0
    return len(words_a & words_b) / len(union)


def average_similarity(texts: Sequence[str]) -> float:
    """Mean pairwise Jaccard similarity."""
    pairs = list(itertools.combinations(texts, 2))
    if not pairs:
        return 1.0
    return sum(jaccard_similarity(a, b) for a, b in pairs) / len(pairs)


class ExecutionEngine:
    """Run execution plans against the provider registry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: ExecutionConfig | None = None,
        concurrency: ConcurrencyConfig | None = None,
    ):
        self.registry = registry
        self.config = config or ExecutionConfig()
        self.concurrency = concurrency or ConcurrencyConfig()

    async def _call(self, plan: ExecutionPlan, messages: Messages) -> CallOutcome:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.registry.invoke(
                    plan.backend,
                    plan.model,
                    messages,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                ),
                timeout=self.config.call_timeout_s,
            )
        except asyncio.TimeoutError:
            error = ProviderTimeoutError(
                f"{plan.backend}: no answer within {self.config.call_timeout_s}s", plan.backend
            )
            return CallOutcome(plan=plan, error=error, elapsed_ms=_ms_since(start))
        except DispatchError as e:
            logger.debug(f"Call to {plan.key} failed: {e}")
            return CallOutcome(plan=plan, error=e, elapsed_ms=_ms_since(start))
        except Exception as e:
            # Adapter bugs and malformed payloads stay local to this call
            logger.warning(f"Call to {plan.key} raised {type(e).__name__}: {e}")
            error = ProviderError(f"{plan.backend}: {type(e).__name__}: {e}", plan.backend)
            error.__cause__ = e
            return CallOutcome(plan=plan, error=error, elapsed_ms=_ms_since(start))
        response = fill_missing_usage(response, messages)
        return CallOutcome(plan=plan, response=response, elapsed_ms=_ms_since(start))

    async def _wait(
        self,
        tasks: dict[asyncio.Task[CallOutcome], ExecutionPlan],
        subset: set[asyncio.Task[CallOutcome]],
        **kwargs: Any,
    ) -> tuple[set[asyncio.Task[CallOutcome]], set[asyncio.Task[CallOutcome]]]:
        """asyncio.wait that takes every strategy task down if the caller is cancelled."""
        try:
            return await asyncio.wait(subset, **kwargs)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

    async def _finish(
        self, tasks: dict[asyncio.Task[CallOutcome], ExecutionPlan]
    ) -> list[CallOutcome]:
        """Cancel unfinished tasks and collect one outcome per plan, in plan order."""
        unfinished = [t for t in tasks if not t.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)

        outcomes = []
        for task, plan in tasks.items():
            if task.cancelled():
                outcomes.append(
                    CallOutcome(
                        plan=plan,
                        error=ProviderTimeoutError(f"{plan.backend}: cancelled", plan.backend),
                    )
                )
            else:
                outcomes.append(task.result())
        return outcomes

    def _result(
        self,
        outcome: CallOutcome,
        strategy: Strategy,
        start: float,
        responses: list[CallOutcome],
        consensus: bool | None = None,
        reason: str | None = None,
    ) -> ExecutionResult:
        response = outcome.response
        if response is None:
            raise ExecutionFailedError(f"{outcome.plan.key} produced no response", [outcome])
        return ExecutionResult(
            content=response.content,
            backend=outcome.plan.backend,
            model=outcome.plan.model,
            strategy=strategy,
            elapsed_ms=_ms_since(start),
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            consensus=consensus,
            reason=reason,
            responses=responses,
        )

    def _valid(self, outcome: CallOutcome | None) -> bool:
        return (
            outcome is not None
            and outcome.succeeded
            and is_valid_response(outcome.response.content, self.config.min_valid_length)
        )

    async def execute(self, plan: ExecutionPlan, messages: Messages) -> ExecutionResult:
        """
        Single call.

        Raises:
            ProviderError: the call's own error, so fallback can inspect it
        """
        start = time.monotonic()
        outcome = await self._call(plan, messages)
        if outcome.error is not None:
            raise outcome.error
        return self._result(outcome, Strategy.SINGLE, start, [outcome])

    async def speculative(
        self,
        fast: ExecutionPlan,
        accurate: ExecutionPlan,
        messages: Messages,
        prefer_fast: bool = True,
        timeout_s: float | None = None,
    ) -> ExecutionResult:
        """
        Run a fast and an accurate plan in parallel.

        With prefer_fast, a valid fast answer within half the budget wins
        outright; otherwise the accurate answer is awaited for the rest of it.
        Without prefer_fast, the first completion opens a short grace window
        for the other, then accurate is preferred when valid.
        """
        budget = timeout_s or self.config.strategy_timeout_s
        start = time.monotonic()
        fast_task = asyncio.create_task(self._call(fast, messages))
        accurate_task = asyncio.create_task(self._call(accurate, messages))
        tasks = {fast_task: fast, accurate_task: accurate}

        if prefer_fast:
            await self._wait(tasks, {fast_task}, timeout=budget / 2)
            if fast_task.done() and self._valid(fast_task.result()):
                outcomes = await self._finish(tasks)
                return self._result(outcomes[0], Strategy.SPECULATIVE, start, outcomes, reason="fast")

            remaining = max(0.0, budget - (time.monotonic() - start))
            await self._wait(tasks, {accurate_task}, timeout=remaining)
        else:
            done, pending = await self._wait(
                tasks, set(tasks), timeout=budget, return_when=asyncio.FIRST_COMPLETED
            )
            if done and pending:
                await self._wait(tasks, pending, timeout=self.config.grace_period_s)

        outcomes = await self._finish(tasks)
        fast_outcome, accurate_outcome = outcomes

        if self._valid(accurate_outcome):
            return self._result(accurate_outcome, Strategy.SPECULATIVE, start, outcomes, reason="accurate")
        if self._valid(fast_outcome):
            return self._result(fast_outcome, Strategy.SPECULATIVE, start, outcomes, reason="fast")
        for outcome in (accurate_outcome, fast_outcome):
            if outcome.succeeded:
                return self._result(outcome, Strategy.SPECULATIVE, start, outcomes, reason="unvalidated")

        raise ExecutionFailedError("Both speculative calls failed", outcomes)

    async def race(
        self,
        plans: Sequence[ExecutionPlan],
        messages: Messages,
        timeout_s: float | None = None,
    ) -> ExecutionResult:
        """First successful non-empty response before the shared deadline."""
        if not plans:
            raise ExecutionFailedError("No plans to race")

        budget = timeout_s or self.config.strategy_timeout_s
        start = time.monotonic()
        deadline = start + budget
        tasks = {asyncio.create_task(self._call(p, messages)): p for p in plans}
        pending = set(tasks)
        winner: CallOutcome | None = None

        while pending and winner is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            done, pending = await self._wait(
                tasks, pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                outcome = task.result()
                if outcome.succeeded and outcome.response.content.strip():
                    winner = outcome
                    break

        outcomes = await self._finish(tasks)
        if winner is None:
            raise ExecutionFailedError(f"All {len(plans)} racing calls failed", outcomes)

        logger.debug(f"Race won by {winner.plan.key} in {winner.elapsed_ms:.0f}ms")
        return self._result(winner, Strategy.RACE, start, outcomes)

    async def consensus(
        self,
        plans: Sequence[ExecutionPlan],
        messages: Messages,
        threshold: float | None = None,
        timeout_s: float | None = None,
    ) -> ExecutionResult:
        """
        Query every plan and compare the answers.

        Average pairwise similarity >= threshold returns the longest answer
        with consensus=True; below it the first answer comes back with
        consensus=False and reason "low_consensus".
        """
        if not plans:
            raise ExecutionFailedError("No plans for consensus")

        threshold = self.config.consensus_threshold if threshold is None else threshold
        budget = timeout_s or self.config.strategy_timeout_s
        start = time.monotonic()
        tasks = {asyncio.create_task(self._call(p, messages)): p for p in plans}
        await self._wait(tasks, set(tasks), timeout=budget)
        outcomes = await self._finish(tasks)

        succeeded = [o for o in outcomes if o.succeeded and o.response.content.strip()]
        if not succeeded:
            raise ExecutionFailedError(f"All {len(plans)} consensus calls failed", outcomes)
        if len(succeeded) == 1:
            return self._result(
                succeeded[0], Strategy.CONSENSUS, start, outcomes, consensus=False, reason="single_response"
            )

        score = average_similarity([o.response.content for o in succeeded])
        logger.debug(f"Consensus score {score:.2f} over {len(succeeded)} responses")
        if score >= threshold:
            longest = max(succeeded, key=lambda o: len(o.response.content))
            return self._result(longest, Strategy.CONSENSUS, start, outcomes, consensus=True)
        return self._result(
            succeeded[0], Strategy.CONSENSUS, start, outcomes, consensus=False, reason="low_consensus"
        )

    async def batch(
        self,
        jobs: Sequence[tuple[ExecutionPlan, Messages]],
        max_local: int | None = None,
        max_cloud: int | None = None,
    ) -> list[ExecutionResult | Exception]:
        """
        Run independent jobs concurrently under separate local/cloud caps.

        Returns:
            One entry per job in input order: the result or the job's error
        """
        local_slots = asyncio.Semaphore(max(1, max_local or self.concurrency.max_concurrent_local))
        cloud_slots = asyncio.Semaphore(max(1, max_cloud or self.concurrency.max_concurrent_cloud))

        async def run(plan: ExecutionPlan, messages: Messages) -> ExecutionResult:
            async with local_slots if plan.is_local else cloud_slots:
                return await self.execute(plan, messages)

        results = await asyncio.gather(
            *(run(plan, messages) for plan, messages in jobs), return_exceptions=True
        )
        return list(results)

    async def run_strategy(
        self,
        strategy: Strategy,
        plans: Sequence[ExecutionPlan],
        messages: Messages,
    ) -> ExecutionResult:
        """
        Dispatch to a strategy; degrades to a single call with one plan.

        For speculative, plans[0] is the fast plan and plans[1] the accurate one.
        """
        if not plans:
            raise ExecutionFailedError("No execution plan")
        plans = list(plans)[: self.config.max_parallel]
        if strategy is Strategy.SINGLE or len(plans) == 1:
            return await self.execute(plans[0], messages)
        if strategy is Strategy.SPECULATIVE:
            return await self.speculative(plans[0], plans[1], messages)
        if strategy is Strategy.RACE:
            return await self.race(plans, messages)
        return await self.consensus(plans, messages)


def _ms_since(start: float) -> float:
    return (time.monotonic() - start) * 1000


__all__ = [
    "ExecutionEngine",
    "FAILURE_MARKERS",
    "average_similarity",
    "is_valid_response",
    "jaccard_similarity",
    "word_set",
]
