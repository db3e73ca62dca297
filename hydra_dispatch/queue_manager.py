"""
Persistent priority queue with retry/backoff.

Manages dispatch of queued prompts with:
  - Priority ordering (high > normal > low), stable by arrival
  - Separate local and cloud concurrency caps
  - Exponential backoff retries on a heap keyed by due time
  - Periodic atomic snapshots and restore on start

Design:
  - Collections are guarded by a threading.RLock so `enqueue` may be
    called from any thread; the loop is woken with call_soon_threadsafe
  - The loop sleeps on an asyncio.Event with a timeout set by the next
    retry due time, so an idle queue does not poll
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from .classifier import TaskClassifier
from .config import DispatchConfig
from .cost_tracker import CostTracker
from .execution_engine import ExecutionEngine
from .load_balancer import LoadBalancer, RouteOverrides
from .model_selector import FallbackExecutor, ModelSelector
from .persistence import QueueSnapshot, QueueSnapshotStore, QueueState
from .types import (
    BackendSaturatedError,
    Classification,
    DispatchError,
    ExecutionPlan,
    ExecutionResult,
    ItemStatus,
    Priority,
    QueueItem,
    Strategy,
    Tier,
)

logger = logging.getLogger(__name__)

ItemHook = Callable[[QueueItem], Any]

_TIER_ORDER = {tier: i for i, tier in enumerate(Tier)}


class QueueManager:
    """
    Owns every QueueItem and drives it to a terminal state.

    Items move pending -> processing -> completed, or back through retry
    until `max_retries` failed attempts make them failed.
    """

    def __init__(
        self,
        config: DispatchConfig,
        classifier: TaskClassifier,
        balancer: LoadBalancer,
        selector: ModelSelector,
        engine: ExecutionEngine,
        store: QueueSnapshotStore | None = None,
        cost_tracker: CostTracker | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.classifier = classifier
        self.balancer = balancer
        self.selector = selector
        self.engine = engine
        self.fallback = FallbackExecutor(selector)
        self.store = store
        self.cost_tracker = cost_tracker or CostTracker()
        self._clock = clock

        self._lock = threading.RLock()
        self._items: dict[str, QueueItem] = {}
        self._pending: list[tuple[int, int, str]] = []  # (priority ordinal, seq, id)
        self._retry: list[tuple[float, int, str]] = []  # (next_retry_at, seq, id)
        self._seq = itertools.count()
        self._history: deque[str] = deque()
        self._in_flight: dict[str, tuple[asyncio.Task[None], bool]] = {}
        self._local_active = 0
        self._cloud_active = 0
        self._waiters: dict[str, list[asyncio.Future[QueueItem]]] = {}

        self._complete_hooks: list[ItemHook] = []
        self._failure_hooks: list[ItemHook] = []

        self.state = QueueState()
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._saturated = False
        self._last_snapshot = 0.0

    # Submission

    def enqueue(
        self,
        prompt: str,
        priority: Priority = Priority.NORMAL,
        strategy: Strategy = Strategy.SINGLE,
        classification: Classification | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        Add a prompt to the queue. Safe to call from any thread.

        Returns:
            The new item's id
        """
        item = QueueItem(
            prompt=prompt,
            priority=priority,
            strategy=strategy,
            classification=classification,
            metadata=dict(metadata or {}),
            queued_at=self._clock(),
        )
        with self._lock:
            self._items[item.id] = item
            self._push_pending(item)
        logger.debug(f"Enqueued {item.id} ({priority.value}, {strategy.value})")
        self._wake_up()
        return item.id

    def _push_pending(self, item: QueueItem) -> None:
        heapq.heappush(self._pending, (item.priority.ordinal, next(self._seq), item.id))

    def _wake_up(self) -> None:
        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wake.set()
        else:
            loop.call_soon_threadsafe(wake.set)

    def pending_ids(self) -> list[str]:
        """Ids of pending items in dispatch order."""
        with self._lock:
            return [entry[2] for entry in sorted(self._pending)]

    # Lifecycle

    async def start(self) -> None:
        """Start the processing loop, restoring the last snapshot if configured."""
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        if self.store is not None and self.config.queue.restore_on_start:
            self.restore()

        self._running = True
        self.state.is_running = True
        self.state.start_time = self._clock()
        self._last_snapshot = time.monotonic()
        self._loop_task = asyncio.create_task(self._run())
        logger.info("Queue processing started")

    async def stop(self, force: bool = False) -> None:
        """
        Stop the loop.

        Args:
            force: Cancel in-flight work and return it to pending instead of
                waiting for it to finish
        """
        if not self._running:
            return
        self._running = False
        self._wake_up()

        tasks = [task for task, _ in self._in_flight.values()]
        if force:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._loop_task is not None:
            if force:
                self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        self.state.is_running = False
        self.save_snapshot()
        logger.info(f"Queue processing stopped (force={force})")

    def pause(self) -> None:
        """Stop dispatching new items; in-flight work continues."""
        self.state.is_paused = True
        logger.info("Queue paused")

    def resume(self) -> None:
        self.state.is_paused = False
        logger.info("Queue resumed")
        self._wake_up()

    @property
    def is_running(self) -> bool:
        return self._running

    # Processing loop

    async def _run(self) -> None:
        wake = self._wake
        if wake is None:
            raise RuntimeError("Queue loop started without start()")
        while self._running:
            wake.clear()
            if not self.state.is_paused:
                try:
                    self._promote_due_retries()
                    await self._fill_slots()
                except Exception:
                    logger.exception("Dispatch pass failed; queue keeps running")

            if time.monotonic() - self._last_snapshot >= self.config.queue.snapshot_interval_s:
                self.save_snapshot()

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(wake.wait(), timeout=self._idle_delay())

    def _idle_delay(self) -> float:
        """Seconds until the loop has a reason to run without being woken."""
        delay = max(
            0.0,
            self.config.queue.snapshot_interval_s - (time.monotonic() - self._last_snapshot),
        )
        with self._lock:
            if self._retry and not self.state.is_paused:
                delay = min(delay, max(0.0, self._retry[0][0] - self._clock()))
            if self._pending and self._saturated and not self.state.is_paused:
                delay = min(delay, self.config.queue.idle_poll_s)
        return delay

    def _promote_due_retries(self) -> None:
        now = self._clock()
        with self._lock:
            while self._retry and self._retry[0][0] <= now:
                _, _, item_id = heapq.heappop(self._retry)
                item = self._items.get(item_id)
                if item is None or item.status is not ItemStatus.RETRY:
                    continue
                item.status = ItemStatus.PENDING
                self._push_pending(item)
                logger.debug(f"Retry due for {item_id} (attempt {item.attempts + 1})")

    def _slots_free(self, is_local: bool, local_cap: int) -> bool:
        if is_local:
            return self._local_active < local_cap
        return self._cloud_active < self.config.concurrency.max_concurrent_cloud

    async def _fill_slots(self) -> None:
        """Dispatch pending items in priority order while slots remain."""
        local_cap = self.balancer.local_concurrency(self.config.concurrency.max_concurrent_local)
        with self._lock:
            entries = sorted(self._pending)
            self._pending.clear()

        deferred: list[tuple[int, int, str]] = []
        self._saturated = False
        index = 0

        # Entries not yet handled go back on the heap even if interrupted
        try:
            for index, entry in enumerate(entries):
                if not self._running or self.state.is_paused:
                    deferred.append(entry)
                    continue
                if not self._slots_free(True, local_cap) and not self._slots_free(False, local_cap):
                    deferred.append(entry)
                    continue

                with self._lock:
                    item = self._items.get(entry[2])
                if item is None or item.status is not ItemStatus.PENDING:
                    continue

                try:
                    if item.classification is None:
                        item.classification = await self.classifier.classify(item.prompt)
                    plan = await self.balancer.resolve_route(
                        item.classification, RouteOverrides.from_metadata(item.metadata)
                    )
                except BackendSaturatedError as e:
                    logger.debug(f"Deferring {item.id}: {e}")
                    self._saturated = True
                    deferred.append(entry)
                    continue
                except Exception as e:
                    # Routing errors count as a failed attempt
                    logger.exception(f"Could not route {item.id}")
                    self._record_failure(item, e)
                    continue

                if plan is None:
                    self._fail_immediately(item, "No backend available")
                    continue

                if not self._running or not self._slots_free(plan.is_local, local_cap):
                    self.selector.settle(plan, None)
                    deferred.append(entry)
                    continue

                self._dispatch(item, plan)
            index = len(entries)
        finally:
            with self._lock:
                for entry in [*deferred, *entries[index:]]:
                    heapq.heappush(self._pending, entry)

    def _dispatch(self, item: QueueItem, plan: ExecutionPlan) -> None:
        with self._lock:
            item.status = ItemStatus.PROCESSING
            item.started_at = self._clock()
            item.next_retry_at = None
            item.backend = plan.backend
            item.model = plan.model
        if plan.is_local:
            self._local_active += 1
        else:
            self._cloud_active += 1

        task = asyncio.create_task(self._process(item, plan))
        self._in_flight[item.id] = (task, plan.is_local)
        logger.debug(f"Dispatched {item.id} to {plan.key} ({item.strategy.value})")

    async def _process(self, item: QueueItem, plan: ExecutionPlan) -> None:
        try:
            result = await self._execute(item, plan)
        except asyncio.CancelledError:
            self._return_to_pending(item)
            raise
        except BackendSaturatedError as e:
            logger.debug(f"Re-queuing {item.id}: {e}")
            self._return_to_pending(item)
        except DispatchError as e:
            self._record_failure(item, e)
        except Exception as e:
            logger.exception(f"Unexpected error processing {item.id}")
            self._record_failure(item, e)
        else:
            self._complete(item, result)
        finally:
            self._in_flight.pop(item.id, None)
            if plan.is_local:
                self._local_active -= 1
            else:
                self._cloud_active -= 1
            self._wake_up()

    async def _execute(self, item: QueueItem, plan: ExecutionPlan) -> ExecutionResult:
        classification = _classification_of(item)
        messages = []
        if item.metadata.get("system"):
            messages.append({"role": "system", "content": str(item.metadata["system"])})
        messages.append({"role": "user", "content": item.prompt})

        async def run(current: ExecutionPlan, excluded: tuple[str, ...]) -> ExecutionResult:
            plans = await self._strategy_plans(item, current, excluded)
            try:
                return await self.engine.run_strategy(item.strategy, plans, messages)
            except asyncio.CancelledError:
                for extra in plans:
                    if extra is not current:
                        self.selector.settle(extra, None)
                raise

        return await self.fallback.execute(
            classification, plan, run, prefer_local=self.balancer.prefers_local()
        )

    async def _strategy_plans(
        self, item: QueueItem, current: ExecutionPlan, excluded: tuple[str, ...] = ()
    ) -> list[ExecutionPlan]:
        """Plans for the item's strategy; `current` is always included, `excluded` never."""
        if item.strategy is Strategy.SINGLE:
            return [current]

        wanted = 1 if item.strategy is Strategy.SPECULATIVE else self.engine.config.max_parallel - 1
        candidates = await self.balancer.candidate_plans(
            _classification_of(item), wanted + 1, exclude=excluded
        )
        extras: list[ExecutionPlan] = []
        for candidate in candidates:
            if candidate.key == current.key or len(extras) >= wanted:
                self.selector.settle(candidate, None)
            else:
                extras.append(candidate)

        if item.strategy is Strategy.SPECULATIVE and extras:
            # Fast plan first: lighter tier, local before cloud
            return sorted(
                [current, extras[0]], key=lambda p: (_TIER_ORDER[p.tier], not p.is_local)
            )
        return [current, *extras]

    # Outcomes

    def _complete(self, item: QueueItem, result: ExecutionResult) -> None:
        now = self._clock()
        with self._lock:
            item.status = ItemStatus.COMPLETED
            item.result = result.content
            item.backend = result.backend
            item.model = result.model
            item.completed_at = now
            item.last_error = None
            item.metadata["elapsed_ms"] = round(result.elapsed_ms, 1)
            if result.consensus is not None:
                item.metadata["consensus"] = result.consensus
            self.state.processed_count += 1
            self.state.last_processed = now
            self._add_history(item)

        for outcome in result.responses:
            if outcome.succeeded and outcome.response is not None:
                self.cost_tracker.record_usage(
                    backend=outcome.plan.backend,
                    model=outcome.plan.model,
                    input_tokens=outcome.response.input_tokens,
                    output_tokens=outcome.response.output_tokens,
                    is_local=outcome.plan.is_local,
                    latency_ms=outcome.elapsed_ms,
                )

        logger.info(f"Completed {item.id} on {item.backend}/{item.model}")
        self._run_hooks(self._complete_hooks, item)
        self._resolve_waiters(item)

    def _record_failure(self, item: QueueItem, error: Exception) -> None:
        now = self._clock()
        retry = self.config.retry
        with self._lock:
            item.attempts += 1
            item.last_error = str(error)
            delay_ms = retry.delay_ms(item.attempts)
            item.last_delay_ms = delay_ms
            if item.attempts >= retry.max_retries:
                item.status = ItemStatus.FAILED
                item.completed_at = now
                item.next_retry_at = None
                self.state.failed_count += 1
                self._add_history(item)
                terminal = True
            else:
                item.status = ItemStatus.RETRY
                item.next_retry_at = now + delay_ms / 1000
                heapq.heappush(self._retry, (item.next_retry_at, next(self._seq), item.id))
                self.state.retry_count += 1
                terminal = False

        if terminal:
            logger.error(f"Item {item.id} failed after {item.attempts} attempts: {error}")
            self._run_hooks(self._failure_hooks, item)
            self._resolve_waiters(item)
        else:
            logger.warning(
                f"Attempt {item.attempts} of {item.id} failed ({error}); retrying in {delay_ms}ms"
            )

    def _fail_immediately(self, item: QueueItem, message: str) -> None:
        with self._lock:
            item.status = ItemStatus.FAILED
            item.last_error = message
            item.completed_at = self._clock()
            self.state.failed_count += 1
            self._add_history(item)
        logger.error(f"Item {item.id} failed: {message}")
        self._run_hooks(self._failure_hooks, item)
        self._resolve_waiters(item)

    def _return_to_pending(self, item: QueueItem) -> None:
        with self._lock:
            item.status = ItemStatus.PENDING
            item.started_at = None
            self._push_pending(item)

    def _add_history(self, item: QueueItem) -> None:
        """Append a terminal item, trimming the oldest beyond history_size. Caller holds the lock."""
        self._history.append(item.id)
        while len(self._history) > self.config.queue.history_size:
            old_id = self._history.popleft()
            self._items.pop(old_id, None)

    def _run_hooks(self, hooks: list[ItemHook], item: QueueItem) -> None:
        for hook in hooks:
            try:
                hook(item)
            except Exception:
                logger.exception(f"Hook {hook!r} raised for item {item.id}")

    def _resolve_waiters(self, item: QueueItem) -> None:
        for future in self._waiters.pop(item.id, []):
            if not future.done():
                future.set_result(item)

    # Hooks and queries

    def on_complete(self, hook: ItemHook) -> None:
        """Register a callback invoked with each completed item."""
        self._complete_hooks.append(hook)

    def on_failure(self, hook: ItemHook) -> None:
        """Register a callback invoked with each permanently failed item."""
        self._failure_hooks.append(hook)

    def get_item(self, item_id: str) -> QueueItem | None:
        with self._lock:
            return self._items.get(item_id)

    async def wait_for(self, item_id: str, timeout: float | None = None) -> QueueItem:
        """
        Wait until an item reaches a terminal state.

        Raises:
            KeyError: unknown id
            asyncio.TimeoutError: timeout elapsed first
        """
        with self._lock:
            item = self._items.get(item_id)
        if item is None:
            raise KeyError(item_id)
        if item.is_terminal:
            return item

        future: asyncio.Future[QueueItem] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(item_id, []).append(future)
        return await asyncio.wait_for(future, timeout=timeout)

    async def join(self, timeout: float | None = None) -> None:
        """Wait until no item is pending, retrying or processing."""

        async def drain() -> None:
            while True:
                with self._lock:
                    open_ids = [i.id for i in self._items.values() if not i.is_terminal]
                if not open_ids:
                    return
                await asyncio.gather(*(self._wait_if_known(i) for i in open_ids))

        await asyncio.wait_for(drain(), timeout=timeout)

    async def _wait_if_known(self, item_id: str) -> None:
        with contextlib.suppress(KeyError):
            await self.wait_for(item_id)

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            counts = {status.value: 0 for status in ItemStatus}
            for item in self._items.values():
                counts[item.status.value] += 1
            return {
                "is_running": self._running,
                "is_paused": self.state.is_paused,
                "counts": counts,
                "pending": len(self._pending),
                "retry_scheduled": len(self._retry),
                "active_local": self._local_active,
                "active_cloud": self._cloud_active,
                "processed_count": self.state.processed_count,
                "failed_count": self.state.failed_count,
                "retry_count": self.state.retry_count,
                "start_time": self.state.start_time,
                "last_processed": self.state.last_processed,
                "history_size": len(self._history),
            }

    # Persistence

    def snapshot(self) -> QueueSnapshot:
        with self._lock:
            pending = [self._items[e[2]] for e in sorted(self._pending) if e[2] in self._items]
            retry = [self._items[e[2]] for e in sorted(self._retry) if e[2] in self._items]
        return QueueSnapshot(pending_items=pending, retry_items=retry, saved_at=self._clock())

    def save_snapshot(self) -> None:
        """Write snapshot and state documents; no-op without a store."""
        self._last_snapshot = time.monotonic()
        if self.store is None:
            return
        try:
            self.store.save_snapshot(self.snapshot())
            self.store.save_state(self.state)
        except OSError as e:
            logger.warning(f"Failed to save queue snapshot: {e}")

    def restore(self) -> int:
        """
        Load pending and retry items from the last snapshot.

        Returns:
            Number of items restored
        """
        if self.store is None:
            return 0
        snapshot = self.store.load_snapshot()
        state = self.store.load_state()
        if state is not None:
            self.state.processed_count = state.processed_count
            self.state.failed_count = state.failed_count
            self.state.retry_count = state.retry_count
            self.state.last_processed = state.last_processed
        if snapshot is None:
            return 0

        restored = 0
        with self._lock:
            for item in snapshot.pending_items:
                if item.id in self._items:
                    continue
                item.status = ItemStatus.PENDING
                self._items[item.id] = item
                self._push_pending(item)
                restored += 1
            for item in snapshot.retry_items:
                if item.id in self._items:
                    continue
                self._items[item.id] = item
                if item.next_retry_at is None:
                    item.status = ItemStatus.PENDING
                    self._push_pending(item)
                else:
                    item.status = ItemStatus.RETRY
                    heapq.heappush(self._retry, (item.next_retry_at, next(self._seq), item.id))
                restored += 1

        logger.info(f"Restored {restored} queue items from snapshot")
        self._wake_up()
        return restored


def _classification_of(item: QueueItem) -> Classification:
    if item.classification is None:
        raise DispatchError(f"Item {item.id} reached execution without a classification")
    return item.classification


__all__ = ["QueueManager"]
