"""
Unit tests for queue_manager module.
"""

import asyncio
import json

import pytest

from conftest import FakeProvider, fixed_monitor, local_only_config
from hydra_dispatch.classifier import TaskClassifier
from hydra_dispatch.config import BackendConfig, ModelCandidate
from hydra_dispatch.execution_engine import ExecutionEngine
from hydra_dispatch.load_balancer import LoadBalancer
from hydra_dispatch.model_selector import ModelSelector
from hydra_dispatch.persistence import QueueSnapshotStore
from hydra_dispatch.providers import ProviderRegistry
from hydra_dispatch.queue_manager import QueueManager
from hydra_dispatch.types import (
    AuthError,
    ClassificationSource,
    DispatchError,
    ExecutionPlan,
    ItemStatus,
    NetworkError,
    Priority,
    QueueItem,
    Strategy,
    Tier,
)


def build(config, providers, cpu=10.0, with_store=True):
    registry = ProviderRegistry(providers)
    selector = ModelSelector(config, registry)
    store = None
    if with_store:
        store = QueueSnapshotStore(config.queue.snapshot_path, config.queue.state_path)
    return QueueManager(
        config=config,
        classifier=TaskClassifier(config=config.classifier),
        balancer=LoadBalancer(fixed_monitor(cpu), selector),
        selector=selector,
        engine=ExecutionEngine(registry, config.execution, config.concurrency),
        store=store,
    )


def with_cloud(config, *names, local=True, **limits):
    """Add cloud backends to every tier; drop local candidates if local=False."""
    for name in names:
        config.backends[name] = BackendConfig(credential_env=f"{name.upper()}_KEY", **limits)
    for tier in Tier:
        candidates = config.tiers[tier.value]
        candidates.cloud = [ModelCandidate(name, f"{name}-model") for name in names]
        if not local:
            candidates.local = []
    return config


class ExplodingClassifier(TaskClassifier):
    """Raises on the first `failures` calls, then classifies by pattern."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    async def classify(self, prompt, skip_ai=False):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("classifier bug")
        return await super().classify(prompt, skip_ai=True)


@pytest.fixture
def config(tmp_path):
    return local_only_config(tmp_path)


@pytest.fixture
def provider():
    return FakeProvider(name="ollama", is_local=True)


async def wait_until(predicate, timeout=2.0):
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestOrdering:
    """Tests for priority ordering."""

    def test_pending_ids_by_priority_then_arrival(self, config, provider):
        """High before normal before low; FIFO within a priority."""
        manager = build(config, {"ollama": provider})
        low = manager.enqueue("low task", Priority.LOW)
        normal_a = manager.enqueue("normal task a")
        high = manager.enqueue("high task", Priority.HIGH)
        normal_b = manager.enqueue("normal task b")

        assert manager.pending_ids() == [high, normal_a, normal_b, low]

    @pytest.mark.asyncio
    async def test_dispatch_follows_priority(self, config):
        """With one local slot, items reach the backend in priority order."""
        provider = FakeProvider(name="ollama", is_local=True, delay=0.01)
        manager = build(config, {"ollama": provider})
        manager.enqueue("low task", Priority.LOW)
        manager.enqueue("normal task")
        manager.enqueue("high task", Priority.HIGH)

        await manager.start()
        await manager.join(timeout=5)
        await manager.stop()

        assert provider.prompts == ["high task", "normal task", "low task"]


class TestProcessing:
    """Tests for completion, retry and failure."""

    @pytest.mark.asyncio
    async def test_completes_and_records_cost(self, config, provider):
        """A successful item completes with its result and usage recorded."""
        manager = build(config, {"ollama": provider})
        await manager.start()

        item_id = manager.enqueue("Summarize the release notes")
        item = await manager.wait_for(item_id, timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.COMPLETED
        assert item.result == "A complete answer produced by ollama."
        assert item.backend == "ollama"
        assert item.attempts == 0
        assert manager.cost_tracker.call_count == 1
        assert manager.cost_tracker.total_cost == 0.0
        assert manager.state.processed_count == 1

    @pytest.mark.asyncio
    async def test_system_metadata_becomes_system_message(self, config, provider):
        """A `system` metadata entry is sent as the system message."""
        manager = build(config, {"ollama": provider})
        await manager.start()

        item_id = manager.enqueue("hello", metadata={"system": "Be terse."})
        await manager.wait_for(item_id, timeout=5)
        await manager.stop()

        messages = provider.calls[0]["messages"]
        assert messages[0] == {"role": "system", "content": "Be terse."}
        assert messages[-1]["content"] == "hello"

    @pytest.mark.asyncio
    async def test_persistent_failure_exhausts_retries(self, config):
        """Always-failing work ends failed after max_retries with doubled backoff."""
        provider = FakeProvider(name="ollama", is_local=True, fail_with=NetworkError("reset", "ollama"))
        manager = build(config, {"ollama": provider})
        failed = []
        manager.on_failure(failed.append)
        await manager.start()

        item_id = manager.enqueue("doomed")
        item = await manager.wait_for(item_id, timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.FAILED
        assert item.attempts == 3
        assert item.last_delay_ms == 40
        assert "reset" in item.last_error
        assert len(provider.calls) == 3
        assert failed == [item]
        assert manager.state.failed_count == 1
        assert manager.state.retry_count == 2

    @pytest.mark.asyncio
    async def test_retry_then_success(self, config):
        """A transient failure is retried after backoff and then completes."""
        provider = FakeProvider(
            name="ollama", is_local=True, errors=[NetworkError("blip", "ollama"), None]
        )
        manager = build(config, {"ollama": provider})
        await manager.start()

        item = await manager.wait_for(manager.enqueue("flaky"), timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.COMPLETED
        assert item.attempts == 1
        assert item.last_delay_ms == 10
        assert item.last_error is None

    @pytest.mark.asyncio
    async def test_no_backend_fails_immediately(self, config):
        """Without any reachable backend the item fails without retries."""
        manager = build(config, {})
        await manager.start()

        item = await manager.wait_for(manager.enqueue("nowhere to go"), timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.FAILED
        assert item.attempts == 0
        assert item.last_error == "No backend available"

    @pytest.mark.asyncio
    async def test_hooks(self, config, provider):
        """Completion hooks run; a raising hook doesn't stop the queue."""
        manager = build(config, {"ollama": provider})
        seen = []

        def broken(item):
            raise RuntimeError("hook bug")

        manager.on_complete(broken)
        manager.on_complete(lambda item: seen.append(item.id))
        await manager.start()

        first = manager.enqueue("one")
        second = manager.enqueue("two")
        await manager.join(timeout=5)
        await manager.stop()

        assert seen == [first, second]


class TestLifecycle:
    """Tests for pause, stop and thread-safe submission."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, config, provider):
        """Paused queues dispatch nothing until resumed."""
        manager = build(config, {"ollama": provider})
        await manager.start()
        manager.pause()

        item_id = manager.enqueue("waiting")
        await asyncio.sleep(0.1)
        assert manager.get_item(item_id).status is ItemStatus.PENDING
        assert provider.calls == []

        manager.resume()
        item = await manager.wait_for(item_id, timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_force_stop_returns_work_and_snapshots(self, config):
        """Force stop cancels in-flight work back to pending and saves it."""
        provider = FakeProvider(name="ollama", is_local=True, delay=5.0)
        manager = build(config, {"ollama": provider})
        await manager.start()

        item_id = manager.enqueue("long running")
        await wait_until(lambda: manager.get_item(item_id).status is ItemStatus.PROCESSING)
        await manager.stop(force=True)

        assert manager.get_item(item_id).status is ItemStatus.PENDING
        assert not manager.is_running
        saved = json.loads(manager.store.snapshot_path.read_text())
        assert [d["id"] for d in saved["pending_items"]] == [item_id]

    @pytest.mark.asyncio
    async def test_graceful_stop_waits_for_in_flight(self, config):
        """A normal stop lets running work finish."""
        provider = FakeProvider(name="ollama", is_local=True, delay=0.05)
        manager = build(config, {"ollama": provider})
        await manager.start()

        item_id = manager.enqueue("finish me")
        await wait_until(lambda: manager.get_item(item_id).status is ItemStatus.PROCESSING)
        await manager.stop()

        assert manager.get_item(item_id).status is ItemStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_enqueue_from_another_thread(self, config, provider):
        """Items submitted from a worker thread wake the loop."""
        manager = build(config, {"ollama": provider})
        await manager.start()

        item_id = await asyncio.to_thread(manager.enqueue, "from a thread")
        item = await manager.wait_for(item_id, timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_wait_for_unknown_id(self, config, provider):
        """Unknown ids raise KeyError."""
        manager = build(config, {"ollama": provider})
        with pytest.raises(KeyError):
            await manager.wait_for("missing")


class TestPersistence:
    """Tests for snapshot and restore."""

    @pytest.mark.asyncio
    async def test_restore_from_snapshot(self, config):
        """A new manager picks up items saved by a previous one."""
        first = build(config, {"ollama": FakeProvider(name="ollama", is_local=True)})
        first.enqueue("survives restart", Priority.HIGH)
        first.enqueue("also survives")
        first.save_snapshot()

        provider = FakeProvider(name="ollama", is_local=True)
        second = build(config, {"ollama": provider})
        assert second.restore() == 2
        assert [second.get_item(i).prompt for i in second.pending_ids()] == [
            "survives restart",
            "also survives",
        ]

        await second.start()
        await second.join(timeout=5)
        await second.stop()
        assert provider.prompts == ["survives restart", "also survives"]

    @pytest.mark.asyncio
    async def test_restore_on_start(self, config, provider):
        """restore_on_start loads the snapshot when the loop starts."""
        first = build(config, {"ollama": provider})
        item_id = first.enqueue("from last run")
        first.save_snapshot()

        config.queue.restore_on_start = True
        second = build(config, {"ollama": provider})
        await second.start()
        item = await second.wait_for(item_id, timeout=5)
        await second.stop()

        assert item.status is ItemStatus.COMPLETED

    def test_restore_without_snapshot(self, config, provider):
        """Nothing saved means nothing restored."""
        assert build(config, {"ollama": provider}).restore() == 0

    def test_save_without_store_is_noop(self, config, provider):
        """Managers without a store skip persistence."""
        manager = build(config, {"ollama": provider}, with_store=False)
        manager.enqueue("x")
        manager.save_snapshot()
        assert manager.restore() == 0


class TestStatus:
    """Tests for history trimming and status reporting."""

    @pytest.mark.asyncio
    async def test_history_trimmed(self, config, provider):
        """Only the newest history_size terminal items are kept."""
        config.queue.history_size = 2
        manager = build(config, {"ollama": provider})
        await manager.start()

        ids = [manager.enqueue(f"task {i}") for i in range(3)]
        await manager.join(timeout=5)
        await manager.stop()

        assert manager.get_item(ids[0]) is None
        assert manager.get_item(ids[2]).status is ItemStatus.COMPLETED
        assert manager.get_status()["history_size"] == 2

    def test_status_counts(self, config, provider):
        """Status reports per-state counts."""
        manager = build(config, {"ollama": provider})
        manager.enqueue("a")
        manager.enqueue("b", Priority.HIGH)

        status = manager.get_status()

        assert status["counts"]["pending"] == 2
        assert status["pending"] == 2
        assert status["is_running"] is False
        assert status["active_local"] == 0


class TestRobustness:
    """Tests for failures that must not stall or stop the queue."""

    @pytest.mark.asyncio
    async def test_routing_exception_is_a_failed_attempt(self, config, provider):
        """An unexpected routing error retries the item and the loop keeps going."""
        manager = build(config, {"ollama": provider})
        manager.classifier = ExplodingClassifier(failures=1)
        await manager.start()

        first = manager.enqueue("first task")
        second = manager.enqueue("second task")
        await manager.join(timeout=5)

        assert manager.is_running
        assert not manager._loop_task.done()
        assert manager.get_item(first).status is ItemStatus.COMPLETED
        assert manager.get_item(first).attempts == 1
        assert manager.get_item(second).status is ItemStatus.COMPLETED
        await manager.stop()

    @pytest.mark.asyncio
    async def test_garbled_classifier_backend_falls_back_to_patterns(self, config, provider):
        """A judge that returns an unparseable body doesn't block dispatch."""
        judge = FakeProvider(name="judge", fail_with=json.JSONDecodeError("Expecting value", "<html>", 0))
        manager = build(config, {"ollama": provider})
        manager.classifier = TaskClassifier(
            registry=ProviderRegistry({"judge": judge}), backend="judge", model="tiny"
        )
        await manager.start()

        item = await manager.wait_for(manager.enqueue("hello there"), timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.COMPLETED
        assert item.classification.source is ClassificationSource.PATTERN
        assert len(judge.calls) == 1

    @pytest.mark.asyncio
    async def test_item_too_large_for_any_budget_fails(self, config):
        """An item no token budget can ever admit fails instead of waiting forever."""
        with_cloud(config, "anthropic", local=False, tokens_per_minute=100)
        anthropic = FakeProvider(name="anthropic")
        manager = build(config, {"anthropic": anthropic})
        await manager.start()

        item = await manager.wait_for(manager.enqueue("x" * 800), timeout=2)
        await manager.stop()

        assert item.status is ItemStatus.FAILED
        assert item.last_error == "No backend available"
        assert anthropic.calls == []

    @pytest.mark.asyncio
    async def test_unclassified_item_raises_dispatch_error(self, config, provider):
        """Executing an item that skipped classification is a DispatchError, not an assert."""
        manager = build(config, {"ollama": provider})
        plan = ExecutionPlan(backend="ollama", model="llama3.2:3b", is_local=True, tier=Tier.LITE)

        with pytest.raises(DispatchError, match="without a classification"):
            await manager._execute(QueueItem(prompt="orphan"), plan)
        assert provider.calls == []


class TestScheduling:
    """Tests for concurrency caps and saturation."""

    @pytest.mark.asyncio
    async def test_local_and_cloud_slots_are_separate(self, config):
        """A busy local slot holds back local work but not cloud work."""
        with_cloud(config, "anthropic")
        ollama = FakeProvider(name="ollama", is_local=True, delay=0.3)
        anthropic = FakeProvider(name="anthropic", delay=0.3)
        manager = build(config, {"ollama": ollama, "anthropic": anthropic})
        await manager.start()

        local_a = manager.enqueue("local a", metadata={"force_local": True})
        local_b = manager.enqueue("local b", metadata={"force_local": True})
        cloud = manager.enqueue("cloud c", metadata={"force_cloud": True})

        await wait_until(
            lambda: manager.get_status()["active_local"] == 1
            and manager.get_status()["active_cloud"] == 1
        )
        assert manager.get_item(local_a).status is ItemStatus.PROCESSING
        assert manager.get_item(cloud).status is ItemStatus.PROCESSING
        assert manager.get_item(local_b).status is ItemStatus.PENDING

        await manager.join(timeout=5)
        await manager.stop()
        assert ollama.prompts == ["local a", "local b"]
        assert anthropic.prompts == ["cloud c"]

    @pytest.mark.asyncio
    async def test_saturated_item_skipped_for_admissible_work(self, config):
        """A rate-limited high-priority item waits while lower-priority work proceeds."""
        with_cloud(config, "anthropic", requests_per_minute=1)
        ollama = FakeProvider(name="ollama", is_local=True)
        anthropic = FakeProvider(name="anthropic")
        manager = build(config, {"ollama": ollama, "anthropic": anthropic})
        limiter = manager.selector.rate_limiter
        held = limiter.reserve("anthropic")
        await manager.start()

        urgent = manager.enqueue("urgent", Priority.HIGH, metadata={"force_cloud": True})
        routine = manager.enqueue("routine", Priority.LOW, metadata={"force_local": True})

        done = await manager.wait_for(routine, timeout=5)
        assert done.status is ItemStatus.COMPLETED
        assert manager.get_item(urgent).status is ItemStatus.PENDING
        assert anthropic.calls == []

        limiter.release("anthropic", held)
        item = await manager.wait_for(urgent, timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.COMPLETED
        assert item.backend == "anthropic"
        assert item.attempts == 0


class TestStrategies:
    """Tests for multi-backend strategies run through the queue."""

    @pytest.mark.asyncio
    async def test_race_fallback_skips_failed_backends(self, config):
        """After a race fails on auth, the re-run never races the failed backends again."""
        with_cloud(config, "alpha", "beta", "gamma", local=False)
        config.execution.max_parallel = 2
        alpha = FakeProvider(name="alpha", fail_with=AuthError("bad key", "alpha"))
        beta = FakeProvider(name="beta", fail_with=AuthError("bad key", "beta"))
        gamma = FakeProvider(name="gamma")
        manager = build(config, {"alpha": alpha, "beta": beta, "gamma": gamma})
        await manager.start()

        item = await manager.wait_for(manager.enqueue("hello", strategy=Strategy.RACE), timeout=5)
        await manager.stop()

        assert item.status is ItemStatus.COMPLETED
        assert item.backend == "gamma"
        assert (len(alpha.calls), len(beta.calls), len(gamma.calls)) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_speculative_settles_every_reservation(self, config):
        """Both speculative calls run and no rate-limit reservation is left behind."""
        with_cloud(config, "anthropic", requests_per_minute=10)
        ollama = FakeProvider(name="ollama", is_local=True)
        anthropic = FakeProvider(name="anthropic")
        manager = build(config, {"ollama": ollama, "anthropic": anthropic})
        await manager.start()

        item = await manager.wait_for(
            manager.enqueue("hello", strategy=Strategy.SPECULATIVE), timeout=5
        )
        await manager.stop()

        window = manager.selector.rate_limiter.get_statistics()["windows"]["anthropic"]
        assert item.status is ItemStatus.COMPLETED
        assert (len(ollama.calls), len(anthropic.calls)) == (1, 1)
        assert window["reserved_requests"] == 0
