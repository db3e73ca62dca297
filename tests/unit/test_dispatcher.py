"""
Unit tests for the top-level dispatcher.
"""

import pytest

from conftest import FakeProvider, fixed_monitor, local_only_config
from hydra_dispatch.config import DispatchConfig
from hydra_dispatch.dispatcher import Dispatcher
from hydra_dispatch.load_balancer import RouteOverrides
from hydra_dispatch.providers import ProviderRegistry
from hydra_dispatch.types import (
    ClassificationSource,
    ConfigError,
    ItemStatus,
    Priority,
    Strategy,
    TaskCategory,
)


@pytest.fixture
def dispatcher(tmp_path, registry):
    config = DispatchConfig()
    config.classifier.use_ai = False
    config.queue = local_only_config(tmp_path).queue
    return Dispatcher(config=config, registry=registry, monitor=fixed_monitor(), persist=False)


class TestDispatcher:
    """Tests for Dispatcher."""

    def test_invalid_config_rejected(self):
        """Construction validates the config."""
        config = DispatchConfig()
        config.concurrency.max_concurrent_cloud = -1
        with pytest.raises(ConfigError):
            Dispatcher(config=config, registry=ProviderRegistry(), persist=False)

    @pytest.mark.asyncio
    async def test_generate_auto_starts(self, dispatcher, ollama):
        """generate() starts the queue and returns the finished item."""
        item = await dispatcher.generate("Summarize the changelog", timeout=5)
        await dispatcher.stop()

        assert item.status is ItemStatus.COMPLETED
        assert item.backend == "ollama"
        assert ollama.prompts == ["Summarize the changelog"]

    @pytest.mark.asyncio
    async def test_metadata_overrides_route(self, dispatcher, anthropic_fake):
        """force_cloud metadata sends an easy prompt to the cloud."""
        async with dispatcher:
            item = await dispatcher.generate("What is 2+2?", force_cloud=True, timeout=5)

        assert item.backend == "anthropic"
        assert len(anthropic_fake.calls) == 1
        assert dispatcher.cost_tracker.total_cost > 0

    @pytest.mark.asyncio
    async def test_cost_budget_alerts(self, tmp_path, registry, anthropic_fake):
        """The configured cost budget reaches the tracker and alerts fire."""
        config = DispatchConfig()
        config.classifier.use_ai = False
        config.queue = local_only_config(tmp_path).queue
        config.cost.budget_dollars = 1e-9
        dispatcher = Dispatcher(config=config, registry=registry, monitor=fixed_monitor(), persist=False)
        alerts = []
        dispatcher.cost_tracker.on_alert(alerts.append)

        async with dispatcher:
            await dispatcher.generate("What is 2+2?", force_cloud=True, timeout=5)

        assert [a.severity for a in alerts] == ["critical"]
        assert dispatcher.cost_tracker.budget_dollars == 1e-9

    @pytest.mark.asyncio
    async def test_generate_batch_keeps_order(self, dispatcher):
        """Batch results come back in input order."""
        prompts = ["first question", "second question", "third question"]

        async with dispatcher:
            items = await dispatcher.generate_batch(prompts, priority=Priority.HIGH, timeout=5)

        assert [i.prompt for i in items] == prompts
        assert all(i.status is ItemStatus.COMPLETED for i in items)

    @pytest.mark.asyncio
    async def test_consensus_strategy(self, dispatcher):
        """Multi-call strategies run through the queue."""
        async with dispatcher:
            item = await dispatcher.generate(
                "Explain how a hash map works", strategy=Strategy.CONSENSUS, timeout=5
            )

        assert item.status is ItemStatus.COMPLETED
        assert "consensus" in item.metadata

    @pytest.mark.asyncio
    async def test_classify(self, dispatcher):
        """classify() exposes the classifier."""
        result = await dispatcher.classify("Translate this sentence to French")
        assert result.category is TaskCategory.TRANSLATION
        assert result.source is ClassificationSource.PATTERN

    @pytest.mark.asyncio
    async def test_preview_route_releases_reservation(self, dispatcher):
        """Previewing a route doesn't consume rate-limit capacity."""
        dispatcher.rate_limiter.configure("anthropic", requests_per_minute=1)

        plan = await dispatcher.preview_route("hello", RouteOverrides(force_cloud=True))
        again = await dispatcher.preview_route("hello", RouteOverrides(force_cloud=True))

        assert plan.backend == "anthropic"
        assert again.backend == "anthropic"

    def test_submit_returns_id_without_running(self, dispatcher):
        """submit() only enqueues."""
        item_id = dispatcher.submit("later", priority=Priority.LOW, tag="x")
        item = dispatcher.queue.get_item(item_id)

        assert item.status is ItemStatus.PENDING
        assert item.metadata == {"tag": "x"}

    def test_get_status(self, dispatcher):
        """Status aggregates every component."""
        status = dispatcher.get_status()
        assert set(status) == {"queue", "rate_limits", "load", "classifier", "costs", "backends"}
        assert status["backends"] == ["ollama", "anthropic", "openai"]

    def test_from_config_file(self, tmp_path):
        """A saved config file builds an equivalent dispatcher."""
        path = tmp_path / "config.json"
        config = DispatchConfig()
        config.retry.max_retries = 7
        config.save(path)

        dispatcher = Dispatcher.from_config_file(
            path, registry=ollama_registry(), monitor=fixed_monitor(), persist=False
        )

        assert dispatcher.config.retry.max_retries == 7


def ollama_registry():
    return ProviderRegistry({"ollama": FakeProvider(name="ollama", is_local=True)})
