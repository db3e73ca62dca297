"""
Pytest configuration and fixtures for hydra-dispatch tests.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path so we can import the package without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from hydra_dispatch.config import (
    BackendConfig,
    ConcurrencyConfig,
    DispatchConfig,
    ModelCandidate,
    QueueConfig,
    RetryConfig,
    TierCandidates,
)
from hydra_dispatch.providers import BaseProvider, ProviderRegistry
from hydra_dispatch.resource_monitor import ResourceMonitor
from hydra_dispatch.types import ProviderResponse, Tier


class FakeProvider(BaseProvider):
    """
    Scripted provider.

    `responses` are returned in order (then `default`); `errors` are raised
    in order, with None meaning "answer normally this time".
    """

    def __init__(
        self,
        name: str = "fake",
        responses: list[str] | None = None,
        errors: list[Exception | None] | None = None,
        fail_with: Exception | None = None,
        delay: float = 0.0,
        available: bool = True,
        is_local: bool = False,
        usage: tuple[int, int] = (10, 20),
    ):
        self.name = name
        self.is_local = is_local
        self.usage = usage
        self.responses = list(responses or [])
        self.errors = list(errors or [])
        self.fail_with = fail_with
        self.delay = delay
        self.available = available
        self.default = f"A complete answer produced by {name}."
        self.calls: list[dict] = []
        self.checks = 0

    async def invoke(self, model, messages, max_tokens=4096, temperature=0.7):
        self.calls.append({"model": model, "messages": messages})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        if self.fail_with is not None:
            raise self.fail_with
        content = self.responses.pop(0) if self.responses else self.default
        input_tokens, output_tokens = self.usage
        return ProviderResponse(
            content=content, input_tokens=input_tokens, output_tokens=output_tokens, model=model
        )

    async def is_available(self):
        self.checks += 1
        return self.available

    @property
    def prompts(self) -> list[str]:
        return [call["messages"][-1]["content"] for call in self.calls]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fixed_monitor(cpu: float = 10.0, memory: float = 30.0) -> ResourceMonitor:
    """Monitor that always reads the given load."""
    return ResourceMonitor(reader=lambda: (cpu, memory))


def local_only_config(tmp_path: Path | None = None) -> DispatchConfig:
    """One local backend serving every tier, fast retries."""
    config = DispatchConfig()
    config.backends = {"ollama": BackendConfig(local=True)}
    config.tiers = {
        tier.value: TierCandidates(local=[ModelCandidate("ollama", "llama3.2:3b")]) for tier in Tier
    }
    config.concurrency = ConcurrencyConfig(max_concurrent_local=1, max_concurrent_cloud=1)
    config.retry = RetryConfig(max_retries=3, base_delay_ms=10, max_delay_ms=1000)
    base = tmp_path or Path("/nonexistent-hydra-test")
    config.queue = QueueConfig(
        snapshot_path=str(base / "queue-snapshot.json"),
        state_path=str(base / "queue-state.json"),
        idle_poll_s=0.05,
        restore_on_start=False,
    )
    config.classifier.use_ai = False
    return config


@pytest.fixture
def fake_clock():
    """Provide a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def dispatch_config():
    """Provide the default configuration."""
    return DispatchConfig()


@pytest.fixture
def ollama():
    """Provide a fake local backend."""
    return FakeProvider(name="ollama", is_local=True)


@pytest.fixture
def anthropic_fake():
    """Provide a fake Anthropic backend."""
    return FakeProvider(name="anthropic")


@pytest.fixture
def openai_fake():
    """Provide a fake OpenAI backend."""
    return FakeProvider(name="openai")


@pytest.fixture
def registry(ollama, anthropic_fake, openai_fake):
    """Provide a registry with all three default backends faked."""
    return ProviderRegistry(
        {"ollama": ollama, "anthropic": anthropic_fake, "openai": openai_fake}
    )


@pytest.fixture
def low_load_monitor():
    """Provide a monitor reporting an idle host."""
    return fixed_monitor(10.0, 30.0)


# Markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "hypothesis: property-based tests"
    )
    config.addinivalue_line(
        "markers", "slow: tests that take >1s"
    )
