"""
Unit tests for resource_monitor module.
"""

import psutil
import pytest

from hydra_dispatch.config import LoadThresholds
from hydra_dispatch.resource_monitor import ResourceMonitor
from hydra_dispatch.types import LoadLevel, Recommendation


class TestClassify:
    """Tests for threshold bucketing."""

    @pytest.mark.parametrize(
        "cpu,mem,level,recommendation",
        [
            (10, 30, LoadLevel.LOW, Recommendation.LOCAL),
            (70, 30, LoadLevel.LOW, Recommendation.LOCAL),
            (71, 30, LoadLevel.MEDIUM, Recommendation.HYBRID),
            (90, 30, LoadLevel.MEDIUM, Recommendation.HYBRID),
            (95, 30, LoadLevel.HIGH, Recommendation.CLOUD),
            (10, 90, LoadLevel.HIGH, Recommendation.CLOUD),
        ],
    )
    def test_thresholds(self, cpu, mem, level, recommendation):
        """CPU and memory readings map to level and recommendation."""
        assert ResourceMonitor().classify(cpu, mem) == (level, recommendation)

    def test_custom_thresholds(self):
        """Thresholds come from configuration."""
        monitor = ResourceMonitor(LoadThresholds(cpu_high=50, cpu_medium=20, memory_high=60))
        assert monitor.classify(55, 10)[1] is Recommendation.CLOUD
        assert monitor.classify(30, 10)[1] is Recommendation.HYBRID


class TestSampleLoad:
    """Tests for sample_load."""

    def test_sample_uses_reader(self, fake_clock):
        """Samples carry the reader's values."""
        monitor = ResourceMonitor(reader=lambda: (95.0, 40.0), clock=fake_clock)

        sample = monitor.sample_load()

        assert sample.cpu_percent == 95.0
        assert sample.recommendation is Recommendation.CLOUD
        assert sample.degraded is False

    def test_sample_cached_within_ttl(self, fake_clock):
        """Samples are reused within the cache TTL."""
        reads = []

        def reader():
            reads.append(1)
            return 10.0, 10.0

        monitor = ResourceMonitor(LoadThresholds(cache_ttl_s=5), reader=reader, clock=fake_clock)
        monitor.sample_load()
        fake_clock.advance(4)
        monitor.sample_load()
        assert len(reads) == 1

        fake_clock.advance(2)
        monitor.sample_load()
        assert len(reads) == 2

    def test_force_bypasses_cache(self, fake_clock):
        """force=True always reads."""
        reads = []

        def reader():
            reads.append(1)
            return 10.0, 10.0

        monitor = ResourceMonitor(reader=reader, clock=fake_clock)
        monitor.sample_load()
        monitor.sample_load(force=True)
        assert len(reads) == 2

    @pytest.mark.parametrize("error", [OSError("no /proc"), RuntimeError("boom"), psutil.AccessDenied()])
    def test_failure_assumes_medium_load(self, fake_clock, error):
        """A failed reading yields a degraded hybrid sample instead of raising."""

        def reader():
            raise error

        monitor = ResourceMonitor(reader=reader, clock=fake_clock)

        sample = monitor.sample_load()

        assert sample.degraded is True
        assert sample.level is LoadLevel.MEDIUM
        assert sample.recommendation is Recommendation.HYBRID

    def test_statistics(self, fake_clock):
        """Statistics summarize the history."""
        monitor = ResourceMonitor(reader=lambda: (20.0, 40.0), clock=fake_clock)
        assert monitor.get_statistics()["samples"] == 0

        monitor.sample_load()
        fake_clock.advance(10)
        monitor.sample_load()

        stats = monitor.get_statistics()
        assert stats["samples"] == 2
        assert stats["avg_cpu_percent"] == 20.0
        assert stats["last"]["recommendation"] == "local"

    def test_default_reader_returns_percentages(self):
        """The psutil reader produces usable values."""
        sample = ResourceMonitor().sample_load()
        assert 0.0 <= sample.memory_percent <= 100.0

    def test_default_reader_primes_cpu_counter(self, monkeypatch):
        """Construction takes the throwaway first cpu_percent reading."""
        calls = []
        monkeypatch.setattr(psutil, "cpu_percent", lambda interval=None: calls.append(interval) or 42.0)

        monitor = ResourceMonitor()
        assert calls == [None]

        assert monitor.sample_load().cpu_percent == 42.0
        assert len(calls) == 2

    def test_injected_reader_skips_priming(self, monkeypatch):
        """A custom reader never touches psutil."""
        calls = []
        monkeypatch.setattr(psutil, "cpu_percent", lambda interval=None: calls.append(interval) or 0.0)

        ResourceMonitor(reader=lambda: (5.0, 5.0)).sample_load()

        assert calls == []
