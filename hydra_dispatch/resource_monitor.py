"""
Host resource monitoring for load-aware routing.

Samples CPU and memory through psutil and buckets the host into a load
level with a routing recommendation. Samples are cached briefly; a failed
sample never raises and assumes medium load instead.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

import psutil

from .config import LoadThresholds
from .types import LoadLevel, LoadSample, Recommendation

logger = logging.getLogger(__name__)

# Neutral reading used when sampling fails
NEUTRAL_CPU_PERCENT = 75.0
NEUTRAL_MEMORY_PERCENT = 60.0


def _prime_cpu_counter() -> None:
    """The first non-blocking cpu_percent call always reads 0.0; take it up front."""
    try:
        psutil.cpu_percent(interval=None)
    except (OSError, RuntimeError, psutil.Error) as e:
        logger.debug(f"Could not prime CPU counter: {e}")


def _read_psutil() -> tuple[float, float]:
    cpu = psutil.cpu_percent(interval=None)  # non-blocking, since last call
    mem = psutil.virtual_memory()
    return cpu, mem.percent


class ResourceMonitor:
    """
    Samples host load and recommends local, hybrid or cloud routing.

    Thresholds:
      - CPU > cpu_high or memory > memory_high  => cloud (high)
      - CPU in (cpu_medium, cpu_high]             => hybrid (medium)
      - otherwise                                 => local (low)
    """

    def __init__(
        self,
        thresholds: LoadThresholds | None = None,
        reader: Callable[[], tuple[float, float]] | None = None,
        clock: Callable[[], float] = time.time,
        history_size: int = 120,
    ):
        self.thresholds = thresholds or LoadThresholds()
        if reader is None:
            _prime_cpu_counter()
        self._reader = reader or _read_psutil
        self._clock = clock
        self._cached: LoadSample | None = None
        self._lock = threading.Lock()
        self.history: deque[LoadSample] = deque(maxlen=history_size)
        self._failures = 0

    def classify(self, cpu_percent: float, memory_percent: float) -> tuple[LoadLevel, Recommendation]:
        """Bucket a reading into a load level and recommendation."""
        t = self.thresholds
        if cpu_percent > t.cpu_high or memory_percent > t.memory_high:
            return LoadLevel.HIGH, Recommendation.CLOUD
        if cpu_percent > t.cpu_medium:
            return LoadLevel.MEDIUM, Recommendation.HYBRID
        return LoadLevel.LOW, Recommendation.LOCAL

    def sample_load(self, force: bool = False) -> LoadSample:
        """
        Current load sample, cached for `cache_ttl_s`.

        Args:
            force: Bypass the cache

        Returns:
            LoadSample (degraded=True when the reading failed)
        """
        now = self._clock()
        with self._lock:
            cached = self._cached
            if (
                not force
                and cached is not None
                and now - cached.sampled_at < self.thresholds.cache_ttl_s
            ):
                return cached

        try:
            cpu, memory = self._reader()
            level, recommendation = self.classify(cpu, memory)
            sample = LoadSample(
                cpu_percent=cpu,
                memory_percent=memory,
                sampled_at=now,
                level=level,
                recommendation=recommendation,
            )
        except (OSError, RuntimeError, psutil.Error) as e:
            self._failures += 1
            logger.warning(f"Load sampling failed, assuming medium load: {e}")
            sample = LoadSample(
                cpu_percent=NEUTRAL_CPU_PERCENT,
                memory_percent=NEUTRAL_MEMORY_PERCENT,
                sampled_at=now,
                level=LoadLevel.MEDIUM,
                recommendation=Recommendation.HYBRID,
                degraded=True,
            )

        with self._lock:
            self._cached = sample
            self.history.append(sample)

        if sample.level is LoadLevel.HIGH:
            logger.info(
                f"High host load (cpu={sample.cpu_percent:.0f}%, "
                f"mem={sample.memory_percent:.0f}%), recommending cloud"
            )
        return sample

    def get_statistics(self) -> dict[str, Any]:
        samples = list(self.history)
        if not samples:
            return {"samples": 0, "failures": self._failures}
        return {
            "samples": len(samples),
            "failures": self._failures,
            "avg_cpu_percent": round(sum(s.cpu_percent for s in samples) / len(samples), 1),
            "avg_memory_percent": round(sum(s.memory_percent for s in samples) / len(samples), 1),
            "last": {
                "level": samples[-1].level.value,
                "recommendation": samples[-1].recommendation.value,
                "degraded": samples[-1].degraded,
            },
        }


__all__ = ["ResourceMonitor"]
