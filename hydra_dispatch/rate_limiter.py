"""
Per-backend sliding-window admission control.

Each configured backend gets a 60 second window with a request budget and a
token budget. Admission reserves a slot so that concurrent dispatchers
cannot overshoot the budget; `commit` turns the reservation into counted
usage once the backend has answered.

Reservations carry the generation of the window they were taken from. When
the window rolls over, settling an older reservation is a no-op, so a call
admitted in the previous window can't free a slot held by a newer one.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import BackendConfig
from .types import Reservation

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class Capacity:
    """Remaining budget of a window, as percentages."""

    requests_percent: float
    tokens_percent: float


@dataclass
class RateLimitWindow:
    """Counters for one backend's current window."""

    backend_key: str
    window_start: float
    request_limit: int | None
    token_limit: int | None
    generation: int = 0
    request_count: int = 0
    token_count: int = 0
    # Reservation id -> estimated tokens, oldest first
    reservations: dict[int, int] = field(default_factory=dict)

    @property
    def reserved_requests(self) -> int:
        return len(self.reservations)

    @property
    def reserved_tokens(self) -> int:
        return sum(self.reservations.values())

    def expired(self, now: float) -> bool:
        return now - self.window_start >= WINDOW_SECONDS

    def reset(self, now: float, generation: int) -> None:
        self.window_start = now
        self.generation = generation
        self.request_count = 0
        self.token_count = 0
        self.reservations.clear()

    def take(self, reservation: Reservation | None) -> bool:
        """Remove a reservation (the oldest when none is given). False if nothing was held."""
        if reservation is None:
            if not self.reservations:
                return False
            del self.reservations[next(iter(self.reservations))]
            return True
        if reservation.generation != self.generation:
            return False
        return self.reservations.pop(reservation.id, None) is not None


class RateLimiter:
    """
    Sliding time-window rate limiter keyed by backend.

    Unconfigured backends are never limited (fail-open). All window
    mutations happen under a single lock.
    """

    def __init__(
        self,
        limits: dict[str, BackendConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limits: dict[str, BackendConfig] = {
            name: cfg
            for name, cfg in (limits or {}).items()
            if cfg.requests_per_minute is not None or cfg.tokens_per_minute is not None
        }
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._generations = itertools.count(1)
        self._stats = {"admitted": 0, "rejected": 0, "committed": 0, "released": 0, "stale": 0}

    def configure(
        self,
        backend_key: str,
        requests_per_minute: int | None = None,
        tokens_per_minute: int | None = None,
    ) -> None:
        """Set or replace the limits of a backend."""
        with self._lock:
            self._limits[backend_key] = BackendConfig(
                requests_per_minute=requests_per_minute,
                tokens_per_minute=tokens_per_minute,
            )
            self._windows.pop(backend_key, None)

    def is_configured(self, backend_key: str) -> bool:
        return backend_key in self._limits

    def can_fit(self, backend_key: str, estimated_tokens: int) -> bool:
        """
        Whether a request of this size could be admitted by an empty window.

        False means waiting will never help: the estimate alone exceeds the
        backend's token budget.
        """
        limits = self._limits.get(backend_key)
        if limits is None or limits.tokens_per_minute is None:
            return True
        return estimated_tokens < limits.tokens_per_minute

    def _window(self, backend_key: str, now: float) -> RateLimitWindow | None:
        """Get the live window, creating or resetting it lazily. Caller holds the lock."""
        limits = self._limits.get(backend_key)
        if limits is None:
            return None

        window = self._windows.get(backend_key)
        if window is None:
            window = RateLimitWindow(
                backend_key=backend_key,
                window_start=now,
                request_limit=limits.requests_per_minute,
                token_limit=limits.tokens_per_minute,
                generation=next(self._generations),
            )
            self._windows[backend_key] = window
        elif window.expired(now):
            window.reset(now, next(self._generations))
        return window

    def reserve(self, backend_key: str, estimated_tokens: int = 0) -> Reservation | None:
        """
        Admit one request if both budgets allow it.

        Args:
            backend_key: Backend name
            estimated_tokens: Tokens the request is expected to consume

        Returns:
            Reservation handle to settle with commit/release, or None if saturated
        """
        tokens = max(0, estimated_tokens)
        with self._lock:
            window = self._window(backend_key, self._clock())
            if window is None:
                return Reservation(backend_key, next(self._ids), generation=0, tokens=tokens)

            requests_ok = (
                window.request_limit is None
                or window.request_count + window.reserved_requests < window.request_limit
            )
            tokens_ok = (
                window.token_limit is None
                or window.token_count + window.reserved_tokens + tokens < window.token_limit
            )

            if requests_ok and tokens_ok:
                reservation = Reservation(backend_key, next(self._ids), window.generation, tokens)
                window.reservations[reservation.id] = tokens
                self._stats["admitted"] += 1
                return reservation

            self._stats["rejected"] += 1

        logger.debug(
            f"Rate limit: {backend_key} saturated "
            f"(requests_ok={requests_ok}, tokens_ok={tokens_ok})"
        )
        return None

    def try_admit(self, backend_key: str, estimated_tokens: int = 0) -> bool:
        """Like `reserve`, settled later by backend key alone."""
        return self.reserve(backend_key, estimated_tokens) is not None

    def commit(
        self,
        backend_key: str,
        tokens_used: int,
        reservation: Reservation | None = None,
    ) -> None:
        """
        Record actual usage of an admitted request.

        A reservation from an earlier window is dropped without counting:
        that window's budget is already gone.
        """
        with self._lock:
            window = self._window(backend_key, self._clock())
            if window is None:
                return
            if reservation is not None and reservation.generation != window.generation:
                self._stats["stale"] += 1
                logger.debug(f"Ignoring commit for {backend_key} from an expired window")
                return
            window.take(reservation)
            window.request_count += 1
            window.token_count += max(0, tokens_used)
            self._stats["committed"] += 1

    def release(self, backend_key: str, reservation: Reservation | None = None) -> None:
        """Drop a reservation without counting usage."""
        with self._lock:
            window = self._window(backend_key, self._clock())
            if window is None:
                return
            if reservation is not None and reservation.generation != window.generation:
                self._stats["stale"] += 1
                return
            if window.take(reservation):
                self._stats["released"] += 1

    def remaining_capacity(self, backend_key: str) -> Capacity:
        """Remaining request and token budget as percentages."""
        with self._lock:
            window = self._window(backend_key, self._clock())
            if window is None:
                return Capacity(requests_percent=100.0, tokens_percent=100.0)

            def percent(used: int, limit: int | None) -> float:
                if limit is None:
                    return 100.0
                return max(0.0, (limit - used) / limit * 100)

            return Capacity(
                requests_percent=percent(
                    window.request_count + window.reserved_requests, window.request_limit
                ),
                tokens_percent=percent(window.token_count + window.reserved_tokens, window.token_limit),
            )

    def reset(self, backend_key: str | None = None) -> None:
        """Forget window state for one or all backends."""
        with self._lock:
            if backend_key is None:
                self._windows.clear()
            else:
                self._windows.pop(backend_key, None)

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            windows = {
                key: {
                    "request_count": w.request_count,
                    "token_count": w.token_count,
                    "reserved_requests": w.reserved_requests,
                    "request_limit": w.request_limit,
                    "token_limit": w.token_limit,
                }
                for key, w in self._windows.items()
            }
            return {**self._stats, "windows": windows}


__all__ = ["Capacity", "RateLimitWindow", "RateLimiter", "WINDOW_SECONDS"]
