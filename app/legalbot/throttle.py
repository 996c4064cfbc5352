"""Human-paced gate for every outbound portal interaction.

Delays are drawn from a Gaussian re-scaled into ``[min, max]`` so most waits
cluster near the midpoint, bursts are capped inside a sliding window and only
one action is in flight at a time. Clock, sleep and random source are
injectable so the pacing can be exercised without real waiting.
"""
from __future__ import annotations

import math
import random
import threading
import time
from typing import Any, Callable, Iterable, Optional, TypeVar

from . import config
from .logging_utils import _scraper_event

T = TypeVar("T")

MAX_SLOT_WAIT_MS = 15_000
COOLDOWN_JITTER = 0.3


class HumanThrottle:
    def __init__(
        self,
        settings: Optional[dict[str, Any]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        c = settings or {}
        self.min_delay_ms = int(c.get("minDelayMs") or config.THROTTLE_MIN_DELAY_MS)
        self.max_delay_ms = int(c.get("maxDelayMs") or config.THROTTLE_MAX_DELAY_MS)
        self.max_concurrent = max(1, int(c.get("maxConcurrent") or config.THROTTLE_MAX_CONCURRENT))
        self.burst_limit = int(c.get("burstLimit") or config.THROTTLE_BURST_LIMIT)
        self.burst_window_ms = int(c.get("burstWindowMs") or config.THROTTLE_BURST_WINDOW_MS)
        self.session_cooldown_ms = int(
            c.get("sessionCooldownMs") or config.THROTTLE_SESSION_COOLDOWN_MS
        )

        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._active = 0
        self._timestamps: list[float] = []

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _clean_old_timestamps(self) -> None:
        cutoff = self._now_ms() - self.burst_window_ms
        self._timestamps = [ts for ts in self._timestamps if ts > cutoff]

    def can_proceed(self) -> bool:
        with self._lock:
            self._clean_old_timestamps()
            if len(self._timestamps) >= self.burst_limit:
                return False
            return self._active < self.max_concurrent

    def gaussian_delay_ms(self) -> int:
        u = 0.0
        v = 0.0
        while u == 0.0:
            u = self._rng.random()
        while v == 0.0:
            v = self._rng.random()
        n = math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)
        n = max(0.0, min(1.0, (n + 3) / 6))
        return int(math.floor(self.min_delay_ms + n * (self.max_delay_ms - self.min_delay_ms)))

    def jitter_ms(self, base_ms: float, factor: float = COOLDOWN_JITTER) -> float:
        return base_ms + (self._rng.random() * 2 - 1) * base_ms * factor

    def wait_human_delay(self) -> int:
        delay = self.gaussian_delay_ms()
        self._sleep(delay / 1000.0)
        return delay

    def _wait_for_slot(self) -> int:
        attempts = 0
        while not self.can_proceed():
            attempts += 1
            wait_ms = min(1000 * (1.5 ** attempts), MAX_SLOT_WAIT_MS)
            if attempts == 1:
                _scraper_event("throttle", phase="wait_slot", **self.get_stats())
            self._sleep(wait_ms / 1000.0)
        return attempts

    def _register(self) -> None:
        with self._lock:
            self._timestamps.append(self._now_ms())
            self._active += 1

    def _release(self) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)

    def run_gated(self, action: Callable[[], T]) -> T:
        """Run ``action`` once a slot is free and a human delay has elapsed."""

        self._wait_for_slot()
        self.wait_human_delay()
        self._register()
        try:
            return action()
        finally:
            self._release()

    def run_sequence(self, actions: Iterable[Callable[[], T]]) -> list[T]:
        steps = list(actions)
        results: list[T] = []
        for index, action in enumerate(steps):
            results.append(self.run_gated(action))
            if index < len(steps) - 1:
                self._sleep(max(0.0, self.jitter_ms(self.session_cooldown_ms)) / 1000.0)
        return results

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            self._clean_old_timestamps()
            in_window = len(self._timestamps)
            active = self._active
        return {
            "active_requests": active,
            "requests_in_window": in_window,
            "burst_limit": self.burst_limit,
            "burst_window_ms": self.burst_window_ms,
            "can_proceed": in_window < self.burst_limit and active < self.max_concurrent,
        }


__all__ = ["HumanThrottle"]
