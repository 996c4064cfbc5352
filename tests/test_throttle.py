from __future__ import annotations

import random
import statistics

import pytest

from app.legalbot.throttle import HumanThrottle


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


SETTINGS = {
    "minDelayMs": 2500,
    "maxDelayMs": 7000,
    "maxConcurrent": 1,
    "burstLimit": 5,
    "burstWindowMs": 60000,
    "sessionCooldownMs": 3000,
}


def _throttle(clock: FakeClock, seed: int = 7) -> HumanThrottle:
    return HumanThrottle(SETTINGS, clock=clock, sleep=clock.sleep, rng=random.Random(seed))


def test_gaussian_delays_stay_in_bounds_and_center_on_midpoint() -> None:
    throttle = _throttle(FakeClock())
    samples = [throttle.gaussian_delay_ms() for _ in range(10_000)]

    assert min(samples) >= 2500
    assert max(samples) <= 7000
    assert abs(statistics.mean(samples) - 4750) < 60
    near_middle = sum(1 for s in samples if 4000 <= s <= 5500)
    assert near_middle / len(samples) > 0.6


def test_burst_limit_holds_sixth_action_until_window_expires() -> None:
    clock = FakeClock()
    throttle = _throttle(clock)
    started: list[float] = []

    for _ in range(6):
        throttle.run_gated(lambda: started.append(clock()))

    assert len(started) == 6
    assert started[5] - started[0] >= 60.0
    for earlier, later in zip(started[:4], started[1:5]):
        assert 2.5 <= later - earlier <= 7.0


def test_can_proceed_reflects_window_and_active_count() -> None:
    clock = FakeClock()
    throttle = _throttle(clock)
    assert throttle.can_proceed() is True

    observed: list[bool] = []
    throttle.run_gated(lambda: observed.append(throttle.can_proceed()))
    assert observed == [False]

    stats = throttle.get_stats()
    assert stats["active_requests"] == 0
    assert stats["requests_in_window"] == 1
    assert stats["can_proceed"] is True


def test_run_sequence_cools_down_between_actions_only() -> None:
    clock = FakeClock()
    throttle = _throttle(clock)

    results = throttle.run_sequence([lambda: "a", lambda: "b", lambda: "c"])

    assert results == ["a", "b", "c"]
    # human delay, cooldown, human delay, cooldown, human delay
    assert len(clock.sleeps) == 5
    cooldowns = clock.sleeps[1::2]
    for value in cooldowns:
        assert 2.1 <= value <= 3.9


def test_release_happens_when_action_raises() -> None:
    clock = FakeClock()
    throttle = _throttle(clock)

    def _boom() -> None:
        raise RuntimeError("portal down")

    with pytest.raises(RuntimeError):
        throttle.run_gated(_boom)

    assert throttle.get_stats()["active_requests"] == 0
