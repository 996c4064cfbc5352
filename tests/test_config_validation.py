from app.legalbot import config
from app.legalbot.config_validation import validate_runtime_config
import pytest


def test_min_free_mb_negative(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MIN_FREE_MB", -5)
    with pytest.raises(ValueError):
        validate_runtime_config("cli")


def test_invalid_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "SYNC_TIMEOUT_SECONDS", 0)
    with pytest.raises(ValueError, match="SYNC_TIMEOUT_SECONDS"):
        validate_runtime_config("api")


def test_tier_thresholds_out_of_order(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "TIER_LARGE_MAX_BYTES", config.TIER_STANDARD_MAX_BYTES)
    with pytest.raises(ValueError, match="tier"):
        validate_runtime_config("tests")


def test_non_positive_size_cap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MAX_SINGLE_UPLOAD_BYTES", 0)
    with pytest.raises(ValueError):
        validate_runtime_config("api")


def test_throttle_knobs_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "THROTTLE_MAX_CONCURRENT", 0)
    monkeypatch.setattr(config, "THROTTLE_MIN_DELAY_MS", 4000)
    monkeypatch.setattr(config, "THROTTLE_MAX_DELAY_MS", 1000)
    monkeypatch.setattr(config, "THROTTLE_BURST_LIMIT", 0)

    validate_runtime_config("tests")

    assert config.THROTTLE_MAX_CONCURRENT == 1
    assert config.THROTTLE_MAX_DELAY_MS == 4000
    assert config.THROTTLE_BURST_LIMIT == 1


def test_defaults_are_valid() -> None:
    validate_runtime_config("capture")
