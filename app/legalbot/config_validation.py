from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _scraper_event
from .utils import log_line

Entrypoint = Literal["api", "capture", "cli", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _scraper_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ValueError(message)


def _clamp(field: str, adjusted: int, *, entrypoint: Entrypoint, reason: str) -> None:
    _scraper_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field,
        value=getattr(config, field),
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {field} {reason}; clamping to {adjusted}.")
    setattr(config, field, adjusted)


def validate_runtime_config(entrypoint: Entrypoint) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Soft knobs (throttle concurrency and delay bounds) are clamped and
    logged instead.
    """

    if config.MIN_FREE_MB < 0:
        _raise_config_error(
            "MIN_FREE_MB must be non-negative.",
            entrypoint=entrypoint,
            error="min_free_mb_invalid",
        )

    if config.MAX_SINGLE_UPLOAD_BYTES <= 0:
        _raise_config_error(
            "MAX_SINGLE_UPLOAD_BYTES must be greater than zero.",
            entrypoint=entrypoint,
            error="invalid_size_cap",
        )

    tiers = (
        config.MIN_DOCUMENT_BYTES,
        config.TIER_STANDARD_MAX_BYTES,
        config.TIER_LARGE_MAX_BYTES,
        config.TIER_TOMO_MAX_BYTES,
    )
    if any(lower >= upper for lower, upper in zip(tiers, tiers[1:])):
        _raise_config_error(
            "Size tier thresholds must be strictly increasing.",
            entrypoint=entrypoint,
            error="tier_order_invalid",
        )

    timeout_fields = [
        ("PORTAL_REQUEST_TIMEOUT_SECONDS", config.PORTAL_REQUEST_TIMEOUT_SECONDS),
        ("SYNC_TIMEOUT_SECONDS", config.SYNC_TIMEOUT_SECONDS),
        ("REMOTE_CONFIG_TIMEOUT_SECONDS", config.REMOTE_CONFIG_TIMEOUT_SECONDS),
        ("UPLOAD_TIMEOUT_SECONDS", config.UPLOAD_TIMEOUT_SECONDS),
    ]
    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
            )

    if config.THROTTLE_MAX_CONCURRENT < 1:
        _clamp("THROTTLE_MAX_CONCURRENT", 1, entrypoint=entrypoint, reason="< 1")

    if config.THROTTLE_MIN_DELAY_MS < 0:
        _clamp("THROTTLE_MIN_DELAY_MS", 0, entrypoint=entrypoint, reason="< 0")

    if config.THROTTLE_MAX_DELAY_MS < config.THROTTLE_MIN_DELAY_MS:
        _clamp(
            "THROTTLE_MAX_DELAY_MS",
            config.THROTTLE_MIN_DELAY_MS,
            entrypoint=entrypoint,
            reason="below THROTTLE_MIN_DELAY_MS",
        )

    if config.THROTTLE_BURST_LIMIT < 1:
        _clamp("THROTTLE_BURST_LIMIT", 1, entrypoint=entrypoint, reason="< 1")

    if entrypoint == "api" and not config.parse_api_tokens():
        log_line("[CONFIG] LEGALBOT_API_TOKENS is empty; every authenticated request will be rejected.")


__all__ = ["validate_runtime_config", "Entrypoint"]
