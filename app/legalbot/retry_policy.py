from __future__ import annotations

from typing import Optional, Sequence

from .error_codes import ErrorCode
from .logging_utils import _scraper_event

RETRYABLE_ERROR_CODES = {
    ErrorCode.NETWORK,
    ErrorCode.HTTP_5XX,
    ErrorCode.RATE_LIMIT,
}

NON_RETRYABLE_ERROR_CODES = {
    ErrorCode.HTTP_401,
    ErrorCode.HTTP_403,
    ErrorCode.HTTP_404,
    ErrorCode.HTTP_4XX,
    ErrorCode.MALFORMED_PDF,
    ErrorCode.SITE_STRUCTURE,
    ErrorCode.TOO_SMALL,
    ErrorCode.TOO_LARGE,
    ErrorCode.DUPLICATE,
    ErrorCode.BLOCKED_ORIGIN,
    ErrorCode.CASE_NOT_CONFIRMED,
    ErrorCode.ABORTED,
}

# Seconds to wait before each resumable transfer attempt.
UPLOAD_RETRY_DELAYS: tuple[float, ...] = (0, 3, 5, 10, 20)


def upload_retry_delay(
    retry_index: int, delays: Sequence[float] = UPLOAD_RETRY_DELAYS
) -> float | None:
    """Return the delay before retry ``retry_index`` (0-based), or ``None`` when exhausted."""

    if retry_index < 0 or retry_index >= len(delays):
        return None
    return float(delays[retry_index])


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    error_code: Optional[str] = None,
    http_status: Optional[int] = None,
) -> bool:
    """Decide whether a failed attempt should be retried."""

    if attempt_index >= max_attempts:
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="capped",
            attempt=attempt_index,
            max_attempts=max_attempts,
            error_code=error_code,
            http_status=http_status,
            will_retry=False,
        )
        return False

    code = (error_code or "").strip()
    if code in NON_RETRYABLE_ERROR_CODES:
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="non_retryable",
            error_code=code,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=False,
        )
        return False

    if code in RETRYABLE_ERROR_CODES or (http_status is not None and http_status >= 500):
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            error_code=code or None,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=True,
        )
        return True

    # Unknown context: allow the retry; the schedule itself is the cap.
    _scraper_event(
        "state",
        phase="retry_decision",
        kind="unknown" if code else "missing_error_code",
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        http_status=http_status,
        will_retry=True,
        error_repr=repr(error) if error is not None else None,
    )
    return True


__all__ = [
    "decide_retry",
    "upload_retry_delay",
    "NON_RETRYABLE_ERROR_CODES",
    "RETRYABLE_ERROR_CODES",
    "UPLOAD_RETRY_DELAYS",
]
