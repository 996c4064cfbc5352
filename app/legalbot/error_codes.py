from __future__ import annotations

"""Centralised error code taxonomy for capture, upload and sync failures.

These codes are attached to domain exceptions and included in structured logs
so that we can explain why a document was rejected or a transfer failed. The
taxonomy is intentionally small but should stay stable for reporting.
"""


class ErrorCode:
    NETWORK = "network_error"
    HTTP_4XX = "http_4xx"
    HTTP_401 = "http_401_unauthorised"
    HTTP_403 = "http_403_forbidden"
    HTTP_404 = "http_404_not_found"
    HTTP_5XX = "http_5xx"
    RATE_LIMIT = "rate_limit"
    MALFORMED_PDF = "malformed_pdf"
    TOO_SMALL = "too_small"
    TOO_LARGE = "too_large"
    DUPLICATE = "duplicate"
    BLOCKED_ORIGIN = "blocked_origin"
    CASE_NOT_CONFIRMED = "case_not_confirmed"
    SYNC_TIMEOUT = "sync_timeout"
    SITE_STRUCTURE = "site_structure_changed"
    STORAGE = "storage_error"
    CHANNEL = "channel_error"
    ABORTED = "aborted"
    INTERNAL = "internal_error"


def classify_http_status(status: int | None) -> str:
    if status is None:
        return ErrorCode.INTERNAL
    if status == 401:
        return ErrorCode.HTTP_401
    if status == 403:
        return ErrorCode.HTTP_403
    if status == 404:
        return ErrorCode.HTTP_404
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if 400 <= status < 500:
        return ErrorCode.HTTP_4XX
    if status >= 500:
        return ErrorCode.HTTP_5XX
    return ErrorCode.INTERNAL


__all__ = ["ErrorCode", "classify_http_status"]
