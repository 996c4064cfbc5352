from __future__ import annotations

import pytest

from app.legalbot import retry_policy
from app.legalbot.error_codes import ErrorCode, classify_http_status


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(event_phase: str, **fields: object) -> None:
        events.append((event_phase, fields))

    monkeypatch.setattr(retry_policy, "_scraper_event", _record)
    return events


@pytest.mark.parametrize(
    "code, expected, kind",
    [
        (ErrorCode.NETWORK, True, "retryable"),
        (ErrorCode.HTTP_5XX, True, "retryable"),
        (ErrorCode.RATE_LIMIT, True, "retryable"),
        (ErrorCode.HTTP_403, False, "non_retryable"),
        (ErrorCode.MALFORMED_PDF, False, "non_retryable"),
        (ErrorCode.ABORTED, False, "non_retryable"),
        ("something_new", True, "unknown"),
    ],
)
def test_decide_retry_by_error_code(
    code: str, expected: bool, kind: str, event_recorder: list[tuple[str, dict]]
) -> None:
    assert retry_policy.decide_retry(1, 5, error_code=code) is expected
    assert len(event_recorder) == 1
    phase, fields = event_recorder[0]
    assert phase == "state"
    assert fields["phase"] == "retry_decision"
    assert fields["kind"] == kind
    assert fields["will_retry"] is expected


def test_decide_retry_capped(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(5, 5, error_code=ErrorCode.NETWORK) is False
    assert event_recorder[0][1]["kind"] == "capped"


def test_decide_retry_uses_status_when_code_missing(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 3, http_status=502) is True
    assert event_recorder[0][1]["kind"] == "retryable"


def test_upload_retry_schedule() -> None:
    delays = [retry_policy.upload_retry_delay(i) for i in range(6)]
    assert delays == [0.0, 3.0, 5.0, 10.0, 20.0, None]
    assert retry_policy.upload_retry_delay(-1) is None


@pytest.mark.parametrize(
    "status, code",
    [
        (401, ErrorCode.HTTP_401),
        (403, ErrorCode.HTTP_403),
        (404, ErrorCode.HTTP_404),
        (409, ErrorCode.HTTP_4XX),
        (429, ErrorCode.RATE_LIMIT),
        (503, ErrorCode.HTTP_5XX),
        (None, ErrorCode.INTERNAL),
    ],
)
def test_classify_http_status(status, code) -> None:
    assert classify_http_status(status) == code

