from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from app.legalbot import config
from app.legalbot.error_codes import ErrorCode
from app.legalbot.kv_store import MemoryStore
from app.legalbot.models import CapturedFile, SizeTier
from app.legalbot.validator import (
    DocumentValidator,
    classify_size,
    compute_hash,
    compute_partial_hash,
    infer_document_type,
    is_blocked_origin,
)

MB = 1024 * 1024


def _pdf(size: int, marker: bytes = b"a") -> bytes:
    head = b"%PDF-1.4\n" + marker + b"\n"
    return head + b"0" * (size - len(head))


@pytest.mark.parametrize(
    "size, tier",
    [
        (0, SizeTier.STANDARD),
        (50 * MB, SizeTier.STANDARD),
        (50 * MB + 1, SizeTier.LARGE),
        (500 * MB, SizeTier.LARGE),
        (500 * MB + 1, SizeTier.TOMO),
        (5 * 1024 * MB, SizeTier.TOMO),
        (5 * 1024 * MB + 1, SizeTier.MEGA),
    ],
)
def test_size_tier_boundaries_are_inclusive(size: int, tier: SizeTier) -> None:
    assert classify_size(size) is tier


def test_small_file_is_rejected_before_magic_check() -> None:
    result = DocumentValidator().validate(CapturedFile(data=b"x" * 3 * 1024, url="https://pjud.cl/doc"))

    assert result.valid is False
    assert result.error_code == ErrorCode.TOO_SMALL
    assert "3.0 KB" in result.reason


def test_wrong_magic_bytes_are_rejected() -> None:
    result = DocumentValidator().validate(CapturedFile(data=b"<html>" + b"x" * 10 * 1024))

    assert result.valid is False
    assert result.error_code == ErrorCode.MALFORMED_PDF


def test_help_pages_are_rejected_by_origin() -> None:
    captured = CapturedFile(data=_pdf(10 * 1024), url="https://oficinajudicialvirtual.pjud.cl/ayuda/manual.pdf")

    result = DocumentValidator().validate(captured)

    assert result.error_code == ErrorCode.BLOCKED_ORIGIN
    assert is_blocked_origin("blob:https://pjud.cl/123") is False
    assert is_blocked_origin("https://x/static/app.css") is True


def test_duplicate_within_batch() -> None:
    validator = DocumentValidator()
    data = _pdf(10 * 1024)

    summary = validator.validate_batch(
        [CapturedFile(data=data, method="xhr"), CapturedFile(data=data, method="fetch")]
    )
    first = summary.accepted[0]

    assert first.hash == hashlib.sha256(data).hexdigest()
    assert first.size_tier is SizeTier.STANDARD
    assert first.metadata["source"] == "xhr"
    assert first.metadata["partial_hash"] is False
    assert len(summary.accepted) == 1
    assert summary.rejected[0].error_code == ErrorCode.DUPLICATE


def test_failed_upload_does_not_block_the_retry() -> None:
    validator = DocumentValidator()
    captured = CapturedFile(data=_pdf(10 * 1024))

    first = validator.validate(captured)
    # The upload of ``first`` failed, so its hash was never registered.
    retry = validator.validate(captured)
    assert first.valid is True
    assert retry.valid is True

    validator.register_uploaded_hash(retry.hash, "user-1", "C-1-2024")
    assert validator.validate(captured).error_code == ErrorCode.DUPLICATE


def test_document_type_is_tagged_from_url_and_text() -> None:
    captured = CapturedFile(data=_pdf(8 * 1024), url="https://pjud.cl/docs/resolucion_123.pdf")
    assert DocumentValidator().validate(captured).document_type == "resolucion"
    assert infer_document_type(None, "Escrito de demanda.pdf") == "escrito"
    assert infer_document_type("x", "y") == "otro"


def test_partial_hash_on_file_payload(tmp_path: Path) -> None:
    path = tmp_path / "big.pdf"
    path.write_bytes(b"%PDF" + b"A" * 100 + b"B" * 100)
    captured = CapturedFile(data=path)

    digest = compute_partial_hash(captured, sample=50)

    expected = hashlib.sha256(b"%PDF" + b"A" * 46 + b"B" * 50 + b"204").hexdigest()
    assert digest == "p:" + expected
    assert compute_partial_hash(CapturedFile(data=path.read_bytes()), sample=50) == digest


def test_compute_hash_switches_to_partial_above_standard_tier(monkeypatch: pytest.MonkeyPatch) -> None:
    data = _pdf(8 * 1024)
    monkeypatch.setattr(config, "TIER_STANDARD_MAX_BYTES", 4 * 1024)

    assert compute_hash(CapturedFile(data=data)).startswith("p:")


def test_batch_summary_counts_and_strategies() -> None:
    validator = DocumentValidator()
    files = [
        CapturedFile(data=_pdf(8 * 1024, b"1")),
        CapturedFile(data=_pdf(9 * 1024, b"2")),
        CapturedFile(data=b"tiny"),
    ]

    summary = validator.validate_batch(files).to_dict()

    assert summary["accepted"] == 2
    assert summary["rejected"] == 1
    assert summary["single_shot"] == 2
    assert summary["counts_by_tier"]["standard"] == 2
    assert summary["total_bytes"] == 17 * 1024


def test_known_hashes_are_loaded_from_store() -> None:
    store = MemoryStore()
    data = _pdf(8 * 1024)
    digest = hashlib.sha256(data).hexdigest()

    DocumentValidator(store=store).register_uploaded_hash(digest, "user-1", "C-1-2024")
    fresh = DocumentValidator(store=store)
    assert fresh.load_existing_hashes("user-1", "C-1-2024") == 1

    assert fresh.validate(CapturedFile(data=data)).error_code == ErrorCode.DUPLICATE
    assert DocumentValidator(store=store).load_existing_hashes("user-1", "C-2-2024") == 0
