"""Integrity checks, deduplication, size tiering and tagging of captures.

``validate`` short-circuits on the first failed check and never raises for a
bad item: every rejection comes back as ``ValidationResult(valid=False)`` with
a reason and an error code.

The size tier table below is shared with the server and the upload client;
its boundaries are inclusive upper bounds and must not move.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from . import config
from .error_codes import ErrorCode
from .kv_store import KeyValueStore, MemoryStore
from .logging_utils import _scraper_event
from .models import CapturedFile, SizeTier, ValidationResult
from .utils import format_size, utc_now_iso

if TYPE_CHECKING:
    from .case_context import CaseContext

PDF_MAGIC = b"%PDF"
PARTIAL_HASH_PREFIX = "p:"
HASH_CHUNK_BYTES = 1024 * 1024

REJECTED_URL_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/ayuda/",
        r"/manual/",
        r"/faq/",
        r"/instrucciones/",
        r"/help/",
        r"/tutorial/",
        r"/guia/",
        r"/soporte/",
        r"/about/",
        r"/politica/",
        r"/terminos/",
        r"/contacto/",
        r"/static/",
        r"/assets/",
        r"\.css",
        r"\.js$",
    )
)

DOCUMENT_TYPE_PATTERNS = (
    ("resolucion", re.compile(r"resoluci[oó]n|auto\b|sentencia|decreto", re.IGNORECASE)),
    ("escrito", re.compile(r"escrito|demanda|contestaci|recurso|apelaci", re.IGNORECASE)),
    ("actuacion", re.compile(r"actuaci[oó]n|diligencia|audiencia", re.IGNORECASE)),
    ("notificacion", re.compile(r"notificaci[oó]n|c[ée]dula|carta", re.IGNORECASE)),
)


@dataclass(frozen=True)
class TierSpec:
    tier: SizeTier
    max_bytes: Optional[int]
    upload_strategy: str
    processing_strategy: str
    ui: Optional[str] = None

    @property
    def requires_confirmation(self) -> bool:
        return self.ui == "requires_confirmation"


SIZE_TIERS: tuple[TierSpec, ...] = (
    TierSpec(SizeTier.STANDARD, config.TIER_STANDARD_MAX_BYTES, "single_shot", "direct"),
    TierSpec(SizeTier.LARGE, config.TIER_LARGE_MAX_BYTES, "resumable", "chunked_external", "progress"),
    TierSpec(SizeTier.TOMO, config.TIER_TOMO_MAX_BYTES, "resumable", "chunked_external", "time_estimate"),
    TierSpec(SizeTier.MEGA, None, "resumable", "chunked_external", "requires_confirmation"),
)
_TIER_BY_NAME = {spec.tier: spec for spec in SIZE_TIERS}


def classify_size(size: int) -> SizeTier:
    """Map a byte count to its tier; total and monotonic over ``size >= 0``."""

    for spec in SIZE_TIERS:
        if spec.max_bytes is None or size <= spec.max_bytes:
            return spec.tier
    return SizeTier.MEGA


def tier_spec(tier: SizeTier) -> TierSpec:
    return _TIER_BY_NAME[tier]


def infer_document_type(*texts: str | None) -> str:
    combined = " ".join(t for t in texts if t)
    for name, pattern in DOCUMENT_TYPE_PATTERNS:
        if pattern.search(combined):
            return name
    return "otro"


def is_blocked_origin(url: str | None) -> bool:
    lowered = (url or "").lower()
    if not lowered or lowered.startswith("blob:"):
        return False
    return any(p.search(lowered) for p in REJECTED_URL_PATTERNS)


def _iter_chunks(captured: CapturedFile) -> Iterable[bytes]:
    if isinstance(captured.data, Path):
        with captured.data.open("rb") as handle:
            while True:
                chunk = handle.read(HASH_CHUNK_BYTES)
                if not chunk:
                    return
                yield chunk
    else:
        data = captured.data
        for start in range(0, len(data), HASH_CHUNK_BYTES):
            yield bytes(data[start : start + HASH_CHUNK_BYTES])


def compute_full_hash(captured: CapturedFile) -> str:
    digest = hashlib.sha256()
    for chunk in _iter_chunks(captured):
        digest.update(chunk)
    return digest.hexdigest()


def compute_partial_hash(captured: CapturedFile, sample: int = config.PARTIAL_HASH_SAMPLE_BYTES) -> str:
    """Hash ``first sample || last sample || str(size)``, prefixed ``p:``."""

    size = captured.size
    if isinstance(captured.data, Path):
        with captured.data.open("rb") as handle:
            head = handle.read(sample)
            handle.seek(max(0, size - sample))
            tail = handle.read(sample)
    else:
        head = bytes(captured.data[:sample])
        tail = bytes(captured.data[max(0, size - sample) :])
    digest = hashlib.sha256()
    digest.update(head)
    digest.update(tail)
    digest.update(str(size).encode("ascii"))
    return PARTIAL_HASH_PREFIX + digest.hexdigest()


def compute_hash(captured: CapturedFile) -> str:
    if captured.size <= config.TIER_STANDARD_MAX_BYTES:
        return compute_full_hash(captured)
    return compute_partial_hash(captured)


def hash_cache_key(user_id: str, rol: str) -> str:
    return f"pdf_hashes_{user_id}_{rol}"


@dataclass
class BatchSummary:
    accepted: list[ValidationResult] = field(default_factory=list)
    rejected: list[ValidationResult] = field(default_factory=list)
    single_shot: list[ValidationResult] = field(default_factory=list)
    resumable: list[ValidationResult] = field(default_factory=list)
    requires_confirmation: list[ValidationResult] = field(default_factory=list)
    counts_by_tier: dict[str, int] = field(
        default_factory=lambda: {spec.tier.value: 0 for spec in SIZE_TIERS}
    )
    total_bytes: int = 0
    estimated_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": len(self.accepted),
            "rejected": len(self.rejected),
            "single_shot": len(self.single_shot),
            "resumable": len(self.resumable),
            "requires_confirmation": [
                {"filename": r.file.filename if r.file else None, "size": r.metadata.get("size")}
                for r in self.requires_confirmation
            ],
            "counts_by_tier": dict(self.counts_by_tier),
            "total_bytes": self.total_bytes,
            "total_size": format_size(self.total_bytes),
            "estimated_seconds": round(self.estimated_seconds, 1),
            "rejections": [r.reason for r in self.rejected],
        }


class DocumentValidator:
    def __init__(
        self,
        context: Optional["CaseContext"] = None,
        *,
        store: Optional[KeyValueStore] = None,
        min_bytes: int = config.MIN_DOCUMENT_BYTES,
    ) -> None:
        self.context = context
        self.store = store if store is not None else MemoryStore()
        self.min_bytes = min_bytes
        self.seen_hashes: set[str] = set()

    def _reject(self, captured: CapturedFile, reason: str, code: str, **extra: Any) -> ValidationResult:
        _scraper_event(
            "validate",
            phase="rejected",
            reason=reason,
            error_code=code,
            url=captured.url[:80] if captured.url else None,
        )
        return ValidationResult(valid=False, reason=reason, error_code=code, file=captured, **extra)

    def validate(self, captured: CapturedFile, batch_hashes: Optional[set[str]] = None) -> ValidationResult:
        """Check one capture.

        Duplicates are judged against hashes already uploaded for the case and
        against ``batch_hashes``, the digests accepted earlier in the same
        batch. A digest only joins ``seen_hashes`` once its upload succeeds, so
        a file whose upload failed is accepted again on the next pass.
        """

        size = captured.size
        if size < self.min_bytes:
            return self._reject(
                captured,
                f"Too small ({format_size(size)}); minimum is {format_size(self.min_bytes)}",
                ErrorCode.TOO_SMALL,
            )

        if is_blocked_origin(captured.url):
            return self._reject(
                captured, f"Rejected origin {captured.url[:80]}", ErrorCode.BLOCKED_ORIGIN
            )

        head = captured.read_head(len(PDF_MAGIC))
        if head != PDF_MAGIC:
            return self._reject(
                captured, f"Not a PDF (magic bytes {head.hex(' ')})", ErrorCode.MALFORMED_PDF
            )

        digest = compute_hash(captured)
        if digest in self.seen_hashes or (batch_hashes is not None and digest in batch_hashes):
            return self._reject(
                captured, f"Duplicate (hash {digest[:14]}...)", ErrorCode.DUPLICATE, hash=digest
            )
        if batch_hashes is not None:
            batch_hashes.add(digest)

        tier = classify_size(size)
        confirmed = self.context.confirmed_case if self.context is not None else None
        now = utc_now_iso()
        metadata: dict[str, Any] = {
            "rol": confirmed.rol if confirmed else None,
            "tribunal": confirmed.tribunal if confirmed else None,
            "caratula": confirmed.caratula if confirmed else None,
            "size": size,
            "source": captured.method or "unknown",
            "captured_at": captured.captured_at or now,
            "validated_at": now,
            "partial_hash": digest.startswith(PARTIAL_HASH_PREFIX),
        }
        return ValidationResult(
            valid=True,
            hash=digest,
            size_tier=tier,
            document_type=infer_document_type(
                captured.url.lower(), captured.filename, captured.text.upper()
            ),
            metadata=metadata,
            file=captured,
        )

    def validate_batch(self, files: Iterable[CapturedFile]) -> BatchSummary:
        summary = BatchSummary()
        batch_hashes: set[str] = set()
        for captured in files:
            result = self.validate(captured, batch_hashes)
            if not result.valid:
                summary.rejected.append(result)
                continue
            summary.accepted.append(result)
            spec = tier_spec(result.size_tier or SizeTier.STANDARD)
            summary.counts_by_tier[spec.tier.value] += 1
            summary.total_bytes += captured.size
            if spec.upload_strategy == "single_shot":
                summary.single_shot.append(result)
            else:
                summary.resumable.append(result)
            if spec.requires_confirmation:
                summary.requires_confirmation.append(result)

        summary.estimated_seconds = summary.total_bytes / max(1, config.ASSUMED_UPLOAD_BYTES_PER_SECOND)
        _scraper_event(
            "validate",
            phase="batch",
            accepted=len(summary.accepted),
            rejected=len(summary.rejected),
            total_bytes=summary.total_bytes,
        )
        return summary

    def load_existing_hashes(self, user_id: str, rol: str) -> int:
        cached = self.store.get(hash_cache_key(user_id, rol))
        if isinstance(cached, list):
            self.seen_hashes.update(str(h) for h in cached)
        return len(self.seen_hashes)

    def register_uploaded_hash(self, digest: str, user_id: str, rol: str) -> None:
        self.seen_hashes.add(digest)
        key = hash_cache_key(user_id, rol)
        existing = self.store.get(key)
        hashes = list(existing) if isinstance(existing, list) else []
        if digest not in hashes:
            hashes.append(digest)
            self.store.set(key, hashes)


__all__ = [
    "BatchSummary",
    "DocumentValidator",
    "PARTIAL_HASH_PREFIX",
    "SIZE_TIERS",
    "TierSpec",
    "classify_size",
    "compute_full_hash",
    "compute_hash",
    "compute_partial_hash",
    "infer_document_type",
    "is_blocked_origin",
    "tier_spec",
]
