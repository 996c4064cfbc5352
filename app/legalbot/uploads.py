"""Server-side ingest of captured documents.

Three ways in:

* ``ingest_upload``: a single-shot multipart upload of at most 50 MB.
* the tus 1.0.0 session helpers (``create_resumable_session``,
  ``append_resumable_chunk``) that land larger files chunk by chunk in
  ``UPLOAD_TMP_DIR`` and move them into the store when complete.
* ``confirm_hash``: recompute the full SHA-256 of a stored object and swap
  out the partial ``p:`` hash the client registered for it.

Every path ends in the same registration: case upsert by identity, document
row, hash row, and a pending ``extracted_texts`` placeholder. Problems the
caller should see raise :class:`UploadRejected` with an HTTP status.
"""
from __future__ import annotations

import hashlib
import json
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from . import config, db, storage
from .identity import CaseIdentity
from .logging_utils import _scraper_event
from .resumable_upload import decode_tus_metadata
from .utils import format_size, sanitize_filename, utc_now_iso
from .validator import PARTIAL_HASH_PREFIX

ALLOWED_CONTENT_TYPES = ("application/pdf", "application/octet-stream")
DOCUMENT_TYPES = ("resolucion", "escrito", "actuacion", "notificacion", "otro")


class UploadRejected(Exception):
    def __init__(self, message: str, status: int = 400, **extra: Any) -> None:
        super().__init__(message)
        self.status = status
        self.extra = extra


@dataclass
class UploadFields:
    """Form fields sent alongside a captured file."""

    case_rol: str = ""
    tribunal: Optional[str] = None
    caratula: Optional[str] = None
    materia: Optional[str] = None
    document_type: str = "otro"
    file_hash: str = ""
    source: str = "unknown"
    source_url: Optional[str] = None
    captured_at: Optional[str] = None

    @classmethod
    def from_mapping(cls, form: Mapping[str, Any]) -> "UploadFields":
        def _get(name: str) -> str:
            return str(form.get(name) or "").strip()

        document_type = _get("document_type") or "otro"
        return cls(
            case_rol=_get("case_rol") or _get("rol"),
            tribunal=_get("tribunal") or None,
            caratula=_get("caratula") or None,
            materia=_get("materia") or None,
            document_type=document_type if document_type in DOCUMENT_TYPES else "otro",
            file_hash=_get("file_hash") or _get("partial_hash"),
            source=_get("source") or "unknown",
            source_url=_get("source_url") or None,
            captured_at=_get("captured_at") or None,
        )

    @property
    def identity(self) -> CaseIdentity:
        return CaseIdentity(self.case_rol, self.tribunal or "", self.caratula or "")


def upsert_case_by_identity(user_id: str, fields: UploadFields) -> Optional[int]:
    """Find or create the case for the full identity triple; ``None`` without a rol."""

    if not fields.case_rol:
        return None
    identity = fields.identity
    existing = db.find_case_by_identity(user_id, identity)
    if existing is not None:
        case_id = int(existing["id"])
        db.update_case_fields(case_id, {"materia": fields.materia})
        return case_id
    try:
        return db.insert_case(user_id, identity, {"materia": fields.materia})
    except sqlite3.IntegrityError:
        raced = db.find_case_by_identity(user_id, identity)
        if raced is None:
            raise
        return int(raced["id"])


def register_document(
    user_id: str,
    fields: UploadFields,
    *,
    storage_path: str,
    filename: str,
    original_filename: str,
    file_size: int,
    file_hash: str,
) -> dict[str, Any]:
    case_id = upsert_case_by_identity(user_id, fields)
    document_id = db.insert_document(
        case_id=case_id,
        user_id=user_id,
        filename=filename,
        original_filename=original_filename,
        storage_path=storage_path,
        document_type=fields.document_type,
        file_size=file_size,
        file_hash=file_hash,
        source=fields.source,
        source_url=fields.source_url,
        captured_at=fields.captured_at,
    )
    db.insert_document_hash(
        user_id=user_id,
        file_hash=file_hash,
        case_id=case_id,
        rol=fields.case_rol or "sin_rol",
        tribunal=fields.tribunal,
        caratula=fields.caratula,
        filename=filename,
        document_type=fields.document_type,
    )
    db.insert_extraction_placeholder(document_id, case_id, user_id)
    if case_id is not None:
        db.refresh_case_stats(case_id)
    return {"case_id": case_id, "document_id": document_id}


def _duplicate_response(existing: Any) -> dict[str, Any]:
    return {
        "success": False,
        "duplicate": True,
        "message": f'Duplicate document. Already stored as "{existing["filename"] or "previous document"}".',
        "existing_hash_id": existing["id"],
    }


def ingest_upload(
    user_id: str,
    filename: str,
    content_type: str,
    data: bytes,
    form: Mapping[str, Any],
) -> dict[str, Any]:
    """Store a single-shot upload and return the response payload."""

    filename = filename or "document.pdf"
    if (content_type or "").lower() not in ALLOWED_CONTENT_TYPES and not filename.lower().endswith(".pdf"):
        raise UploadRejected("Only PDF files are accepted")
    if len(data) > config.MAX_SINGLE_UPLOAD_BYTES:
        raise UploadRejected(
            f"File too large. Maximum is {format_size(config.MAX_SINGLE_UPLOAD_BYTES)}; "
            "use the resumable upload for larger files."
        )
    if not data:
        raise UploadRejected("The file is empty")

    fields = UploadFields.from_mapping(form)
    server_hash = hashlib.sha256(data).hexdigest()
    client_hash = fields.file_hash
    file_hash = client_hash if client_hash and not client_hash.startswith(PARTIAL_HASH_PREFIX) else server_hash

    existing = db.find_hash(user_id, file_hash)
    if existing is not None:
        _scraper_event("upload", phase="duplicate", user=user_id, hash=file_hash[:14])
        return _duplicate_response(existing)

    safe_name = sanitize_filename(filename)
    try:
        storage_path = storage.store_bytes(user_id, filename, data)
    except storage.StorageError as exc:
        raise UploadRejected(f"Could not store file: {exc}", status=500) from exc

    ids = register_document(
        user_id,
        fields,
        storage_path=storage_path,
        filename=safe_name,
        original_filename=filename,
        file_size=len(data),
        file_hash=file_hash,
    )
    _scraper_event(
        "upload",
        phase="ingested",
        user=user_id,
        rol=fields.case_rol or None,
        size=format_size(len(data)),
        document_id=ids["document_id"],
    )
    return {
        "success": True,
        "duplicate": False,
        "path": storage_path,
        "filename": safe_name,
        "size": len(data),
        "hash": file_hash,
        "case_id": ids["case_id"],
        "document_id": ids["document_id"],
        "case_rol": fields.case_rol or None,
        "metadata": {
            "tribunal": fields.tribunal,
            "caratula": fields.caratula,
            "materia": fields.materia,
            "documentType": fields.document_type,
            "source": fields.source,
            "capturedAt": fields.captured_at,
            "uploadedAt": utc_now_iso(),
        },
    }


def confirm_hash(
    user_id: str, storage_path: str, partial_hash: Optional[str] = None, rol: Optional[str] = None
) -> dict[str, Any]:
    """Recompute the full hash of a stored object owned by ``user_id``."""

    if not storage_path:
        raise UploadRejected("storagePath is required")
    if not storage_path.startswith(f"{sanitize_filename(user_id)}/"):
        raise UploadRejected("Not allowed to access this file", status=403)
    if not storage.exists(storage_path):
        raise UploadRejected("File not found", status=404)

    full_hash = storage.file_sha256(storage_path)
    size = storage.resolve_path(storage_path).stat().st_size
    reconciled = {"documents_updated": 0, "hashes_updated": 0}
    if partial_hash and partial_hash.startswith(PARTIAL_HASH_PREFIX):
        reconciled = db.reconcile_document_hash(user_id, storage_path, partial_hash, full_hash)
    _scraper_event("upload", phase="hash_confirmed", path=storage_path, **reconciled)
    return {
        "success": True,
        "hash": full_hash,
        "storagePath": storage_path,
        "fileSize": size,
        "partialHash": partial_hash or None,
        "hashType": "full",
        "rol": rol or None,
        "reconciled": reconciled,
    }


# -- tus server side -----------------------------------------------------------


def _session_for(user_id: str, session_id: str) -> Any:
    row = db.get_upload_session(session_id)
    if row is None:
        raise UploadRejected("Upload session not found", status=404)
    if row["user_id"] != user_id:
        raise UploadRejected("Not allowed to access this upload", status=403)
    return row


def create_resumable_session(user_id: str, upload_length: Any, metadata_header: Optional[str]) -> str:
    try:
        length = int(upload_length)
    except (TypeError, ValueError):
        raise UploadRejected("Upload-Length header is required") from None
    if length <= 0:
        raise UploadRejected("Upload-Length must be positive")

    metadata = decode_tus_metadata(metadata_header)
    session_id = uuid.uuid4().hex
    config.UPLOAD_TMP_DIR.mkdir(parents=True, exist_ok=True)
    tmp_path = config.UPLOAD_TMP_DIR / f"{session_id}.part"
    tmp_path.touch()
    db.create_upload_session(session_id, user_id, length, metadata, str(tmp_path))
    _scraper_event(
        "resumable",
        phase="created",
        session=session_id,
        size=format_size(length),
        object=metadata.get("objectName"),
    )
    return session_id


def resumable_status(user_id: str, session_id: str) -> dict[str, Any]:
    row = _session_for(user_id, session_id)
    return {
        "offset": int(row["upload_offset"]),
        "length": int(row["upload_length"]),
        "status": row["status"],
        "storage_path": row["storage_path"],
    }


def _finish_resumable(user_id: str, row: Any, tmp_path: Path) -> dict[str, Any]:
    metadata = json.loads(row["metadata_json"] or "{}")
    original = metadata.get("filename") or Path(metadata.get("objectName") or "document.pdf").name
    fields = UploadFields.from_mapping(metadata)
    with tmp_path.open("rb") as handle:
        head = handle.read(4)
    if head != b"%PDF":
        tmp_path.unlink(missing_ok=True)
        db.update_upload_session(row["id"], upload_offset=int(row["upload_length"]), status="rejected")
        raise UploadRejected("Uploaded file is not a PDF", status=415)

    storage_path = storage.move_into_store(user_id, original, tmp_path)
    full_hash = storage.file_sha256(storage_path)
    existing = db.find_hash(user_id, full_hash)
    if existing is not None:
        storage.delete(storage_path)
        db.update_upload_session(row["id"], upload_offset=int(row["upload_length"]), status="duplicate")
        _scraper_event("resumable", phase="duplicate", session=row["id"])
        return {"status": "duplicate", "storage_path": None}

    size = storage.resolve_path(storage_path).stat().st_size
    register_document(
        user_id,
        fields,
        storage_path=storage_path,
        filename=sanitize_filename(original),
        original_filename=original,
        file_size=size,
        file_hash=full_hash,
    )
    db.update_upload_session(
        row["id"], upload_offset=size, status="complete", storage_path=storage_path
    )
    _scraper_event("resumable", phase="complete", session=row["id"], path=storage_path)
    return {"status": "complete", "storage_path": storage_path}


def append_resumable_chunk(user_id: str, session_id: str, offset: Any, chunk: bytes) -> dict[str, Any]:
    """Append ``chunk`` at ``offset``; the last chunk lands the file in the store."""

    row = _session_for(user_id, session_id)
    current = int(row["upload_offset"])
    length = int(row["upload_length"])
    try:
        requested = int(offset)
    except (TypeError, ValueError):
        raise UploadRejected("Upload-Offset header is required") from None
    if row["status"] != "uploading":
        raise UploadRejected(f"Upload already {row['status']}", status=409)
    if requested != current:
        raise UploadRejected(
            f"Offset mismatch: server has {current}, got {requested}", status=409, offset=current
        )
    if current + len(chunk) > length:
        raise UploadRejected("Chunk exceeds Upload-Length", status=413)

    tmp_path = Path(row["tmp_path"])
    with tmp_path.open("ab") as handle:
        handle.write(chunk)
    new_offset = current + len(chunk)

    if new_offset < length:
        db.update_upload_session(session_id, upload_offset=new_offset)
        return {"offset": new_offset, "status": "uploading", "storage_path": None}

    result = _finish_resumable(user_id, row, tmp_path)
    return {"offset": new_offset, **result}


__all__ = [
    "UploadFields",
    "UploadRejected",
    "append_resumable_chunk",
    "confirm_hash",
    "create_resumable_session",
    "ingest_upload",
    "register_document",
    "resumable_status",
    "upsert_case_by_identity",
]
