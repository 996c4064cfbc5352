"""SQLite helpers for the legalbot sync service.

This module owns the connection helper, the schema and the small set of
queries the sync and upload paths share: case upserts, document and hash
rows, processing placeholders and resumable upload sessions. Uniqueness of
case identity and of ``(user_id, hash)`` is enforced by the schema; callers
treat the resulting ``sqlite3.IntegrityError`` as a signal, not a failure.
"""
from __future__ import annotations

import json
import sqlite3
import time
from typing import Any, Iterable, Optional

from . import config
from .identity import CaseIdentity

# Metadata columns a sync may fill in on an existing case.
CASE_METADATA_COLUMNS = (
    "caratula",
    "materia",
    "estado",
    "procedimiento",
    "libro_tipo",
    "fuente_sync",
)


def get_connection() -> sqlite3.Connection:
    """Return a SQLite connection to the service database.

    The parent directory is created if missing and ``check_same_thread`` is
    disabled because the sync pipeline runs in a worker thread.
    """

    db_path = config.DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_schema() -> None:
    """Create the tables if they do not yet exist. Safe to call repeatedly."""

    statements: Iterable[str] = (
        """
        CREATE TABLE IF NOT EXISTS cases (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id         TEXT NOT NULL,
            rol             TEXT NOT NULL,
            tribunal        TEXT NOT NULL DEFAULT '',
            caratula        TEXT NOT NULL DEFAULT '',
            materia         TEXT,
            estado          TEXT,
            procedimiento   TEXT,
            libro_tipo      TEXT,
            fuente_sync     TEXT,
            tabs_data       TEXT,
            receptor_data   TEXT,
            document_count  INTEGER NOT NULL DEFAULT 0,
            last_synced_at  TEXT,
            created_at      TEXT NOT NULL,
            updated_at      TEXT NOT NULL,
            UNIQUE(user_id, rol, tribunal, caratula)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_cases_user_rol
            ON cases(user_id, rol);
        """,
        """
        CREATE TABLE IF NOT EXISTS documents (
            id                 INTEGER PRIMARY KEY AUTOINCREMENT,
            case_id            INTEGER,
            user_id            TEXT NOT NULL,
            filename           TEXT NOT NULL,
            original_filename  TEXT,
            storage_path       TEXT NOT NULL,
            document_type      TEXT NOT NULL DEFAULT 'otro',
            file_size          INTEGER NOT NULL,
            file_hash          TEXT NOT NULL,
            source             TEXT NOT NULL,
            source_url         TEXT,
            folio              INTEGER,
            cuaderno           TEXT,
            fecha              TEXT,
            captured_at        TEXT NOT NULL,
            created_at         TEXT NOT NULL,
            FOREIGN KEY(case_id) REFERENCES cases(id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_documents_case
            ON documents(case_id);
        """,
        """
        CREATE TABLE IF NOT EXISTS document_hashes (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id        TEXT NOT NULL,
            rol            TEXT,
            case_id        INTEGER,
            tribunal       TEXT,
            caratula       TEXT,
            hash           TEXT NOT NULL,
            filename       TEXT,
            document_type  TEXT,
            created_at     TEXT NOT NULL,
            UNIQUE(user_id, hash)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS extracted_texts (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id  INTEGER NOT NULL UNIQUE,
            case_id      INTEGER,
            user_id      TEXT NOT NULL,
            status       TEXT NOT NULL DEFAULT 'pending',
            created_at   TEXT NOT NULL,
            updated_at   TEXT NOT NULL,
            FOREIGN KEY(document_id) REFERENCES documents(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS upload_sessions (
            id              TEXT PRIMARY KEY,
            user_id         TEXT NOT NULL,
            upload_length   INTEGER NOT NULL,
            upload_offset   INTEGER NOT NULL DEFAULT 0,
            metadata_json   TEXT NOT NULL,
            tmp_path        TEXT NOT NULL,
            status          TEXT NOT NULL DEFAULT 'uploading',
            storage_path    TEXT,
            created_at      TEXT NOT NULL,
            updated_at      TEXT NOT NULL
        );
        """,
    )

    conn = get_connection()
    with conn:
        for statement in statements:
            conn.execute(statement)


def _utc_now() -> str:
    """Return a UTC timestamp formatted as ISO8601 without fractional seconds."""

    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


# -- cases -------------------------------------------------------------------


def get_case(case_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute("SELECT * FROM cases WHERE id = ?", (case_id,)).fetchone()


def find_case_by_rol_tribunal(user_id: str, rol: str, tribunal: Optional[str]) -> Optional[sqlite3.Row]:
    """Return the user's case for ``rol`` whose court matches exactly.

    A missing court and an empty one are the same court.
    """

    conn = get_connection()
    return conn.execute(
        """
        SELECT * FROM cases
        WHERE user_id = ? AND rol = ? AND COALESCE(tribunal, '') = ?
        ORDER BY id
        LIMIT 1
        """,
        (user_id, rol, (tribunal or "").strip()),
    ).fetchone()


def find_case_by_identity(user_id: str, identity: CaseIdentity) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        """
        SELECT * FROM cases
        WHERE user_id = ? AND rol = ? AND tribunal = ? AND caratula = ?
        LIMIT 1
        """,
        (user_id, identity.rol, identity.tribunal, identity.caratula),
    ).fetchone()


def insert_case(user_id: str, identity: CaseIdentity, fields: dict[str, Any]) -> int:
    """Insert a case row; raises ``sqlite3.IntegrityError`` if the identity exists."""

    now = _utc_now()
    columns = {k: v for k, v in fields.items() if k in CASE_METADATA_COLUMNS and k != "caratula"}
    names = ["user_id", "rol", "tribunal", "caratula", "created_at", "updated_at", *columns]
    values = [user_id, identity.rol, identity.tribunal, identity.caratula, now, now, *columns.values()]
    placeholders = ", ".join("?" for _ in names)
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            f"INSERT INTO cases ({', '.join(names)}) VALUES ({placeholders})", values
        )
    return int(cursor.lastrowid)


def update_case_fields(case_id: int, fields: dict[str, Any]) -> None:
    """Update the provided metadata columns, skipping empty values."""

    updates = {
        k: v for k, v in fields.items() if (k in CASE_METADATA_COLUMNS or k == "tribunal") and v
    }
    if not updates:
        return
    assignments = ", ".join(f"{name} = ?" for name in updates)
    conn = get_connection()
    with conn:
        conn.execute(
            f"UPDATE cases SET {assignments}, updated_at = ? WHERE id = ?",
            (*updates.values(), _utc_now(), case_id),
        )


def store_case_json(case_id: int, column: str, payload: Any) -> None:
    if column not in {"tabs_data", "receptor_data"}:
        raise ValueError(f"Unsupported JSON column {column!r}")
    conn = get_connection()
    with conn:
        conn.execute(
            f"UPDATE cases SET {column} = ?, updated_at = ? WHERE id = ?",
            (json.dumps(payload, ensure_ascii=False), _utc_now(), case_id),
        )


def refresh_case_stats(case_id: int) -> int:
    """Recompute ``document_count`` and stamp ``last_synced_at``; returns the count."""

    conn = get_connection()
    with conn:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM documents WHERE case_id = ?", (case_id,)
        ).fetchone()
        count = int(row["n"]) if row else 0
        now = _utc_now()
        conn.execute(
            """
            UPDATE cases
            SET document_count = ?, last_synced_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (count, now, now, case_id),
        )
    return count


# -- documents ---------------------------------------------------------------


def find_hash(user_id: str, file_hash: str) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM document_hashes WHERE user_id = ? AND hash = ? LIMIT 1",
        (user_id, file_hash),
    ).fetchone()


def insert_document(
    *,
    case_id: Optional[int],
    user_id: str,
    filename: str,
    storage_path: str,
    document_type: str,
    file_size: int,
    file_hash: str,
    source: str,
    original_filename: Optional[str] = None,
    source_url: Optional[str] = None,
    folio: Optional[int] = None,
    cuaderno: Optional[str] = None,
    fecha: Optional[str] = None,
    captured_at: Optional[str] = None,
) -> int:
    now = _utc_now()
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO documents (
                case_id, user_id, filename, original_filename, storage_path,
                document_type, file_size, file_hash, source, source_url,
                folio, cuaderno, fecha, captured_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                case_id,
                user_id,
                filename,
                original_filename,
                storage_path,
                document_type,
                file_size,
                file_hash,
                source,
                source_url,
                folio,
                cuaderno,
                fecha,
                captured_at or now,
                now,
            ),
        )
    return int(cursor.lastrowid)


def get_document(document_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()


def find_document_by_storage_path(user_id: str, storage_path: str) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM documents WHERE user_id = ? AND storage_path = ? LIMIT 1",
        (user_id, storage_path),
    ).fetchone()


def insert_document_hash(
    *,
    user_id: str,
    file_hash: str,
    case_id: Optional[int] = None,
    rol: Optional[str] = None,
    tribunal: Optional[str] = None,
    caratula: Optional[str] = None,
    filename: Optional[str] = None,
    document_type: Optional[str] = None,
) -> bool:
    """Record a hash for the user. Returns ``False`` if it was already there."""

    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO document_hashes (
                    user_id, rol, case_id, tribunal, caratula, hash,
                    filename, document_type, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    rol,
                    case_id,
                    tribunal,
                    caratula,
                    file_hash,
                    filename,
                    document_type,
                    _utc_now(),
                ),
            )
    except sqlite3.IntegrityError:
        return False
    return True


def insert_extraction_placeholder(document_id: int, case_id: Optional[int], user_id: str) -> bool:
    now = _utc_now()
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO extracted_texts (
                    document_id, case_id, user_id, status, created_at, updated_at
                ) VALUES (?, ?, ?, 'pending', ?, ?)
                """,
                (document_id, case_id, user_id, now, now),
            )
    except sqlite3.IntegrityError:
        return False
    return True


def reconcile_document_hash(user_id: str, storage_path: str, partial_hash: str, full_hash: str) -> dict[str, int]:
    """Swap a partial hash for the recomputed full hash.

    If the full hash is already registered for the user the partial row is
    simply dropped, since the content is already known.
    """

    conn = get_connection()
    with conn:
        documents = conn.execute(
            """
            UPDATE documents SET file_hash = ?
            WHERE user_id = ? AND storage_path = ? AND file_hash = ?
            """,
            (full_hash, user_id, storage_path, partial_hash),
        ).rowcount
        existing = conn.execute(
            "SELECT id FROM document_hashes WHERE user_id = ? AND hash = ?",
            (user_id, full_hash),
        ).fetchone()
        if existing:
            hashes = conn.execute(
                "DELETE FROM document_hashes WHERE user_id = ? AND hash = ?",
                (user_id, partial_hash),
            ).rowcount
        else:
            hashes = conn.execute(
                "UPDATE document_hashes SET hash = ? WHERE user_id = ? AND hash = ?",
                (full_hash, user_id, partial_hash),
            ).rowcount
    return {"documents_updated": int(documents), "hashes_updated": int(hashes)}


# -- resumable upload sessions -------------------------------------------------


def create_upload_session(
    session_id: str, user_id: str, upload_length: int, metadata: dict[str, str], tmp_path: str
) -> None:
    now = _utc_now()
    conn = get_connection()
    with conn:
        conn.execute(
            """
            INSERT INTO upload_sessions (
                id, user_id, upload_length, upload_offset, metadata_json,
                tmp_path, status, created_at, updated_at
            ) VALUES (?, ?, ?, 0, ?, ?, 'uploading', ?, ?)
            """,
            (session_id, user_id, upload_length, json.dumps(metadata), tmp_path, now, now),
        )


def get_upload_session(session_id: str) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM upload_sessions WHERE id = ?", (session_id,)
    ).fetchone()


def update_upload_session(
    session_id: str,
    *,
    upload_offset: int,
    status: Optional[str] = None,
    storage_path: Optional[str] = None,
) -> None:
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE upload_sessions
            SET upload_offset = ?, status = COALESCE(?, status),
                storage_path = COALESCE(?, storage_path), updated_at = ?
            WHERE id = ?
            """,
            (upload_offset, status, storage_path, _utc_now(), session_id),
        )


def ping() -> bool:
    """Return ``True`` when the database answers a trivial query."""

    try:
        conn = get_connection()
        conn.execute("SELECT 1").fetchone()
    except sqlite3.Error:
        return False
    return True


__all__ = [
    "CASE_METADATA_COLUMNS",
    "create_upload_session",
    "find_case_by_identity",
    "find_case_by_rol_tribunal",
    "find_document_by_storage_path",
    "find_hash",
    "get_case",
    "get_connection",
    "get_document",
    "get_upload_session",
    "initialize_schema",
    "insert_case",
    "insert_document",
    "insert_document_hash",
    "insert_extraction_placeholder",
    "ping",
    "reconcile_document_hash",
    "refresh_case_stats",
    "store_case_json",
    "update_case_fields",
    "update_upload_session",
]
