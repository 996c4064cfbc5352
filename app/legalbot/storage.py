"""Durable object storage for captured documents on the local data volume.

Objects are addressed by a relative key ``{user}/{YYYY-MM}/{ts}_{rand}_{name}``
under ``config.STORAGE_DIR``. Keys are what the database records; absolute
paths never leave this module.
"""
from __future__ import annotations

import hashlib
import random
import shutil
import string
import time
from pathlib import Path
from typing import Callable, Optional

from . import config
from .error_codes import ErrorCode
from .logging_utils import _scraper_event
from .models import Payload
from .utils import disk_has_room, format_size, sanitize_filename

_RAND_ALPHABET = string.ascii_lowercase + string.digits


class StorageError(Exception):
    def __init__(self, message: str, *, error_code: str = ErrorCode.STORAGE) -> None:
        super().__init__(message)
        self.error_code = error_code


def build_storage_key(
    user_id: str,
    filename: str,
    *,
    clock: Callable[[], float] = time.time,
    rng: Optional[random.Random] = None,
) -> str:
    now = clock()
    month = time.strftime("%Y-%m", time.gmtime(now))
    rand = "".join((rng or random).choice(_RAND_ALPHABET) for _ in range(6))
    return f"{sanitize_filename(user_id)}/{month}/{int(now * 1000)}_{rand}_{sanitize_filename(filename)}"


def resolve_path(key: str) -> Path:
    """Return the absolute path for ``key``; refuses keys escaping the store."""

    root = config.STORAGE_DIR.resolve()
    path = (root / key).resolve()
    if root != path and root not in path.parents:
        raise StorageError(f"Storage key outside of store: {key!r}")
    return path


def _check_room() -> None:
    config.STORAGE_DIR.mkdir(parents=True, exist_ok=True)
    if not disk_has_room(config.MIN_FREE_MB, config.STORAGE_DIR):
        raise StorageError(
            f"Less than {config.MIN_FREE_MB} MB free under {config.STORAGE_DIR}"
        )


def store_bytes(user_id: str, filename: str, data: Payload) -> str:
    """Write ``data`` (bytes or a file path) to a fresh key and return the key."""

    _check_room()
    key = build_storage_key(user_id, filename)
    path = resolve_path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        if isinstance(data, Path):
            shutil.copyfile(data, path)
        else:
            path.write_bytes(bytes(data))
    except OSError as exc:
        _scraper_event("storage", phase="write_failed", key=key, error=repr(exc))
        raise StorageError(f"Could not write {key}: {exc}") from exc
    _scraper_event("storage", phase="stored", key=key, size=format_size(path.stat().st_size))
    return key


def move_into_store(user_id: str, filename: str, source: Path) -> str:
    """Move a finished temp file into the store without copying it."""

    _check_room()
    key = build_storage_key(user_id, filename)
    path = resolve_path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.move(str(source), path)
    except OSError as exc:
        raise StorageError(f"Could not move upload into {key}: {exc}") from exc
    _scraper_event("storage", phase="moved", key=key, size=format_size(path.stat().st_size))
    return key


def exists(key: str) -> bool:
    try:
        return resolve_path(key).is_file()
    except StorageError:
        return False


def file_sha256(key: str, chunk_size: int = 1024 * 1024) -> str:
    """Stream the stored object through SHA-256."""

    path = resolve_path(key)
    digest = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(chunk_size), b""):
                digest.update(chunk)
    except OSError as exc:
        raise StorageError(f"Could not read {key}: {exc}") from exc
    return digest.hexdigest()


def delete(key: str) -> None:
    path = resolve_path(key)
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        raise StorageError(f"Could not delete {key}: {exc}") from exc


__all__ = [
    "StorageError",
    "build_storage_key",
    "delete",
    "exists",
    "file_sha256",
    "move_into_store",
    "resolve_path",
    "store_bytes",
]
