"""Chunked, resumable uploads over the tus 1.0.0 protocol.

A transfer is ``POST`` (create) then ``PATCH`` per chunk, each chunk placed at
an explicit ``Upload-Offset``. When a session URL is already known, ``HEAD``
asks the server how much it has so a new ``start()`` continues where the last
one stopped. The source is either bytes or a path read chunk by chunk.
"""
from __future__ import annotations

import base64
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urljoin

import requests

from . import config
from .error_codes import ErrorCode, classify_http_status
from .logging_utils import _scraper_event
from .models import Payload
from .retry_policy import UPLOAD_RETRY_DELAYS, decide_retry, upload_retry_delay
from .utils import format_size

TUS_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

ProgressCallback = Callable[[int, int], None]


class UploadError(Exception):
    def __init__(
        self,
        message: str,
        *,
        error_code: str = ErrorCode.NETWORK,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.http_status = http_status


class _Aborted(Exception):
    pass


@dataclass
class UploadResult:
    path: str
    size: int
    bytes_uploaded: int
    completed: bool
    upload_url: Optional[str] = None


def encode_tus_metadata(metadata: dict[str, Any]) -> str:
    """Render ``key base64(value)`` pairs, comma-joined, skipping empty values."""

    parts = []
    for key, value in metadata.items():
        if value is None or value == "":
            continue
        encoded = base64.b64encode(str(value).encode("utf-8")).decode("ascii")
        parts.append(f"{key} {encoded}")
    return ",".join(parts)


def decode_tus_metadata(header: str | None) -> dict[str, str]:
    decoded: dict[str, str] = {}
    for pair in (header or "").split(","):
        key, _, value = pair.strip().partition(" ")
        if not key:
            continue
        try:
            decoded[key] = base64.b64decode(value.strip()).decode("utf-8") if value else ""
        except (ValueError, UnicodeDecodeError):
            continue
    return decoded


def _raise_for_status(response: requests.Response, verb: str) -> None:
    if response.ok:
        return
    text = (response.text or "")[:200]
    raise UploadError(
        f"tus {verb} failed ({response.status_code}): {text}",
        error_code=classify_http_status(response.status_code),
        http_status=response.status_code,
    )


class ResumableUpload:
    def __init__(
        self,
        endpoint: str,
        source: Payload,
        *,
        object_path: str,
        token: str = "",
        bucket: str = config.STORAGE_BUCKET,
        metadata: Optional[dict[str, Any]] = None,
        chunk_size: int = config.RESUMABLE_CHUNK_BYTES,
        on_progress: Optional[ProgressCallback] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        retry_delays: Sequence[float] = UPLOAD_RETRY_DELAYS,
        timeout: int = config.UPLOAD_TIMEOUT_SECONDS,
    ) -> None:
        self.endpoint = endpoint
        self.source = source
        self.object_path = object_path
        self.token = token
        self.bucket = bucket
        self.metadata = dict(metadata or {})
        self.chunk_size = max(1, chunk_size)
        self.on_progress = on_progress
        self.session = session or requests.Session()
        self.retry_delays = tuple(retry_delays)
        self.timeout = timeout
        self._sleep = sleep

        self.upload_url: Optional[str] = None
        self.bytes_uploaded = 0
        self._retry_count = 0
        self._abort = threading.Event()

    @property
    def size(self) -> int:
        if isinstance(self.source, Path):
            return self.source.stat().st_size
        return len(self.source)

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Stop before the next chunk; a later ``start()`` resumes from the server offset."""

        self._abort.set()

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {"Tus-Resumable": TUS_VERSION}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        headers.update(extra)
        return headers

    def _read_range(self, offset: int, length: int) -> bytes:
        if isinstance(self.source, Path):
            with self.source.open("rb") as handle:
                handle.seek(offset)
                return handle.read(length)
        return bytes(self.source[offset : offset + length])

    def _create(self) -> None:
        metadata = {
            "bucketName": self.bucket,
            "objectName": self.object_path,
            "contentType": "application/pdf",
            "cacheControl": "3600",
            **self.metadata,
        }
        response = self.session.post(
            self.endpoint,
            headers=self._headers(
                **{
                    "Upload-Length": str(self.size),
                    "Upload-Metadata": encode_tus_metadata(metadata),
                    "x-upsert": "false",
                }
            ),
            timeout=self.timeout,
        )
        _raise_for_status(response, "create")
        location = response.headers.get("Location")
        if not location:
            raise UploadError("tus create returned no Location header", error_code=ErrorCode.INTERNAL)
        self.upload_url = urljoin(self.endpoint, location)
        self.bytes_uploaded = 0
        _scraper_event(
            "upload", phase="created", path=self.object_path, size=format_size(self.size)
        )

    def _resume(self) -> None:
        if self.upload_url is None:
            raise UploadError("no tus session to resume", error_code=ErrorCode.INTERNAL)
        try:
            response = self.session.head(
                self.upload_url, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as exc:
            _scraper_event("upload", phase="head_failed", error=repr(exc))
            response = None

        if response is None or not response.ok:
            self.upload_url = None
            self._create()
            return
        self.bytes_uploaded = int(response.headers.get("Upload-Offset") or 0)
        _scraper_event("upload", phase="resume", offset=self.bytes_uploaded, path=self.object_path)

    def _upload_chunks(self) -> None:
        if self.upload_url is None:
            raise UploadError("tus session was not created", error_code=ErrorCode.INTERNAL)
        total = self.size
        while self.bytes_uploaded < total:
            if self.aborted:
                raise _Aborted()
            chunk_end = min(self.bytes_uploaded + self.chunk_size, total)
            chunk = self._read_range(self.bytes_uploaded, chunk_end - self.bytes_uploaded)
            response = self.session.patch(
                self.upload_url,
                data=chunk,
                headers=self._headers(
                    **{
                        "Upload-Offset": str(self.bytes_uploaded),
                        "Content-Type": OFFSET_CONTENT_TYPE,
                    }
                ),
                timeout=self.timeout,
            )
            _raise_for_status(response, "patch")
            self.bytes_uploaded = int(response.headers.get("Upload-Offset") or chunk_end)
            self._retry_count = 0
            if self.on_progress is not None:
                self.on_progress(self.bytes_uploaded, total)

    def _result(self, completed: bool) -> UploadResult:
        return UploadResult(
            path=self.object_path,
            size=self.size,
            bytes_uploaded=self.bytes_uploaded,
            completed=completed,
            upload_url=self.upload_url,
        )

    def start(self) -> UploadResult:
        """Create or resume the session and send the remaining chunks.

        A failure re-runs the whole call after the next delay of the retry
        schedule. Raises :class:`UploadError` once the schedule is exhausted,
        or at once when ``decide_retry`` calls the error permanent (a 403 from
        the storage gateway, say).
        """

        self._abort.clear()
        while True:
            try:
                if self.upload_url is None:
                    self._create()
                else:
                    self._resume()
                self._upload_chunks()
                _scraper_event("upload", phase="complete", path=self.object_path, size=self.size)
                return self._result(True)
            except _Aborted:
                _scraper_event("upload", phase="aborted", offset=self.bytes_uploaded)
                return self._result(False)
            except (requests.RequestException, UploadError, OSError) as exc:
                if self.aborted:
                    return self._result(False)
                if isinstance(exc, UploadError):
                    error_code, http_status = exc.error_code, exc.http_status
                elif isinstance(exc, requests.RequestException):
                    error_code, http_status = ErrorCode.NETWORK, None
                else:
                    error_code, http_status = None, None
                delay = upload_retry_delay(self._retry_count, self.retry_delays)
                retry = delay is not None and decide_retry(
                    self._retry_count + 1,
                    len(self.retry_delays) + 1,
                    exc,
                    error_code=error_code,
                    http_status=http_status,
                )
                if not retry:
                    _scraper_event(
                        "upload", phase="failed", path=self.object_path, error=repr(exc)
                    )
                    if isinstance(exc, UploadError):
                        raise
                    raise UploadError(str(exc), error_code=error_code or ErrorCode.INTERNAL) from exc
                self._retry_count += 1
                _scraper_event(
                    "upload",
                    phase="retry",
                    attempt=self._retry_count,
                    delay_s=delay,
                    offset=self.bytes_uploaded,
                    error=repr(exc),
                )
                self._sleep(delay)


__all__ = [
    "ResumableUpload",
    "UploadError",
    "UploadResult",
    "decode_tus_metadata",
    "encode_tus_metadata",
]
