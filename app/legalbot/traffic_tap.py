"""Passive observation of document transfers made by the page itself.

The matching rules are plain functions so they can be tested without a page.
``PageInterceptor`` is the unprivileged half: the execution host hands it
every observed response and every object-URL blob, and it emits a
``pdf_intercepted`` envelope for the ones that look like documents. It never
raises into the host's call path. ``CaptureBuffer`` is the privileged half that
collects those envelopes into ``CapturedFile`` records.
"""
from __future__ import annotations

import re
import threading
from typing import Any, Callable, Optional, Protocol

from . import config
from .channel import Envelope, MessageChannel
from .logging_utils import _scraper_event
from .models import CapturedFile
from .utils import format_size, log_line, utc_now_iso

PDF_INTERCEPTED = "pdf_intercepted"
MIN_CAPTURE_BYTES = 1024

DOCUMENT_CONTENT_TYPES = ("application/pdf", "application/x-pdf", "application/octet-stream")
_DOCUMENT_URL_RE = re.compile(r"documento|escrito|resoluc|getdoc|verdoc|obtenerdoc", re.IGNORECASE)

ObservedHandler = Callable[[dict[str, Any]], None]


class InterceptorHost(Protocol):
    def install_interceptor(self, handler: ObservedHandler) -> None: ...


def is_document_response(url: str | None, content_type: str | None) -> bool:
    ct = (content_type or "").lower()
    lowered = (url or "").lower()
    if any(kind in ct for kind in DOCUMENT_CONTENT_TYPES):
        return True
    if ".pdf" in lowered:
        return True
    return bool(_DOCUMENT_URL_RE.search(lowered))


def is_document_blob(mime: str | None) -> bool:
    return (mime or "").lower().startswith("application/pdf")


def should_capture(size: int) -> bool:
    return size > MIN_CAPTURE_BYTES


class PageInterceptor:
    """Unprivileged observer; its only capability is posting envelopes."""

    def __init__(self, channel: MessageChannel) -> None:
        self.channel = channel
        self._installed_on: set[int] = set()
        self._lock = threading.Lock()

    def install(self, host: InterceptorHost) -> bool:
        """Ask ``host`` to feed observed traffic here. Repeated calls are no-ops."""

        with self._lock:
            if id(host) in self._installed_on:
                return False
            self._installed_on.add(id(host))
        host.install_interceptor(self.observe)
        _scraper_event("tap", phase="install", host=type(host).__name__)
        return True

    def observe(self, event: dict[str, Any]) -> None:
        try:
            kind = event.get("type")
            body = event.get("body") or b""
            size = int(event.get("size") or len(body))
            if kind == "blob":
                if not is_document_blob(event.get("mime")):
                    return
                url = str(event.get("url") or "")
                content_type = str(event.get("mime") or "application/pdf")
                method = "blob_url"
            else:
                url = str(event.get("url") or "")
                content_type = str(event.get("content_type") or "")
                if not is_document_response(url, content_type):
                    return
                method = str(event.get("method") or "fetch")

            if not should_capture(size):
                return

            self.channel.post(
                Envelope(
                    PDF_INTERCEPTED,
                    {
                        "url": url,
                        "content_type": content_type,
                        "handle": body,
                        "size": size,
                        "method": method,
                        "captured_at": utc_now_iso(),
                    },
                )
            )
        except Exception as exc:  # noqa: BLE001
            # The page's own request must never notice the tap.
            _scraper_event("error", phase="tap", error=repr(exc))


CaptureCallback = Callable[[CapturedFile], None]


class CaptureBuffer:
    """Privileged-side listener hub for intercepted documents."""

    def __init__(self, channel: Optional[MessageChannel] = None) -> None:
        self._files: list[CapturedFile] = []
        self._listeners: list[CaptureCallback] = []
        self._cond = threading.Condition()
        if channel is not None:
            channel.subscribe(self._on_envelope)

    def _on_envelope(self, envelope: Envelope) -> None:
        if envelope.kind != PDF_INTERCEPTED:
            return
        payload = envelope.payload
        handle = payload.get("handle")
        if handle is None:
            return
        self.add(
            CapturedFile(
                data=handle,
                url=str(payload.get("url") or ""),
                content_type=str(payload.get("content_type") or ""),
                method=str(payload.get("method") or "fetch"),
                captured_at=str(payload.get("captured_at") or utc_now_iso()),
            )
        )

    def add(self, captured: CapturedFile) -> None:
        with self._cond:
            self._files.append(captured)
            listeners = list(self._listeners)
            self._cond.notify_all()
        log_line(
            f"[TAP] captured {captured.url or '(blob)'} ({format_size(captured.size)}) via {captured.method}"
        )
        for callback in listeners:
            try:
                callback(captured)
            except Exception as exc:  # noqa: BLE001
                _scraper_event("error", phase="tap_listener", error=repr(exc))

    def on_capture(self, callback: CaptureCallback) -> Callable[[], None]:
        with self._cond:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._cond:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def get_captured_files(self) -> list[CapturedFile]:
        with self._cond:
            return list(self._files)

    def clear_captured(self) -> None:
        with self._cond:
            self._files.clear()

    def wait_for_capture(self, timeout: float = config.CAPTURE_WAIT_SECONDS) -> Optional[CapturedFile]:
        """Block until a new capture arrives or ``timeout`` seconds pass."""

        with self._cond:
            seen = len(self._files)
            arrived = self._cond.wait_for(lambda: len(self._files) > seen, timeout=timeout)
            return self._files[-1] if arrived else None


def install_traffic_tap(
    host: InterceptorHost, channel: MessageChannel, interceptor: Optional[PageInterceptor] = None
) -> PageInterceptor:
    interceptor = interceptor or PageInterceptor(channel)
    interceptor.install(host)
    return interceptor


__all__ = [
    "CaptureBuffer",
    "PDF_INTERCEPTED",
    "PageInterceptor",
    "install_traffic_tap",
    "is_document_blob",
    "is_document_response",
    "should_capture",
]
