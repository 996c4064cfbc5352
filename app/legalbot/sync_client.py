"""Privileged relay between the page-side capture and the sync API.

The capture side is not allowed to talk to the API directly; it hands its
``causa_package`` envelope to the relay over the message channel. The relay
keeps the latest package per tab, posts it to ``/api/scraper/sync`` and
reads the server-sent event stream, forwarding each progress event back over
the channel. The final ``complete`` or ``error`` payload becomes the answer to
the original request.
"""
from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Iterable, Iterator, Optional

import requests

from . import config
from .channel import Envelope, MessageChannel
from .logging_utils import _scraper_event
from .models import CasePackage

CAUSA_PACKAGE = "causa_package"
GET_CAUSA_PACKAGE = "get_causa_package"
CAUSA_PACKAGE_READY = "causa_package_ready"
SYNC_PROGRESS = "sync_progress"
SYNC_PATH = "/api/scraper/sync"


def iter_sse_events(lines: Iterable[str]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield ``(event, data)`` pairs from the lines of an event stream.

    Comment lines and events without a JSON ``data`` field are skipped.
    """

    event = "message"
    data_lines: list[str] = []
    for raw in lines:
        line = raw.rstrip("\r") if isinstance(raw, str) else raw.decode("utf-8").rstrip("\r")
        if not line:
            if data_lines:
                try:
                    payload = json.loads("\n".join(data_lines))
                except json.JSONDecodeError:
                    payload = None
                if isinstance(payload, dict):
                    yield event, payload
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)

    if data_lines:
        try:
            payload = json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            return
        if isinstance(payload, dict):
            yield event, payload


class BackgroundRelay:
    def __init__(
        self,
        channel: MessageChannel,
        *,
        api_base_url: str = config.API_BASE_URL,
        token: str = config.API_TOKEN,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        ttl_seconds: float = config.PACKAGE_TTL_SECONDS,
        timeout: float = config.SYNC_TIMEOUT_SECONDS + 30,
    ) -> None:
        self.channel = channel
        self.api_base_url = api_base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._clock = clock
        self._packages: dict[Any, tuple[dict[str, Any], float]] = {}
        self._lock = threading.Lock()
        channel.register(CAUSA_PACKAGE, self.handle_package)
        channel.register(GET_CAUSA_PACKAGE, self.get_package)

    @property
    def api_available(self) -> bool:
        return bool(self.api_base_url and self.token)

    def _prune(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        for tab_id in [t for t, (_, ts) in self._packages.items() if ts < cutoff]:
            del self._packages[tab_id]

    def get_package(self, envelope: Envelope) -> dict[str, Any]:
        tab_id = envelope.payload.get("tab_id", envelope.tab_id)
        with self._lock:
            self._prune()
            entry = self._packages.get(tab_id if tab_id is not None else "unknown")
        if entry is None:
            return {"status": "not_found"}
        return {"status": "found", "package": entry[0]}

    def handle_package(self, envelope: Envelope) -> dict[str, Any]:
        package = envelope.payload.get("package")
        if not isinstance(package, dict) or not package.get("rol"):
            return {"status": "error", "error": "Invalid package: missing rol"}

        tab_id = envelope.tab_id if envelope.tab_id is not None else "unknown"
        with self._lock:
            self._packages[tab_id] = (package, self._clock())
            self._prune()

        summary = {
            "rol": package.get("rol"),
            "tribunal": package.get("tribunal"),
            "procedimiento": package.get("procedimiento"),
            "libro_tipo": package.get("libro_tipo"),
            "cuadernos": len(package.get("cuadernos") or []),
            "folios": len(package.get("folios") or []),
            "tab_id": tab_id,
        }
        _scraper_event("relay", phase="package_received", **summary)
        self.channel.post(Envelope(CAUSA_PACKAGE_READY, summary, envelope.tab_id))

        if not self.api_available:
            return {"status": "api_unavailable", "message": "Package stored; sync API not configured."}
        return self.sync_package(package, envelope.tab_id)

    def sync_package(self, package: dict[str, Any], tab_id: Optional[int] = None) -> dict[str, Any]:
        """POST the package and follow the event stream until it ends."""

        url = f"{self.api_base_url}{SYNC_PATH}"
        try:
            response = self.session.post(
                url,
                json=package,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "text/event-stream",
                },
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            _scraper_event("relay", phase="send_failed", error=repr(exc))
            return {"status": "error", "error": str(exc)}

        try:
            if not response.ok:
                try:
                    message = (response.json() or {}).get("error")
                except ValueError:
                    message = None
                _scraper_event("relay", phase="rejected", http_status=response.status_code)
                return {
                    "status": "error",
                    "error": message or f"Sync API returned {response.status_code}",
                    "http_status": response.status_code,
                }

            final: Optional[dict[str, Any]] = None
            for event, data in iter_sse_events(response.iter_lines(decode_unicode=True)):
                if event == "progress":
                    self.channel.post(Envelope(SYNC_PROGRESS, data, tab_id))
                elif event == "complete":
                    final = {"status": "complete", "result": data}
                elif event == "error":
                    final = {"status": "error", "error": data.get("message") or "Sync failed"}
        except requests.RequestException as exc:
            _scraper_event("relay", phase="stream_failed", error=repr(exc))
            return {"status": "error", "error": str(exc)}
        finally:
            response.close()

        if final is None:
            return {"status": "error", "error": "Sync stream ended without a result"}
        _scraper_event("relay", phase=final["status"], rol=package.get("rol"))
        return final

    def latest_package(self, tab_id: Any = "unknown") -> Optional[CasePackage]:
        with self._lock:
            self._prune()
            entry = self._packages.get(tab_id)
        return CasePackage.from_dict(entry[0]) if entry else None


__all__ = [
    "BackgroundRelay",
    "CAUSA_PACKAGE",
    "CAUSA_PACKAGE_READY",
    "GET_CAUSA_PACKAGE",
    "SYNC_PROGRESS",
    "iter_sse_events",
]
