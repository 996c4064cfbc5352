"""Message channel between the page-side components and the privileged relay."""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .error_codes import ErrorCode
from .logging_utils import _scraper_event

Responder = Callable[["Envelope"], Optional[dict[str, Any]]]


class ChannelError(Exception):
    def __init__(self, message: str, *, error_code: str = ErrorCode.CHANNEL) -> None:
        super().__init__(message)
        self.error_code = error_code


@dataclass
class Envelope:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    tab_id: Optional[int] = None


class MessageChannel:
    """One-way event fan-out plus request/response dispatch.

    ``post`` delivers to every subscriber synchronously. Envelopes posted
    while nobody is subscribed wait in a short backlog for ``drain``; when
    the backlog is full the oldest one is evicted. ``request`` delivers synchronously to the
    responder registered for the envelope kind and returns its answer.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._backlog: "deque[Envelope]" = deque(maxlen=max(1, maxsize))
        self._responders: dict[str, Responder] = {}
        self._subscribers: list[Callable[[Envelope], None]] = []
        self._lock = threading.Lock()

    def register(self, kind: str, responder: Responder) -> None:
        with self._lock:
            self._responders[kind] = responder

    def subscribe(self, callback: Callable[[Envelope], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def post(self, envelope: Envelope) -> bool:
        """Deliver ``envelope``; returns False when the backlog evicted an older one."""

        evicted = False
        with self._lock:
            subscribers = list(self._subscribers)
            if not subscribers:
                evicted = len(self._backlog) == self._backlog.maxlen
                self._backlog.append(envelope)
        if evicted:
            _scraper_event("channel", phase="backlog_evict", kind=envelope.kind)
        for callback in subscribers:
            try:
                callback(envelope)
            except Exception as exc:  # noqa: BLE001
                _scraper_event(
                    "error", phase="channel", kind=envelope.kind, error=repr(exc)
                )
        return not evicted

    def request(self, envelope: Envelope) -> dict[str, Any]:
        with self._lock:
            responder = self._responders.get(envelope.kind)
        if responder is None:
            raise ChannelError(f"No responder registered for {envelope.kind!r}")
        try:
            answer = responder(envelope)
        except ChannelError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ChannelError(str(exc)) from exc
        return answer or {}

    def drain(self) -> list[Envelope]:
        """Return and remove every envelope no subscriber has seen."""

        with self._lock:
            items = list(self._backlog)
            self._backlog.clear()
        return items


__all__ = ["ChannelError", "Envelope", "MessageChannel"]
