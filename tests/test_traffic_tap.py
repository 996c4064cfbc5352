from __future__ import annotations

import threading
from typing import Any

import pytest

from app.legalbot.channel import ChannelError, Envelope, MessageChannel
from app.legalbot.traffic_tap import (
    PDF_INTERCEPTED,
    CaptureBuffer,
    PageInterceptor,
    install_traffic_tap,
    is_document_response,
)

PDF = b"%PDF-1.4\n" + b"0" * 4096


class FakeHost:
    def __init__(self) -> None:
        self.handlers: list[Any] = []

    def install_interceptor(self, handler) -> None:
        self.handlers.append(handler)

    def fire(self, event: dict[str, Any]) -> None:
        for handler in self.handlers:
            handler(event)


@pytest.mark.parametrize(
    "url, content_type, expected",
    [
        ("https://pjud.cl/x", "application/pdf", True),
        ("https://pjud.cl/x", "application/octet-stream", True),
        ("https://pjud.cl/files/a.PDF", "text/html", True),
        ("https://pjud.cl/ADIR/verDocumento.php", "", True),
        ("https://pjud.cl/app.js", "text/javascript", False),
    ],
)
def test_document_response_matching(url: str, content_type: str, expected: bool) -> None:
    assert is_document_response(url, content_type) is expected


def test_interceptor_installs_once_and_buffers_documents() -> None:
    channel = MessageChannel()
    buffer = CaptureBuffer(channel)
    host = FakeHost()

    interceptor = install_traffic_tap(host, channel)
    assert interceptor.install(host) is False
    assert len(host.handlers) == 1

    host.fire({"type": "response", "url": "https://pjud.cl/doc.pdf", "content_type": "application/pdf", "body": PDF, "method": "xhr"})
    host.fire({"type": "response", "url": "https://pjud.cl/style.css", "content_type": "text/css", "body": PDF})
    host.fire({"type": "response", "url": "https://pjud.cl/tiny.pdf", "content_type": "application/pdf", "body": b"%PDF"})
    host.fire({"type": "blob", "url": "blob:https://pjud.cl/1", "mime": "application/pdf", "body": PDF})
    host.fire({"type": "blob", "url": "blob:https://pjud.cl/2", "mime": "image/png", "body": PDF})

    files = buffer.get_captured_files()
    assert [(f.url, f.method) for f in files] == [
        ("https://pjud.cl/doc.pdf", "xhr"),
        ("blob:https://pjud.cl/1", "blob_url"),
    ]
    assert files[0].size == len(PDF)
    assert channel.drain() == []

    buffer.clear_captured()
    assert buffer.get_captured_files() == []


def test_observe_never_raises() -> None:
    class BrokenChannel(MessageChannel):
        def post(self, envelope: Envelope) -> bool:
            raise RuntimeError("closed")

    PageInterceptor(BrokenChannel()).observe(
        {"type": "response", "url": "a.pdf", "content_type": "application/pdf", "body": PDF}
    )
    PageInterceptor(MessageChannel()).observe({"type": "response", "size": "not a number"})


def test_listeners_and_wait_for_capture() -> None:
    channel = MessageChannel()
    buffer = CaptureBuffer(channel)
    interceptor = PageInterceptor(channel)
    seen: list[str] = []

    unsubscribe = buffer.on_capture(lambda f: seen.append(f.url))
    buffer.on_capture(lambda f: (_ for _ in ()).throw(ValueError("listener bug")))

    timer = threading.Timer(
        0.05,
        interceptor.observe,
        args=({"type": "response", "url": "https://pjud.cl/a.pdf", "content_type": "application/pdf", "body": PDF},),
    )
    timer.start()
    captured = buffer.wait_for_capture(timeout=5)
    timer.join()

    assert captured is not None
    assert seen == ["https://pjud.cl/a.pdf"]

    unsubscribe()
    buffer.add(captured)
    assert seen == ["https://pjud.cl/a.pdf"]
    assert buffer.wait_for_capture(timeout=0.01) is None


def test_channel_request_and_bounded_queue() -> None:
    channel = MessageChannel(maxsize=1)
    channel.register("ping", lambda env: {"pong": env.payload["n"]})
    channel.register("fail", lambda env: 1 / 0)

    assert channel.request(Envelope("ping", {"n": 3})) == {"pong": 3}
    with pytest.raises(ChannelError):
        channel.request(Envelope("fail"))
    with pytest.raises(ChannelError):
        channel.request(Envelope("unknown"))

    assert channel.post(Envelope("a")) is True
    assert channel.post(Envelope("b")) is False
    assert [e.kind for e in channel.drain()] == ["b"]


def test_subscribers_receive_every_envelope_past_backlog_size() -> None:
    channel = MessageChannel(maxsize=4)
    buffer = CaptureBuffer(channel)
    interceptor = PageInterceptor(channel)

    for n in range(300):
        interceptor.observe(
            {"type": "response", "url": f"https://pjud.cl/doc{n}.pdf", "content_type": "application/pdf", "body": PDF}
        )

    files = buffer.get_captured_files()
    assert len(files) == 300
    assert files[-1].url == "https://pjud.cl/doc299.pdf"
    assert channel.drain() == []
