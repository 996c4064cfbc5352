from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any

from playwright.sync_api import Error as PlaywrightError

from app.legalbot.host import BLOB_BINDING, SERIALIZE_DOM_JS, PlaywrightHost


class FakeFrame:
    def __init__(self, url: str, html: str | None) -> None:
        self.url = url
        self.html = html

    def evaluate(self, script: str) -> str:
        if self.html is None:
            raise PlaywrightError("cross-origin frame")
        return self.html


class FakeContext:
    def cookies(self, url: str) -> list[dict[str, str]]:
        return [{"name": "PHPSESSID", "value": "abc"}, {"name": "", "value": "x"}]


class FakeApiResponse:
    def __init__(self, status: int, body: bytes, url: str) -> None:
        self.status = status
        self._body = body
        self.url = url
        self.headers = {"content-type": "application/pdf"}

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def body(self) -> bytes:
        return self._body


class FakeRequestContext:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def get(self, url: str, timeout: int) -> FakeApiResponse:
        self.calls.append(url)
        if "boom" in url:
            raise PlaywrightError("net::ERR_FAILED")
        if "missing" in url:
            return FakeApiResponse(404, b"", url)
        return FakeApiResponse(200, b"%PDF-1.4 body", url)


class FakePage:
    def __init__(self) -> None:
        self.url = "https://oficinajudicialvirtual.pjud.cl/indexN.php"
        self.main_frame = FakeFrame(self.url, "<html></html>")
        self.frames = [
            self.main_frame,
            FakeFrame("https://oficinajudicialvirtual.pjud.cl/frame.php", "<p>frame</p>"),
            FakeFrame("https://ads.example/", None),
        ]
        self.context = FakeContext()
        self.request = FakeRequestContext()
        self.session: dict[str, str] = {}
        self.listeners: dict[str, Any] = {}
        self.bindings: dict[str, Any] = {}
        self.init_scripts: list[str] = []

    def title(self) -> str:
        return "Oficina Judicial Virtual"

    def evaluate(self, script: str, arg: Any = None) -> Any:
        if script == SERIALIZE_DOM_JS:
            return "<html><body>main</body></html>"
        if "getItem" in script:
            return self.session.get(arg)
        if "setItem" in script:
            self.session[arg[0]] = arg[1]
            return None
        if "removeItem" in script:
            self.session.pop(arg, None)
            return None
        raise PlaywrightError("Execution context was destroyed")

    def on(self, event: str, callback: Any) -> None:
        self.listeners[event] = callback

    def expose_binding(self, name: str, callback: Any) -> None:
        self.bindings[name] = callback

    def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)


class FakeResponse:
    def __init__(self, url: str, content_type: str, status_ok: bool = True, resource_type: str = "xhr") -> None:
        self.url = url
        self.headers = {"content-type": content_type}
        self.ok = status_ok
        self.request = type("Req", (), {"resource_type": resource_type})()

    def body(self) -> bytes:
        return b"%PDF-1.4 captured"


def _host(tmp_path: Path) -> tuple[PlaywrightHost, FakePage]:
    page = FakePage()
    return PlaywrightHost(page, store_path=tmp_path / "kv.json"), page  # type: ignore[arg-type]


def test_snapshot_includes_readable_frames_and_cookies(tmp_path: Path) -> None:
    host, _ = _host(tmp_path)

    snapshot = host.snapshot()

    assert snapshot.html == "<html><body>main</body></html>"
    assert snapshot.title == "Oficina Judicial Virtual"
    assert [f.url for f in snapshot.frames] == ["https://oficinajudicialvirtual.pjud.cl/frame.php"]
    assert snapshot.cookies == {"PHPSESSID": "abc"}


def test_session_storage_store_round_trips_json(tmp_path: Path) -> None:
    host, page = _host(tmp_path)
    store = host.session_store

    store.set("causa", {"rol": "C-1-2024"})
    assert json.loads(page.session["causa"]) == {"rol": "C-1-2024"}
    assert store.get("causa") == {"rol": "C-1-2024"}

    page.session["raw"] = "not json"
    assert store.get("raw") == "not json"
    assert store.get("absent", "dflt") == "dflt"

    store.remove("causa")
    assert store.get("causa") is None


def test_interceptor_reports_documents_and_blobs(tmp_path: Path) -> None:
    host, page = _host(tmp_path)
    events: list[dict[str, Any]] = []

    host.install_interceptor(events.append)
    assert BLOB_BINDING in page.bindings
    assert page.init_scripts and BLOB_BINDING in page.init_scripts[0]

    on_response = page.listeners["response"]
    on_response(FakeResponse("https://pjud.cl/doc.pdf", "application/pdf"))
    on_response(FakeResponse("https://pjud.cl/app.js", "text/javascript"))
    on_response(FakeResponse("https://pjud.cl/gone.pdf", "application/pdf", status_ok=False))
    on_response(FakeResponse("https://pjud.cl/x", "application/pdf", resource_type="document"))

    blob = base64.b64encode(b"%PDF-1.7 blob").decode()
    page.bindings[BLOB_BINDING](None, {"url": "blob:https://pjud.cl/1", "mime": "application/pdf", "data": blob})
    page.bindings[BLOB_BINDING](None, "not a dict")

    assert [(e["type"], e["url"], e.get("method")) for e in events] == [
        ("response", "https://pjud.cl/doc.pdf", "xhr"),
        ("response", "https://pjud.cl/x", "fetch"),
        ("blob", "blob:https://pjud.cl/1", None),
    ]
    assert events[2]["body"] == b"%PDF-1.7 blob"
    assert events[0]["size"] == len(b"%PDF-1.4 captured")


def test_fetch_resource(tmp_path: Path) -> None:
    host, page = _host(tmp_path)

    fetched = host.fetch_resource("https://pjud.cl/docs/1.pdf")
    assert fetched.body == b"%PDF-1.4 body"
    assert fetched.content_type == "application/pdf"

    assert host.fetch_resource("https://pjud.cl/missing.pdf") is None
    assert host.fetch_resource("https://pjud.cl/boom.pdf") is None
    assert len(page.request.calls) == 3


def test_file_store_is_used_for_persistent_state(tmp_path: Path) -> None:
    host, _ = _host(tmp_path)

    host.store.set("confirmed", {"rol": "C-1-2024"})

    assert json.loads((tmp_path / "kv.json").read_text(encoding="utf-8")) == {"confirmed": {"rol": "C-1-2024"}}
