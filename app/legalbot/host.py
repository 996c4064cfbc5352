"""Execution host adapter over a Playwright sync ``Page``.

The capture side only sees snapshots, an interceptor hook, resource fetches
and key-value stores. This module provides all of them for a real browser:

* snapshots walk the live DOM in the page and serialize open shadow roots as
  declarative ``<template shadowrootmode="open">`` subtrees; every child
  frame is serialized the same way with its URL;
* document responses are reported from ``page.on("response")``; PDF blobs
  handed to ``URL.createObjectURL`` are reported through an exposed binding
  installed by an init script;
* resource fetches go through ``page.request`` so they carry the page's
  cookies.
"""
from __future__ import annotations

import base64
import json
from typing import Any, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page, Response

from . import config
from .capture import HostResponse
from .dom import FrameSnapshot, PageSnapshot
from .kv_store import JsonFileStore
from .logging_utils import _scraper_event
from .traffic_tap import ObservedHandler, is_document_response

BLOB_BINDING = "__legalbotReportBlob"

SERIALIZE_DOM_JS = """
() => {
  const RAW = new Set(['script', 'style']);
  const VOID = new Set(['area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input',
                        'link', 'meta', 'source', 'track', 'wbr']);
  const esc = (s) => s.replace(/&/g, '&amp;').replace(/</g, '&lt;').replace(/>/g, '&gt;');
  const attrEsc = (s) => s.replace(/&/g, '&amp;').replace(/"/g, '&quot;');
  const walk = (node, parentTag) => {
    if (node.nodeType === Node.TEXT_NODE) {
      return RAW.has(parentTag) ? node.textContent : esc(node.textContent);
    }
    if (node.nodeType !== Node.ELEMENT_NODE) return '';
    const tag = node.localName;
    let out = '<' + tag;
    for (const a of node.attributes) out += ' ' + a.name + '="' + attrEsc(a.value) + '"';
    out += '>';
    if (VOID.has(tag)) return out;
    if (node.shadowRoot) {
      out += '<template shadowrootmode="open">';
      for (const c of node.shadowRoot.childNodes) out += walk(c, tag);
      out += '</template>';
    }
    const children = tag === 'template' ? node.content.childNodes : node.childNodes;
    for (const c of children) out += walk(c, tag);
    return out + '</' + tag + '>';
  };
  return '<!DOCTYPE html>' + walk(document.documentElement, '');
}
"""

BLOB_HOOK_JS = (
    """
(() => {
  if (window.__legalbotBlobHook) return;
  window.__legalbotBlobHook = true;
  const original = URL.createObjectURL;
  URL.createObjectURL = function (obj) {
    const url = original.apply(this, arguments);
    try {
      if (obj instanceof Blob && (obj.type || '').toLowerCase().startsWith('application/pdf')) {
        obj.arrayBuffer().then((buf) => {
          let binary = '';
          const bytes = new Uint8Array(buf);
          for (let i = 0; i < bytes.length; i += 0x8000) {
            binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
          }
          window.%s({ url: url, mime: obj.type, size: obj.size, data: btoa(binary) });
        }).catch(() => {});
      }
    } catch (e) {}
    return url;
  };
})();
"""
    % BLOB_BINDING
)

_SESSION_GET_JS = "(key) => window.sessionStorage.getItem(key)"
_SESSION_SET_JS = "([key, value]) => window.sessionStorage.setItem(key, value)"
_SESSION_REMOVE_JS = "(key) => window.sessionStorage.removeItem(key)"


class SessionStorageStore:
    """Key-value store over the page's ``sessionStorage`` (JSON values)."""

    def __init__(self, page: Page) -> None:
        self.page = page

    def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = self.page.evaluate(_SESSION_GET_JS, key)
        except PlaywrightError:
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw

    def set(self, key: str, value: Any) -> None:
        self.page.evaluate(_SESSION_SET_JS, [key, json.dumps(value, ensure_ascii=False)])

    def remove(self, key: str) -> None:
        self.page.evaluate(_SESSION_REMOVE_JS, key)


class PlaywrightHost:
    def __init__(self, page: Page, *, store_path=None, request_timeout_ms: int = 30_000) -> None:
        self.page = page
        self.store = JsonFileStore(store_path or config.KV_STORE_FILE)
        self.session_store = SessionStorageStore(page)
        self.request_timeout_ms = request_timeout_ms
        self._handler: Optional[ObservedHandler] = None

    # -- snapshot -------------------------------------------------------------

    def cookies(self) -> dict[str, str]:
        try:
            jar = self.page.context.cookies(self.page.url)
        except PlaywrightError:
            return {}
        return {c["name"]: c["value"] for c in jar if c.get("name")}

    def snapshot(self) -> PageSnapshot:
        html = self.page.evaluate(SERIALIZE_DOM_JS)
        frames: list[FrameSnapshot] = []
        for frame in self.page.frames:
            if frame == self.page.main_frame:
                continue
            try:
                frames.append(FrameSnapshot(url=frame.url, html=frame.evaluate(SERIALIZE_DOM_JS)))
            except PlaywrightError as exc:
                _scraper_event("host", phase="frame_skipped", url=frame.url, error=str(exc)[:120])
        return PageSnapshot(
            url=self.page.url,
            html=html,
            title=self.page.title(),
            frames=frames,
            cookies=self.cookies(),
        )

    # -- interception -----------------------------------------------------------

    def install_interceptor(self, handler: ObservedHandler) -> None:
        self._handler = handler
        self.page.on("response", self._on_response)
        self.page.expose_binding(BLOB_BINDING, self._on_blob)
        self.page.add_init_script(BLOB_HOOK_JS)
        try:
            self.page.evaluate(BLOB_HOOK_JS)
        except PlaywrightError:
            # Page not ready; the init script covers the next navigation.
            pass

    def _on_response(self, response: Response) -> None:
        if self._handler is None:
            return
        content_type = response.headers.get("content-type", "")
        if not response.ok or not is_document_response(response.url, content_type):
            return
        try:
            body = response.body()
        except PlaywrightError as exc:
            _scraper_event("host", phase="body_unavailable", url=response.url, error=str(exc)[:120])
            return
        resource_type = response.request.resource_type
        self._handler(
            {
                "type": "response",
                "url": response.url,
                "content_type": content_type,
                "body": body,
                "size": len(body),
                "method": "xhr" if resource_type == "xhr" else "fetch",
            }
        )

    def _on_blob(self, source: Any, payload: dict[str, Any]) -> None:
        if self._handler is None or not isinstance(payload, dict):
            return
        try:
            body = base64.b64decode(payload.get("data") or "")
        except ValueError:
            return
        self._handler(
            {
                "type": "blob",
                "url": payload.get("url") or "",
                "mime": payload.get("mime") or "",
                "body": body,
                "size": len(body),
            }
        )

    # -- fetch ----------------------------------------------------------------

    def fetch_resource(self, url: str) -> Optional[HostResponse]:
        try:
            response = self.page.request.get(url, timeout=self.request_timeout_ms)
        except PlaywrightError as exc:
            _scraper_event("host", phase="fetch_failed", url=url[:120], error=str(exc)[:120])
            return None
        if not response.ok:
            _scraper_event("host", phase="fetch_failed", url=url[:120], http_status=response.status)
            return None
        return HostResponse(
            body=response.body(),
            content_type=response.headers.get("content-type", ""),
            url=response.url,
        )


__all__ = ["PlaywrightHost", "SERIALIZE_DOM_JS", "SessionStorageStore"]
