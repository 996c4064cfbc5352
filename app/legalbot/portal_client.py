"""Server-side re-fetch of documents and modal pages from the portal.

Document downloads need only the per-document credential. The modal
endpoints are session-bound and also need the anti-forgery token and the
transport cookies captured on the client. Requests are paced with a small
random jitter; there is no retry here, a failed item is reported by the sync.
"""
from __future__ import annotations

import random
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from . import config
from .error_codes import ErrorCode, classify_http_status
from .logging_utils import _scraper_event

PDF_MAGIC = b"%PDF"
MIN_MODAL_HTML_CHARS = 200


@dataclass
class FetchedDocument:
    data: bytes
    content_type: str
    url: str


def _redact_url(url: str) -> str:
    try:
        parsed = urllib.parse.urlparse(url)
        return urllib.parse.urlunparse(parsed._replace(query=""))
    except Exception:
        return url


def cookie_header(cookies: Optional[dict[str, str]]) -> Optional[str]:
    if not cookies or not cookies.get("PHPSESSID"):
        return None
    parts = [f"PHPSESSID={cookies['PHPSESSID']}"]
    if cookies.get("TS01262d1d"):
        parts.append(f"TS01262d1d={cookies['TS01262d1d']}")
    return "; ".join(parts)


def build_portal_session() -> requests.Session:
    """Return a requests session carrying the browser-like portal headers."""

    session = requests.Session()
    session.headers.update(config.COMMON_HEADERS)
    session.headers["Referer"] = f"{config.PORTAL_BASE_URL}{config.PORTAL_REFERER_PATH}"
    return session


class PortalClient:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        base_url: str = config.PORTAL_BASE_URL,
        min_delay_ms: int = config.PORTAL_MIN_DELAY_MS,
        max_delay_ms: int = config.PORTAL_MAX_DELAY_MS,
        timeout: int = config.PORTAL_REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session = session or build_portal_session()
        self.base_url = base_url.rstrip("/")
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._last_request: Optional[float] = None
        self.request_count = 0
        self.failures: dict[str, int] = {}

    def _throttle(self) -> None:
        delay = (self.min_delay_ms + self._rng.random() * (self.max_delay_ms - self.min_delay_ms)) / 1000.0
        if self._last_request is not None:
            elapsed = self._clock() - self._last_request
            if elapsed < delay:
                self._sleep(delay - elapsed)
        self._last_request = self._clock()
        self.request_count += 1

    def _record_failure(self, code: str) -> None:
        self.failures[code] = self.failures.get(code, 0) + 1

    def resolve_url(self, endpoint: str, param: str, credential: str) -> str:
        action = endpoint if endpoint.startswith("http") else f"{self.base_url}/{endpoint.lstrip('/')}"
        parsed = urllib.parse.urlparse(action)
        query = dict(urllib.parse.parse_qsl(parsed.query, keep_blank_values=True))
        query[param or config.DEFAULT_DOCUMENT_PARAM] = credential
        return urllib.parse.urlunparse(parsed._replace(query=urllib.parse.urlencode(query)))

    def download_pdf(self, endpoint: str, param: str, credential: str) -> Optional[FetchedDocument]:
        """Fetch one document; ``None`` on a bad status, wrong magic bytes or a timeout."""

        self._throttle()
        url = self.resolve_url(endpoint, param, credential)
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.Timeout:
            self._record_failure(ErrorCode.NETWORK)
            _scraper_event("portal", phase="download_timeout", url=_redact_url(url))
            return None
        except requests.RequestException as exc:
            self._record_failure(ErrorCode.NETWORK)
            _scraper_event("portal", phase="download_error", url=_redact_url(url), error=repr(exc))
            return None

        if not response.ok:
            code = classify_http_status(response.status_code)
            self._record_failure(code)
            _scraper_event(
                "portal",
                phase="download_failed",
                url=_redact_url(url),
                http_status=response.status_code,
                error_code=code,
            )
            return None

        data = response.content or b""
        if not data.startswith(PDF_MAGIC):
            self._record_failure(ErrorCode.MALFORMED_PDF)
            _scraper_event("portal", phase="not_pdf", url=_redact_url(url), size=len(data))
            return None

        return FetchedDocument(
            data=data,
            content_type=response.headers.get("content-type") or "application/pdf",
            url=_redact_url(url),
        )

    def _post_modal(
        self, endpoint: str, form: dict[str, str], cookies: Optional[dict[str, str]], label: str
    ) -> Optional[str]:
        self._throttle()
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "X-Requested-With": "XMLHttpRequest",
            "Origin": self.base_url,
        }
        cookie = cookie_header(cookies)
        if cookie:
            headers["Cookie"] = cookie
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.post(url, data=form, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            self._record_failure(ErrorCode.NETWORK)
            _scraper_event("portal", phase=f"{label}_error", error=repr(exc))
            return None

        if not response.ok:
            self._record_failure(classify_http_status(response.status_code))
            _scraper_event("portal", phase=f"{label}_failed", http_status=response.status_code)
            return None

        html = response.text or ""
        if len(html) < MIN_MODAL_HTML_CHARS or "table" not in html:
            self._record_failure(ErrorCode.SITE_STRUCTURE)
            _scraper_event("portal", phase=f"{label}_invalid", chars=len(html))
            return None
        return html

    def fetch_cuaderno_html(
        self, credential: str, csrf_token: str, cookies: Optional[dict[str, str]]
    ) -> Optional[str]:
        return self._post_modal(
            config.CUADERNO_ENDPOINT,
            {"dtaCausa": credential, "token": csrf_token},
            cookies,
            "cuaderno",
        )

    def fetch_receptor_html(
        self, credential: str, csrf_token: str, cookies: Optional[dict[str, str]]
    ) -> Optional[str]:
        return self._post_modal(
            config.RECEPTOR_ENDPOINT,
            {"valReceptor": credential, "token": csrf_token},
            cookies,
            "receptor",
        )

    def get_stats(self) -> dict[str, Any]:
        return {"request_count": self.request_count, "failures": dict(self.failures)}


__all__ = ["FetchedDocument", "PortalClient", "build_portal_session", "cookie_header"]
