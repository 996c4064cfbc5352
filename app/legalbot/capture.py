"""Client-side capture orchestration.

``CaptureOrchestrator`` wires the components together over an execution
host (see ``host.py``): config, throttle, case context, extractor, validator
and DOM locator are built from the served scraper config on
``initialize()``, and the traffic tap is installed once and left running.

Nothing is captured or sent before the operator has confirmed the detected
case. ``sync()`` extracts the case package and hands it to the privileged
relay; ``collect_documents()`` gathers intercepted and DOM-reachable
documents, validates them and uploads each through the transport its size
tier calls for.
"""
from __future__ import annotations

import hashlib
import threading
import time
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import requests

from . import config
from .case_context import CaseContext
from .channel import ChannelError, Envelope, MessageChannel
from .dom import PageDocument, PageSnapshot, attr, closest, text_of
from .dom_locator import Candidate, DomLocator
from .error_codes import ErrorCode
from .extractor import CaseExtractor
from .kv_store import KeyValueStore, MemoryStore
from .logging_utils import _scraper_event
from .models import CapturedFile, SizeTier, ValidationResult
from .remote_config import ConfigProvider
from .resumable_upload import ResumableUpload, UploadError
from .sync_client import CAUSA_PACKAGE
from .throttle import HumanThrottle
from .traffic_tap import CaptureBuffer, ObservedHandler, PageInterceptor
from .utils import format_size, sanitize_filename, utc_now_iso
from .validator import PDF_MAGIC, BatchSummary, DocumentValidator, classify_size, tier_spec

UPLOAD_PATH = "/api/upload"

Listener = Callable[[Any], None]


class OrchestratorState:
    IDLE = "idle"
    INITIALIZING = "initializing"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class HostResponse:
    body: bytes
    content_type: str
    url: str


class ExecutionHost(Protocol):
    """What the orchestrator needs from the page it runs against."""

    def snapshot(self) -> PageSnapshot: ...

    def install_interceptor(self, handler: ObservedHandler) -> None: ...

    def fetch_resource(self, url: str) -> Optional[HostResponse]: ...


def candidate_url(candidate: Candidate, base_url: str) -> Optional[str]:
    """Resolve the request a download control would make, if it is a plain GET."""

    element = candidate.element
    href = attr(element, "href")
    if href and not href.startswith(("#", "javascript:")):
        return urllib.parse.urljoin(base_url, href)

    form = element if element.name == "form" else closest(element, "form")
    if form is None:
        return None
    action = attr(form, "action")
    if not action:
        return None
    fields = {
        attr(field, "name"): attr(field, "value")
        for field in form.find_all("input")
        if attr(field, "name")
    }
    url = urllib.parse.urljoin(base_url, action)
    if not fields:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urllib.parse.urlencode(fields)}"


class CaptureOrchestrator:
    def __init__(
        self,
        host: ExecutionHost,
        channel: MessageChannel,
        *,
        user_id: str = "local",
        store: Optional[KeyValueStore] = None,
        session_store: Optional[KeyValueStore] = None,
        config_provider: Optional[ConfigProvider] = None,
        api_base_url: str = config.API_BASE_URL,
        token: str = config.API_TOKEN,
        resumable_endpoint: str = config.RESUMABLE_ENDPOINT,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        tab_id: Optional[int] = None,
    ) -> None:
        self.host = host
        self.channel = channel
        self.user_id = user_id
        self.store = store if store is not None else MemoryStore()
        self.session_store = session_store
        self.config_provider = config_provider or ConfigProvider(self.store)
        self.api_base_url = api_base_url.rstrip("/")
        self.token = token
        self.resumable_endpoint = resumable_endpoint
        self.http = http or requests.Session()
        self.tab_id = tab_id
        self._clock = clock
        self._sleep = sleep

        self.state = OrchestratorState.IDLE
        self.scraper_config: dict[str, Any] = {}
        self.throttle: Optional[HumanThrottle] = None
        self.context: Optional[CaseContext] = None
        self.extractor: Optional[CaseExtractor] = None
        self.validator: Optional[DocumentValidator] = None
        self.locator: Optional[DomLocator] = None
        self.interceptor = PageInterceptor(channel)
        self.captures = CaptureBuffer(channel)
        self.pending_confirmation: list[ValidationResult] = []

        self._listeners: list[tuple[str, Listener]] = []
        self._lock = threading.Lock()
        self._initialized = False

    # -- events -------------------------------------------------------------

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Subscribe to ``event`` (``"*"`` for all); returns an unsubscribe function."""

        entry = (event, callback)
        with self._lock:
            self._listeners.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return _unsubscribe

    def _emit(self, event: str, data: Any = None) -> None:
        with self._lock:
            listeners = [cb for name, cb in self._listeners if name in (event, "*")]
        for callback in listeners:
            try:
                callback(data)
            except Exception as exc:  # noqa: BLE001
                _scraper_event("error", phase="listener", event=event, error=repr(exc))

    def _status(self, phase: str, message: str, **extra: Any) -> None:
        self._emit("status", {"phase": phase, "message": message, **extra})

    # -- lifecycle ----------------------------------------------------------

    def initialize(self) -> bool:
        if self._initialized:
            return True
        self.state = OrchestratorState.INITIALIZING
        self._status("initializing", "Loading configuration...")
        try:
            self.scraper_config = self.config_provider.get_config()
            self.throttle = HumanThrottle(self.scraper_config.get("throttle"), sleep=self._sleep)
            self.extractor = CaseExtractor(
                self.store, session_store=self.session_store, clock=self._clock
            )
            self.context = CaseContext(
                self.scraper_config, store=self.store, extractor=self.extractor, clock=self._clock
            )
            self.validator = DocumentValidator(self.context, store=self.store)
            self.locator = DomLocator(self.scraper_config)
            self.interceptor.install(self.host)
            self.captures.on_capture(lambda captured: self._emit("pdf_captured", captured))
        except Exception as exc:  # noqa: BLE001
            self.state = OrchestratorState.ERROR
            _scraper_event("capture", phase="init_failed", error=repr(exc))
            self._status("error", f"Initialization failed: {exc}")
            return False

        self._initialized = True
        self.state = OrchestratorState.IDLE
        self._status("ready", "Scraper ready", config_version=self.scraper_config.get("version"))
        _scraper_event("capture", phase="ready", config_version=self.scraper_config.get("version"))
        return True

    def _document(self) -> PageDocument:
        return PageDocument(self.host.snapshot())

    # -- gate ---------------------------------------------------------------

    def detect_case(self) -> Optional[dict[str, Any]]:
        if not self.initialize() or self.context is None:
            return None
        detected = self.context.detect(self._document())
        if detected is None:
            return None
        payload = detected.to_dict()
        self._emit("case_detected", payload)
        return payload

    def confirm_case(self) -> bool:
        if self.context is None or not self.context.confirm():
            return False
        confirmed = self.context.confirmed_case
        self._emit("case_confirmed", confirmed.to_dict() if confirmed else None)
        return True

    # -- sync ---------------------------------------------------------------

    def sync(self) -> dict[str, Any]:
        """Extract the confirmed case package and hand it to the relay."""

        if self.state == OrchestratorState.SYNCING:
            return {"error": "sync_in_progress"}
        if not self.initialize() or self.context is None:
            return {"error": ErrorCode.INTERNAL}

        if not self.context.has_confirmed_case():
            if self.context.detected is None:
                self._status(
                    "no_case",
                    "Confirm the detected case before syncing.",
                )
                return {"error": ErrorCode.CASE_NOT_CONFIRMED}
            self.confirm_case()

        self.state = OrchestratorState.SYNCING
        try:
            self._status("extracting", "Extracting case data...")
            package = self.context.extract(self._document())
            if package is None:
                self._status("send_error", "No case data found on the page.")
                return {"error": "extract_failed"}
            self._status(
                "extracted",
                f"Case {package.rol}: {len(package.folios)} folios, {len(package.cuadernos)} sub-dossiers",
                rol=package.rol,
                folios=len(package.folios),
                cuadernos=len(package.cuadernos),
            )

            self._status("sending", "Sending case data to the server...")
            try:
                answer = self.channel.request(
                    Envelope(CAUSA_PACKAGE, {"package": package.to_dict()}, self.tab_id)
                )
            except ChannelError as exc:
                _scraper_event("capture", phase="send_error", error=str(exc))
                self._status("send_error", f"Could not reach the background relay: {exc}")
                return {"rol": package.rol, "status": "send_error", "error": str(exc)}

            status = answer.get("status")
            if status == "complete":
                if self.extractor is not None:
                    self.extractor.register_synced(package)
                result = answer.get("result") or {}
                self._status(
                    "complete",
                    f"Sync complete: {result.get('total_downloaded', 0)} new document(s)",
                    result=result,
                )
                return {"rol": package.rol, "status": "complete", "result": result}
            if status == "api_unavailable":
                self._status("api_pending", answer.get("message") or "Sync API not available yet.")
                return {"rol": package.rol, "status": "api_pending"}
            error = answer.get("error") or "Unknown sync error"
            self._status("send_error", error)
            return {"rol": package.rol, "status": "send_error", "error": error}
        finally:
            self.state = OrchestratorState.IDLE

    # -- layered capture ------------------------------------------------------

    def _fetch_candidate(self, url: str) -> Optional[CapturedFile]:
        response = self.host.fetch_resource(url)
        if response is None or not response.body:
            return None
        return CapturedFile(
            data=response.body,
            url=response.url or url,
            content_type=response.content_type,
            method="dom",
            captured_at=utc_now_iso(),
        )

    def _dom_layer(self, doc: PageDocument) -> list[CapturedFile]:
        if self.context is None or self.locator is None or self.throttle is None:
            raise RuntimeError("capture orchestrator is not initialized")
        zone = self.context.locate_zone(doc)
        if zone is None:
            self._status("layer2_skipped", "No document zone identified for this case.")
            return []

        candidates = self.locator.find_download_elements(doc, within=zone.element)
        urls: list[tuple[str, Candidate]] = []
        seen: set[str] = set()
        for candidate in candidates:
            url = candidate_url(candidate, doc.url)
            if url and url not in seen:
                seen.add(url)
                urls.append((url, candidate))
            if len(urls) >= config.MAX_DOM_CANDIDATES:
                break

        self._status("layer2", f"Fetching {len(urls)} document link(s) from the page...", count=len(urls))

        def _action(url: str, candidate: Candidate) -> Callable[[], Optional[CapturedFile]]:
            def _run() -> Optional[CapturedFile]:
                captured = self._fetch_candidate(url)
                if captured is not None:
                    captured.text = text_of(candidate.element)
                return captured

            return _run

        results = self.throttle.run_sequence(_action(url, c) for url, c in urls)
        return [r for r in results if r is not None]

    def collect_documents(self) -> dict[str, Any]:
        """Gather, validate and upload documents for the confirmed case."""

        if not self.initialize() or self.context is None or self.validator is None:
            return {"error": ErrorCode.INTERNAL}
        confirmed = self.context.confirmed_case
        if confirmed is None:
            self._status("no_case", "Confirm the detected case before capturing documents.")
            return {"error": ErrorCode.CASE_NOT_CONFIRMED}

        started = self._clock()
        self.validator.load_existing_hashes(self.user_id, confirmed.rol)
        intercepted = self.captures.get_captured_files()
        self._status("layer1", f"{len(intercepted)} document(s) intercepted", count=len(intercepted))

        dom_files = self._dom_layer(self._document())
        found = [*intercepted, *dom_files]
        if not found:
            self._status("fallback", "No documents found for this case. Use the manual upload.")
            return {"rol": confirmed.rol, "found": 0, "uploaded": 0, "needs_manual": True}

        self._status("validating", f"Validating {len(found)} document(s)...")
        summary = self.validator.validate_batch(found)
        if summary.rejected:
            self._status(
                "filtered", f"{len(summary.rejected)} document(s) discarded by quality filters"
            )

        uploaded = self._upload_batch(summary)
        self.captures.clear_captured()
        self._status(
            "complete" if summary.accepted else "all_rejected",
            f"Capture complete: {uploaded} uploaded, {len(summary.rejected)} discarded",
            summary=summary.to_dict(),
        )
        return {
            "rol": confirmed.rol,
            "found": len(found),
            "uploaded": uploaded,
            "needs_manual": not summary.accepted,
            "pending_confirmation": len(self.pending_confirmation),
            "summary": summary.to_dict(),
            "duration_ms": int((self._clock() - started) * 1000),
        }

    def _upload_batch(self, summary: BatchSummary) -> int:
        uploaded = 0
        waiting = {id(r) for r in summary.requires_confirmation}
        already_waiting = {r.hash for r in self.pending_confirmation}
        for result in summary.accepted:
            if id(result) in waiting:
                if result.hash in already_waiting:
                    continue
                self.pending_confirmation.append(result)
                self._emit(
                    "confirmation_required",
                    {
                        "filename": result.file.filename if result.file else None,
                        "size": format_size(result.metadata.get("size") or 0),
                    },
                )
                continue
            if self._upload_validated(result):
                uploaded += 1
        return uploaded

    def confirm_pending_uploads(self) -> int:
        """Upload the mega-tier items the operator approved."""

        pending, self.pending_confirmation = self.pending_confirmation, []
        return sum(1 for result in pending if self._upload_validated(result))

    # -- transport ------------------------------------------------------------

    def _filename_for(self, result: ValidationResult) -> str:
        captured = result.file
        if captured is not None and captured.filename:
            return captured.filename
        rol = sanitize_filename(result.metadata.get("rol") or "doc")
        return f"{rol}_{result.document_type or 'doc'}_{int(self._clock() * 1000)}.pdf"

    def _upload_validated(self, result: ValidationResult) -> bool:
        captured = result.file
        if captured is None or result.hash is None:
            return False
        filename = self._filename_for(result)
        metadata = result.metadata
        spec = tier_spec(result.size_tier or SizeTier.STANDARD)
        try:
            if spec.upload_strategy == "single_shot":
                response = self._post_single(
                    captured,
                    filename,
                    {
                        "case_rol": metadata.get("rol") or "",
                        "tribunal": metadata.get("tribunal") or "",
                        "caratula": metadata.get("caratula") or "",
                        "document_type": result.document_type or "otro",
                        "file_hash": result.hash,
                        "source": metadata.get("source") or "scraper",
                        "source_url": captured.url,
                        "captured_at": metadata.get("captured_at") or utc_now_iso(),
                    },
                )
            else:
                response = self._post_resumable(captured, filename, result)
        except (requests.RequestException, UploadError, ValueError) as exc:
            _scraper_event("capture", phase="upload_error", filename=filename, error=str(exc))
            self._emit("upload_error", {"error": str(exc), "url": captured.url})
            return False

        if metadata.get("rol") and self.validator is not None:
            self.validator.register_uploaded_hash(result.hash, self.user_id, metadata["rol"])
        self._emit(
            "pdf_uploaded",
            {
                "filename": filename,
                "size": captured.size,
                "path": response.get("path"),
                "rol": metadata.get("rol"),
                "type": result.document_type,
                "tier": spec.tier.value,
            },
        )
        return True

    def _post_single(self, captured: CapturedFile, filename: str, fields: dict[str, str]) -> dict[str, Any]:
        if not self.api_base_url:
            raise ValueError("Upload API is not configured")
        data = captured.data.read_bytes() if isinstance(captured.data, Path) else bytes(captured.data)
        response = self.http.post(
            f"{self.api_base_url}{UPLOAD_PATH}",
            files={"file": (filename, data, "application/pdf")},
            data=fields,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=config.UPLOAD_TIMEOUT_SECONDS,
        )
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            raise ValueError(payload.get("error") or f"Upload HTTP {response.status_code}")
        if payload.get("duplicate"):
            _scraper_event("capture", phase="server_duplicate", filename=filename)
        return payload

    def _post_resumable(self, captured: CapturedFile, filename: str, result: ValidationResult) -> dict[str, Any]:
        if not self.resumable_endpoint:
            raise ValueError("Resumable upload endpoint is not configured")
        metadata = result.metadata
        object_path = f"{sanitize_filename(self.user_id)}/{sanitize_filename(metadata.get('rol') or 'sin_rol')}/{sanitize_filename(filename)}"

        def _progress(sent: int, total: int) -> None:
            self._emit(
                "upload_progress",
                {"filename": filename, "sent": sent, "total": total, "percent": round(sent * 100 / max(1, total), 1)},
            )

        upload = ResumableUpload(
            self.resumable_endpoint,
            captured.data,
            object_path=object_path,
            token=self.token,
            metadata={
                "filename": filename,
                "rol": metadata.get("rol"),
                "tribunal": metadata.get("tribunal"),
                "caratula": metadata.get("caratula"),
                "document_type": result.document_type,
                "partial_hash": result.hash,
                "source": metadata.get("source"),
                "source_url": captured.url,
                "captured_at": metadata.get("captured_at"),
            },
            on_progress=_progress,
            session=self.http,
            sleep=self._sleep,
        )
        outcome = upload.start()
        if not outcome.completed:
            raise UploadError("Upload aborted", error_code=ErrorCode.ABORTED)
        return {"path": outcome.path, "upload_url": outcome.upload_url}

    def upload_manual(self, filename: str, data: bytes, content_type: str = "application/pdf") -> dict[str, Any]:
        """Upload a file the operator picked, tagged with the confirmed case if any."""

        if (content_type or "").lower() != "application/pdf" or not data.startswith(PDF_MAGIC):
            raise ValueError("Only PDF files are accepted")
        self.initialize()
        self._status("manual_uploading", f"Uploading {filename}...")

        confirmed = self.context.confirmed_case if self.context else None
        digest = hashlib.sha256(data).hexdigest()
        captured = CapturedFile(data=data, filename=filename, method="manual_upload", captured_at=utc_now_iso())
        tier = classify_size(len(data))
        if tier is SizeTier.MEGA:
            raise ValueError(
                f"File is {format_size(len(data))}; manual uploads are limited to "
                f"{format_size(config.TIER_TOMO_MAX_BYTES)}"
            )
        if tier is not SizeTier.STANDARD:
            result = ValidationResult(
                valid=True,
                hash=digest,
                size_tier=tier,
                document_type="otro",
                metadata={
                    "rol": confirmed.rol if confirmed else None,
                    "tribunal": confirmed.tribunal if confirmed else None,
                    "caratula": confirmed.caratula if confirmed else None,
                    "source": "manual_upload",
                },
                file=captured,
            )
            response = self._post_resumable(captured, filename, result)
        else:
            response = self._post_single(
                captured,
                filename,
                {
                    "case_rol": confirmed.rol if confirmed else "",
                    "tribunal": (confirmed.tribunal or "") if confirmed else "",
                    "caratula": (confirmed.caratula or "") if confirmed else "",
                    "file_hash": digest,
                    "source": "manual_upload",
                    "captured_at": captured.captured_at,
                },
            )
        self._status("manual_complete", f"{filename} uploaded")
        self._emit("pdf_uploaded", {"filename": filename, "size": len(data), "path": response.get("path")})
        return response

    # -- diagnostics ------------------------------------------------------------

    def analyze(self, limit: int = 10) -> dict[str, Any]:
        if not self.initialize() or self.locator is None or self.context is None:
            return {"error": ErrorCode.INTERNAL}
        doc = self._document()
        zone = self.context.locate_zone(doc)
        candidates = self.locator.find_download_elements(doc, within=zone.element if zone else None)
        return {
            "context": self.locator.analyze_page_context(doc),
            "state": self.state,
            "case": self.context.detected.to_dict() if self.context.detected else None,
            "confirmed": self.context.has_confirmed_case(),
            "captured": len(self.captures.get_captured_files()),
            "throttle": self.throttle.get_stats() if self.throttle else None,
            "candidates": [
                {
                    "text": text_of(c.element)[:80],
                    "href": c.href,
                    "score": round(c.score, 3),
                    "source": c.source,
                }
                for c in candidates[:limit]
            ],
        }


__all__ = [
    "CaptureOrchestrator",
    "ExecutionHost",
    "HostResponse",
    "OrchestratorState",
    "candidate_url",
]
