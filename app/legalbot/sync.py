"""Server-side synchronization of one case package.

``SyncOrchestrator.run`` is the whole pipeline behind ``POST
/api/scraper/sync``: upsert the case, plan every download up front (direct
documents, the visible sub-dossier, then each other sub-dossier fetched from
the portal), run the tasks strictly one after another inside the wall-clock
budget, then store the ancillary tab and receptor data and refresh the case
statistics. Progress goes out through an ``emit(event, data)`` callback that
the HTTP layer turns into server-sent events.

Per-item failures are counted and never abort the run. Only a failure to
register the case, or an unexpected exception, ends in an ``error`` event.
"""
from __future__ import annotations

import hashlib
import re
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional, Union

import requests

from . import config, db, storage
from .identity import CaseIdentity
from .logging_utils import _scraper_event
from .models import CasePackage, DownloadTask, Folio, JwtRef
from .portal_client import PortalClient
from .portal_parser import parse_folios_from_html, parse_receptor_data
from .utils import format_size, log_line, sanitize_filename

Emitter = Callable[[str, dict[str, Any]], None]

SYNC_TIMEOUT_MESSAGE = "Sync timeout reached (5 min). Some documents were not downloaded."
MAX_SYNC_FILE_BYTES = 50 * 1024 * 1024
DEFAULT_CUADERNO = "Principal"
PIPELINE_TRIGGER_PATH = "/api/pipeline/process-document"
PIPELINE_TRIGGER_TIMEOUT_SECONDS = 10

_TRAMITE_STRIP_RE = re.compile(r"[^a-zA-Z0-9áéíóúñÁÉÍÓÚÑ\s]")
_WHITESPACE_RE = re.compile(r"\s+")

# First match wins; applied to the upper-cased docket action.
DOC_TYPE_RULES = (
    ("resolucion", re.compile(r"RESOLUCI[OÓ]N|AUTO|SENTENCIA|DECRETO", re.IGNORECASE)),
    ("escrito", re.compile(r"ESCRITO|DEMANDA|CONTESTACI|RECURSO|APELACI", re.IGNORECASE)),
    ("actuacion", re.compile(r"ACTUACI[OÓ]N|RECEPTOR|DILIGENCIA", re.IGNORECASE)),
    ("notificacion", re.compile(r"NOTIFICACI[OÓ]N|C[ÉE]DULA|CARTA", re.IGNORECASE)),
)

DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class SyncedDocument:
    document_id: int
    filename: str
    document_type: str
    folio: Optional[int]
    cuaderno: Optional[str]
    fecha: Optional[str]
    storage_path: str
    is_new: bool = True


@dataclass
class SyncResult:
    success: bool
    case_id: int
    rol: str
    tribunal: Optional[str]
    procedimiento: Optional[str]
    documents_new: list[SyncedDocument] = field(default_factory=list)
    documents_existing: int = 0
    documents_failed: int = 0
    total_downloaded: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    tabs_stored: bool = False
    receptor_stored: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


OutcomeType = Union[SyncedDocument, str]


def clean_tramite(tramite: str | None) -> str:
    """Filename-safe form of a docket action, at most 30 characters."""

    cleaned = _TRAMITE_STRIP_RE.sub("", tramite or "doc").strip()[:30]
    return _WHITESPACE_RE.sub("_", cleaned)


def infer_doc_type(tramite: str | None) -> str:
    text = (tramite or "").upper()
    for name, pattern in DOC_TYPE_RULES:
        if pattern.search(text):
            return name
    return "otro"


def jwt_ref_to_task(
    ref: JwtRef,
    filename: str,
    document_type: str,
    *,
    folio: Optional[int] = None,
    cuaderno: Optional[str] = None,
    fecha: Optional[str] = None,
) -> DownloadTask:
    return DownloadTask(
        jwt=ref.jwt,
        endpoint=ref.action,
        param=ref.param,
        filename=filename,
        document_type=document_type,
        folio=folio,
        cuaderno=cuaderno,
        fecha=fecha,
        source_url=ref.action,
    )


def folio_to_tasks(folio: Folio, rol: str, cuaderno: str) -> list[DownloadTask]:
    """One task for the principal document and one for the filing certificate."""

    tasks: list[DownloadTask] = []
    fecha = folio.fecha_tramite or None
    if folio.jwt_doc_principal:
        tasks.append(
            jwt_ref_to_task(
                folio.jwt_doc_principal,
                f"{rol}_f{folio.numero}_{clean_tramite(folio.tramite)}.pdf",
                infer_doc_type(folio.tramite),
                folio=folio.numero,
                cuaderno=cuaderno,
                fecha=fecha,
            )
        )
    if folio.jwt_certificado_escrito:
        tasks.append(
            jwt_ref_to_task(
                folio.jwt_certificado_escrito,
                f"{rol}_f{folio.numero}_cert_escrito.pdf",
                "actuacion",
                folio=folio.numero,
                cuaderno=cuaderno,
                fecha=fecha,
            )
        )
    return tasks


def selected_cuaderno_name(package: CasePackage) -> str:
    for cuaderno in package.cuadernos:
        if cuaderno.selected and cuaderno.nombre:
            return cuaderno.nombre
    return DEFAULT_CUADERNO


def build_download_tasks(package: CasePackage) -> list[DownloadTask]:
    """Tasks known from the package alone: direct documents then visible folios."""

    rol = package.rol
    tasks: list[DownloadTask] = []
    if package.jwt_texto_demanda:
        tasks.append(
            jwt_ref_to_task(
                package.jwt_texto_demanda,
                f"{rol}_texto_demanda.pdf",
                "escrito",
                fecha=package.fecha_ingreso,
            )
        )
    if package.jwt_certificado_envio:
        tasks.append(
            jwt_ref_to_task(
                package.jwt_certificado_envio,
                f"{rol}_certificado_envio.pdf",
                "actuacion",
                fecha=package.fecha_ingreso,
            )
        )
    if package.jwt_ebook:
        tasks.append(jwt_ref_to_task(package.jwt_ebook, f"{rol}_ebook.pdf", "otro"))

    cuaderno = selected_cuaderno_name(package)
    for folio in package.folios:
        tasks.extend(folio_to_tasks(folio, rol, cuaderno))
    return tasks


def _case_fields(package: CasePackage) -> dict[str, Any]:
    return {
        "tribunal": package.tribunal,
        "caratula": package.caratula,
        "materia": package.materia,
        "procedimiento": package.procedimiento,
        "libro_tipo": package.libro_tipo,
        "fuente_sync": package.fuente,
        "estado": package.estado_adm,
    }


def upsert_case_for_sync(user_id: str, package: CasePackage) -> Optional[int]:
    """Return the case id for the package, creating the row if needed.

    The match is ``rol`` plus exact court; a unique violation on insert
    means a concurrent sync created the row first, which is then adopted.
    """

    fields = _case_fields(package)
    existing = db.find_case_by_rol_tribunal(user_id, package.rol, package.tribunal)
    if existing is not None:
        case_id = int(existing["id"])
        try:
            db.update_case_fields(case_id, fields)
        except sqlite3.IntegrityError:
            # Another row of this rol and court already carries the title.
            db.update_case_fields(case_id, {k: v for k, v in fields.items() if k != "caratula"})
        return case_id

    identity = CaseIdentity(package.rol, package.tribunal or "", package.caratula or "")
    try:
        return db.insert_case(user_id, identity, fields)
    except sqlite3.IntegrityError:
        raced = db.find_case_by_rol_tribunal(user_id, package.rol, package.tribunal)
        if raced is not None:
            _scraper_event("sync", phase="case_race_adopted", rol=package.rol, case_id=raced["id"])
            return int(raced["id"])
        _scraper_event("sync", phase="case_insert_failed", rol=package.rol)
        return None


def _post_pipeline_triggers(document_ids: list[int], url: str, key: str) -> None:
    for document_id in document_ids:
        try:
            response = requests.post(
                url,
                json={"document_id": document_id},
                headers={"X-Pipeline-Key": key},
                timeout=PIPELINE_TRIGGER_TIMEOUT_SECONDS,
            )
            if not response.ok:
                _scraper_event(
                    "pipeline",
                    phase="trigger_failed",
                    document_id=document_id,
                    http_status=response.status_code,
                )
        except requests.RequestException as exc:
            _scraper_event(
                "pipeline", phase="trigger_failed", document_id=document_id, error=repr(exc)
            )


def trigger_pipeline(document_ids: list[int]) -> Optional[threading.Thread]:
    """Fire downstream processing for new documents without waiting for it."""

    if not document_ids or not config.pipeline_triggers_enabled():
        return None
    url = f"{config.PIPELINE_APP_URL}{PIPELINE_TRIGGER_PATH}"
    thread = threading.Thread(
        target=_post_pipeline_triggers,
        args=(list(document_ids), url, config.PIPELINE_SECRET_KEY),
        name="pipeline-triggers",
        daemon=True,
    )
    thread.start()
    return thread


def _noop_emit(event: str, data: dict[str, Any]) -> None:
    return None


class SyncOrchestrator:
    def __init__(
        self,
        user_id: str,
        package: CasePackage,
        *,
        client: Optional[PortalClient] = None,
        emit: Optional[Emitter] = None,
        clock: Callable[[], float] = time.monotonic,
        timeout_seconds: float = config.SYNC_TIMEOUT_SECONDS,
    ) -> None:
        self.user_id = user_id
        self.package = package
        self.client = client or PortalClient()
        self.emit = emit or _noop_emit
        self._clock = clock
        self.timeout_seconds = timeout_seconds

    def _progress(self, message: str, current: int = 0, total: int = 0, **extra: Any) -> None:
        self.emit("progress", {"message": message, "current": current, "total": total, **extra})

    def fetch_other_cuadernos(self) -> list[DownloadTask]:
        """Fetch each non-selected sub-dossier and plan its folios; failures are skipped."""

        package = self.package
        if len(package.cuadernos) <= 1 or not package.csrf_token:
            return []

        others = [c for c in package.cuadernos if not c.selected]
        tasks: list[DownloadTask] = []
        for index, cuaderno in enumerate(others, start=1):
            self._progress(
                f"Fetching sub-dossier {index}/{len(others)}: {cuaderno.nombre}...",
                sub_current=index,
                sub_total=len(others),
            )
            html = self.client.fetch_cuaderno_html(cuaderno.jwt, package.csrf_token, package.cookies)
            if not html:
                _scraper_event("sync", phase="cuaderno_skipped", cuaderno=cuaderno.nombre)
                continue
            folios = parse_folios_from_html(html)
            _scraper_event(
                "sync", phase="cuaderno_parsed", cuaderno=cuaderno.nombre, folios=len(folios)
            )
            for folio in folios:
                tasks.extend(folio_to_tasks(folio, package.rol, cuaderno.nombre))
        return tasks

    def process_one(self, case_id: int, task: DownloadTask) -> OutcomeType:
        """Download, dedup, store and register one document."""

        fetched = self.client.download_pdf(task.endpoint, task.param, task.jwt)
        if fetched is None:
            return FAILED
        if len(fetched.data) > MAX_SYNC_FILE_BYTES:
            _scraper_event(
                "sync",
                phase="too_large",
                filename=task.filename,
                size=format_size(len(fetched.data)),
            )
            return FAILED

        file_hash = hashlib.sha256(fetched.data).hexdigest()
        if db.find_hash(self.user_id, file_hash) is not None:
            return DUPLICATE

        try:
            storage_path = storage.store_bytes(self.user_id, task.filename, fetched.data)
        except storage.StorageError as exc:
            _scraper_event("sync", phase="store_failed", filename=task.filename, error=str(exc))
            return FAILED

        safe_name = sanitize_filename(task.filename)
        try:
            document_id = db.insert_document(
                case_id=case_id,
                user_id=self.user_id,
                filename=safe_name,
                original_filename=task.filename,
                storage_path=storage_path,
                document_type=task.document_type,
                file_size=len(fetched.data),
                file_hash=file_hash,
                source="sync",
                source_url=task.source_url or None,
                folio=task.folio,
                cuaderno=task.cuaderno,
                fecha=task.fecha,
            )
        except sqlite3.Error as exc:
            _scraper_event("sync", phase="document_insert_failed", filename=task.filename, error=repr(exc))
            try:
                storage.delete(storage_path)
            except storage.StorageError as cleanup_exc:
                _scraper_event("sync", phase="orphan_cleanup_failed", key=storage_path, error=str(cleanup_exc))
            return FAILED

        db.insert_document_hash(
            user_id=self.user_id,
            file_hash=file_hash,
            case_id=case_id,
            rol=self.package.rol,
            tribunal=self.package.tribunal,
            caratula=self.package.caratula,
            filename=safe_name,
            document_type=task.document_type,
        )
        db.insert_extraction_placeholder(document_id, case_id, self.user_id)

        return SyncedDocument(
            document_id=document_id,
            filename=safe_name,
            document_type=task.document_type,
            folio=task.folio,
            cuaderno=task.cuaderno,
            fecha=task.fecha,
            storage_path=storage_path,
        )

    def _store_receptor(self, case_id: int) -> bool:
        package = self.package
        html = self.client.fetch_receptor_html(
            package.jwt_receptor or "", package.csrf_token or "", package.cookies
        )
        if not html:
            _scraper_event("sync", phase="receptor_empty", rol=package.rol)
            return False
        data = parse_receptor_data(html)
        if data is None:
            _scraper_event("sync", phase="receptor_unparsed", rol=package.rol)
            return False
        db.store_case_json(case_id, "receptor_data", data)
        _scraper_event(
            "sync",
            phase="receptor_stored",
            receptor=data.get("receptor_nombre"),
            certificaciones=len(data.get("certificaciones") or []),
            diligencias=len(data.get("diligencias") or []),
        )
        return True

    def run(self) -> Optional[SyncResult]:
        """Execute the pipeline; returns ``None`` after emitting ``error``."""

        started = self._clock()
        package = self.package
        try:
            self._progress("Registering case...")
            case_id = upsert_case_for_sync(self.user_id, package)
            if case_id is None:
                self.emit("error", {"message": "Could not register or update the case in the database"})
                return None

            self._progress("Computing documents to download...")
            tasks = build_download_tasks(package)
            others = sum(1 for c in package.cuadernos if not c.selected)
            if others:
                self._progress(
                    f"Fetching {others} additional sub-dossier(s)...", sub_current=0, sub_total=others
                )
            extra = self.fetch_other_cuadernos()
            tasks.extend(extra)
            total = len(tasks)
            log_line(
                f"[SYNC] {package.rol}: {total} documents planned "
                f"({len(package.folios)} visible folios, {len(extra)} tasks from other sub-dossiers)"
            )
            if total:
                self._progress(f"{total} document(s) to download", 0, total)
            else:
                self._progress("No documents found to download.")

            results: list[SyncedDocument] = []
            errors: list[str] = []
            existing = 0
            failed = 0
            for index, task in enumerate(tasks):
                if self._clock() - started > self.timeout_seconds:
                    errors.append(SYNC_TIMEOUT_MESSAGE)
                    self._progress("Timeout reached. Stopping sync.", index, total)
                    _scraper_event("sync", phase="timeout", rol=package.rol, done=index, total=total)
                    break

                label = task.document_type or "doc"
                if task.folio:
                    label += f" folio {task.folio}"
                if task.cuaderno:
                    label += f" ({task.cuaderno})"
                self._progress(f"Downloading document {index + 1}/{total}: {label}...", index + 1, total)

                try:
                    outcome = self.process_one(case_id, task)
                except Exception as exc:  # noqa: BLE001
                    failed += 1
                    errors.append(f"Folio {task.folio if task.folio is not None else '?'}: {exc}")
                    _scraper_event("sync", phase="task_error", filename=task.filename, error=repr(exc))
                    continue
                if outcome == DUPLICATE:
                    existing += 1
                elif outcome == FAILED:
                    failed += 1
                else:
                    results.append(outcome)

            tabs_stored = False
            if package.tabs:
                self._progress("Storing tab data...", total, total)
                db.store_case_json(case_id, "tabs_data", package.tabs)
                tabs_stored = True

            receptor_stored = False
            if package.jwt_receptor:
                self._progress("Fetching receptor data...", total, total)
                try:
                    receptor_stored = self._store_receptor(case_id)
                except (sqlite3.Error, ValueError) as exc:
                    _scraper_event("sync", phase="receptor_failed", error=repr(exc))

            self._progress("Updating case statistics...", total, total)
            db.refresh_case_stats(case_id)
            trigger_pipeline([doc.document_id for doc in results])

            result = SyncResult(
                success=True,
                case_id=case_id,
                rol=package.rol,
                tribunal=package.tribunal,
                procedimiento=package.procedimiento,
                documents_new=results,
                documents_existing=existing,
                documents_failed=failed,
                total_downloaded=len(results),
                errors=errors,
                duration_ms=int((self._clock() - started) * 1000),
                tabs_stored=tabs_stored,
                receptor_stored=receptor_stored,
            )
            _scraper_event(
                "sync",
                phase="complete",
                rol=package.rol,
                new=len(results),
                existing=existing,
                failed=failed,
                duration_ms=result.duration_ms,
            )
            self.emit("complete", result.to_dict())
            return result
        except Exception as exc:  # noqa: BLE001
            _scraper_event("sync", phase="fatal", rol=package.rol, error=repr(exc))
            self.emit("error", {"message": str(exc) or "Internal server error"})
            return None


__all__ = [
    "DUPLICATE",
    "FAILED",
    "SYNC_TIMEOUT_MESSAGE",
    "SyncOrchestrator",
    "SyncResult",
    "SyncedDocument",
    "build_download_tasks",
    "clean_tramite",
    "folio_to_tasks",
    "infer_doc_type",
    "selected_cuaderno_name",
    "trigger_pipeline",
    "upsert_case_for_sync",
]
