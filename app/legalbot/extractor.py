"""Structured pull of a case's credentials and metadata from the detail modal.

The portal renders every case in a modal whose first ``table.table-titulos``
carries the metadata, whose forms carry per-document credentials and whose
tabs (``#historiaCiv``, ``#litigantesCiv`` ...) carry the docket and the
ancillary tables. ``CaseExtractor.extract`` reads all of it passively from a
page snapshot and assembles a :class:`CasePackage`.
"""
from __future__ import annotations

import re
import time
from typing import Any, Callable, Optional, Sequence

from bs4.element import Tag

from . import config
from .dom import PageDocument, attr, closest
from .identity import libro_tipo_from_rol, normalize_rol
from .kv_store import KeyValueStore, MemoryStore
from .logging_utils import _scraper_event
from .models import CasePackage, Cuaderno, ExhortoData, Folio, JwtRef
from .portal_parser import clean_cell_text, extract_jwt_from_onclick, parse_folio_rows
from .utils import utc_now_iso

LAST_CLICKED_ROW_KEY = "__pjudLastClickedRow"
SYNCED_REGISTRY_KEY = "synced_causas_registry"
TRANSPORT_COOKIES = ("PHPSESSID", "TS01262d1d")
MAX_CARATULA_LENGTH = 120
MAX_PREVIEW_ITEMS = 50

MODAL_BODY_SELECTORS = (
    "#modalDetalleCivil .modal-body",
    ".modal.in .modal-body",
    ".modal.show .modal-body",
)

_MODAL_ROL_RE = re.compile(r"ROL\s*:?\s*([A-Z]{1,4}-\d{1,8}-\d{4})", re.IGNORECASE)
_FECHA_INGRESO_RE = re.compile(r"F\.\s*Ing\.\s*:?\s*(\d{2}/\d{2}/\d{4})", re.IGNORECASE)
_NOT_CARATULA_RE = re.compile(r"ROL|F\.\s*Ing", re.IGNORECASE)
_CSRF_VALUE_RE = re.compile(r"^[a-f0-9]{20,64}$", re.IGNORECASE)
_CSRF_SCRIPT_RE = re.compile(r"(?:var\s+)?token\s*[:=]\s*['\"]([a-f0-9]{20,64})['\"]", re.IGNORECASE)
_CAUSA_ORIGEN_RE = re.compile(r"Causa\s+Origen\s*:?\s*([A-Z]{1,4}-\d{1,8}-\d{4})", re.IGNORECASE)
_TRIBUNAL_ORIGEN_RE = re.compile(r"Tribunal\s+Origen\s*:?\s*(.+)", re.IGNORECASE)
_MIS_CAUSAS_RE = re.compile(r"miscausas|mis.causas|miscausa", re.IGNORECASE)

# (row index, field, pattern) read from the metadata table's second and third rows.
_METADATA_ROW_PATTERNS: tuple[tuple[int, str, re.Pattern[str]], ...] = (
    (1, "estado_adm", re.compile(r"Est\.\s*Adm\.\s*:?\s*(.+)", re.IGNORECASE)),
    (1, "procedimiento_raw", re.compile(r"Proc\.\s*:?\s*(.+)", re.IGNORECASE)),
    (1, "ubicacion", re.compile(r"Ubicaci[oó]n\s*:?\s*(.+)", re.IGNORECASE)),
    (2, "estado_procesal", re.compile(r"Estado\s+Proc\.\s*:?\s*(.+)", re.IGNORECASE)),
    (2, "etapa", re.compile(r"Etapa\s*:?\s*(.+)", re.IGNORECASE)),
    (2, "tribunal", re.compile(r"Tribunal\s*:?\s*(.+)", re.IGNORECASE)),
)

_PROCEDIMIENTO_PATTERNS = (
    ("ejecutivo", re.compile(r"ejecutivo", re.IGNORECASE)),
    ("ordinario", re.compile(r"ordinario", re.IGNORECASE)),
    ("sumario", re.compile(r"sumario", re.IGNORECASE)),
    ("monitorio", re.compile(r"monitorio", re.IGNORECASE)),
    ("voluntario", re.compile(r"voluntario", re.IGNORECASE)),
)

FOLIO_TYPE_PATTERNS = (
    ("resoluciones", re.compile(r"RESOLUCI[OÓ]N|AUTO|SENTENCIA|DECRETO", re.IGNORECASE)),
    ("escritos", re.compile(r"ESCRITO|DEMANDA|CONTESTACI|RECURSO|APELACI", re.IGNORECASE)),
    ("actuaciones", re.compile(r"ACTUACI[OÓ]N|RECEPTOR|DILIGENCIA", re.IGNORECASE)),
    ("notificaciones", re.compile(r"NOTIFICACI[OÓ]N|C[ÉE]DULA|CARTA", re.IGNORECASE)),
)

# Direct-document forms: (package field, action fragment, input name).
DIRECT_CREDENTIAL_FORMS = (
    ("jwt_texto_demanda", "docu.php", "valorEncTxtDmda"),
    ("jwt_certificado_envio", "docCertificadoDemanda", "dtaCert"),
    ("jwt_ebook", "newebookcivil", "dtaEbook"),
)

# Ancillary tabs: (key, container, column names, columns of which one must be non-empty).
TAB_TABLES: tuple[tuple[str, str, tuple[str, ...], tuple[str, ...]], ...] = (
    (
        "litigantes",
        "#litigantesCiv",
        ("participante", "rut", "persona", "nombre"),
        ("participante", "nombre"),
    ),
    (
        "notificaciones",
        "#notificacionesCiv",
        (
            "rol",
            "estado_notif",
            "tipo_notif",
            "fecha_tramite",
            "tipo_participante",
            "nombre",
            "tramite",
            "obs_fallida",
        ),
        ("rol", "tipo_notif"),
    ),
    (
        "escritos_por_resolver",
        "#escritosCiv",
        ("doc", "anexo", "fecha_ingreso", "tipo_escrito", "solicitante"),
        ("tipo_escrito", "fecha_ingreso"),
    ),
    (
        "exhortos",
        "#exhortosCiv",
        (
            "rol_origen",
            "tipo_exhorto",
            "rol_destino",
            "fecha_ordena",
            "fecha_ingreso",
            "tribunal_destino",
            "estado_exhorto",
        ),
        ("rol_origen", "tipo_exhorto"),
    ),
)


def _text(tag: Optional[Tag]) -> str:
    return clean_cell_text(tag.get_text(" ")) if tag is not None else ""


def rol_matches(a: Any, b: Any) -> bool:
    if not a or not b:
        return False
    return normalize_rol(str(a)) == normalize_rol(str(b))


def map_procedimiento(raw: str | None) -> Optional[str]:
    if not raw:
        return None
    for name, pattern in _PROCEDIMIENTO_PATTERNS:
        if pattern.search(raw):
            return name
    return None


def infer_folio_type(tramite: str | None) -> str:
    for name, pattern in FOLIO_TYPE_PATTERNS:
        if pattern.search(tramite or ""):
            return name
    return "otros"


def detect_entry_point(url: str | None) -> str:
    if _MIS_CAUSAS_RE.search(url or ""):
        return "mis_causas"
    return "consulta_unificada"


def find_modal_body(doc: PageDocument) -> Optional[Tag]:
    """Return the container of the open case modal, or ``None``."""

    for selector in MODAL_BODY_SELECTORS:
        body = doc.select_one(selector)
        if body is not None and body.select_one("table.table-titulos") is not None:
            return body

    for body in doc.select(".modal-body"):
        if body.select_one("table.table-titulos") is None:
            continue
        modal = closest(body, ".modal")
        if modal is None:
            return body
        classes = modal.get("class") or []
        style = attr(modal, "style").replace(" ", "").lower()
        if "in" in classes or "show" in classes or "display:none" not in style:
            return body

    tables = doc.select("table.table-titulos")
    if tables:
        first = tables[0]
        return closest(first, ".modal-body") or closest(first, ".panel.with-nav-tabs") or first.parent
    return None


def parse_metadata_table(modal_body: Tag) -> dict[str, Optional[str]]:
    """Read the identifier and header fields from the modal's metadata table."""

    result: dict[str, Optional[str]] = {
        "rol": None,
        "libro_tipo": None,
        "tribunal": None,
        "estado_adm": None,
        "procedimiento": None,
        "procedimiento_raw": None,
        "etapa": None,
        "ubicacion": None,
        "fecha_ingreso": None,
        "estado_procesal": None,
        "partial_caratula": None,
    }
    table = modal_body.select_one("table.table-titulos")
    if table is None:
        return result
    rows = table.select("tbody > tr") or table.find_all("tr")

    if rows:
        cells = rows[0].find_all("td")
        if cells:
            match = _MODAL_ROL_RE.search(_text(cells[0]))
            if match:
                result["rol"] = normalize_rol(match.group(1))
                result["libro_tipo"] = libro_tipo_from_rol(result["rol"])
        for cell in cells:
            match = _FECHA_INGRESO_RE.search(_text(cell))
            if match:
                result["fecha_ingreso"] = match.group(1)
                break
        if cells:
            last_text = _text(cells[-1])
            if last_text and not _NOT_CARATULA_RE.search(last_text):
                result["partial_caratula"] = last_text[:MAX_CARATULA_LENGTH]

    for row_index, field_name, pattern in _METADATA_ROW_PATTERNS:
        if row_index >= len(rows):
            continue
        for cell in rows[row_index].find_all("td"):
            match = pattern.search(_text(cell))
            if match:
                result[field_name] = match.group(1).strip()

    result["procedimiento"] = map_procedimiento(result["procedimiento_raw"])
    return result


def detect_rol_from_titles(doc: PageDocument) -> Optional[str]:
    for table in doc.select("table.table-titulos"):
        match = _MODAL_ROL_RE.search(_text(table))
        if match:
            return normalize_rol(match.group(1))
    return None


def _csrf_from_named_input(doc: PageDocument) -> Optional[str]:
    field = doc.select_one(
        'input[name="token"][type="hidden"], input[name="_token"][type="hidden"]'
    )
    value = attr(field, "value") if field is not None else ""
    return value if _CSRF_VALUE_RE.match(value) else None


def _csrf_from_meta(doc: PageDocument) -> Optional[str]:
    meta = doc.select_one('meta[name="csrf-token"], meta[name="_token"]')
    if meta is None:
        return None
    return attr(meta, "content") or None


def _csrf_from_scripts(doc: PageDocument) -> Optional[str]:
    for script in doc.select("script:not([src])"):
        match = _CSRF_SCRIPT_RE.search(script.get_text() or "")
        if match:
            return match.group(1)
    return None


def _csrf_from_hidden_inputs(doc: PageDocument) -> Optional[str]:
    for hidden in doc.select('input[type="hidden"]'):
        value = attr(hidden, "value")
        if attr(hidden, "name").lower() == "token" and _CSRF_VALUE_RE.match(value):
            return value
    return None


CSRF_STRATEGIES: tuple[Callable[[PageDocument], Optional[str]], ...] = (
    _csrf_from_named_input,
    _csrf_from_meta,
    _csrf_from_scripts,
    _csrf_from_hidden_inputs,
)


def extract_csrf_token(doc: PageDocument) -> Optional[str]:
    for strategy in CSRF_STRATEGIES:
        token = strategy(doc)
        if token:
            return token
    return None


def extract_direct_credentials(modal_body: Tag) -> dict[str, Optional[JwtRef]]:
    found: dict[str, Optional[JwtRef]] = {name: None for name, _, _ in DIRECT_CREDENTIAL_FORMS}
    for name, fragment, input_name in DIRECT_CREDENTIAL_FORMS:
        for form in modal_body.select(f'form[action*="{fragment}"]'):
            action = attr(form, "action")
            # ``docu.php`` also matches the per-folio docuS/docuN forms.
            if fragment == "docu.php" and ("docuS" in action or "docuN" in action):
                continue
            field = form.select_one(f'input[name="{input_name}"]')
            value = attr(field, "value") if field is not None else ""
            if value:
                found[name] = JwtRef(jwt=value, action=action, param=input_name)
                break
    return found


def _onclick_credential(modal_body: Tag, selector: str, function_name: str) -> Optional[str]:
    link = modal_body.select_one(selector)
    if link is None:
        return None
    return extract_jwt_from_onclick(attr(link, "onclick"), function_name)


def extract_cuadernos(modal_body: Tag) -> list[Cuaderno]:
    select = modal_body.select_one("select#selCuaderno")
    if select is None:
        return []
    cuadernos = []
    for option in select.find_all("option"):
        value = attr(option, "value")
        if len(value) < 20:
            continue
        cuadernos.append(
            Cuaderno(nombre=_text(option), jwt=value, selected=option.has_attr("selected"))
        )
    return cuadernos


def extract_tabs(modal_body: Tag) -> dict[str, list[dict[str, str]]]:
    tabs: dict[str, list[dict[str, str]]] = {}
    for key, container_selector, columns, required in TAB_TABLES:
        container = modal_body.select_one(container_selector)
        records: list[dict[str, str]] = []
        if container is not None:
            for row in container.select("tbody tr"):
                cells = row.find_all("td")
                record = {
                    column: (_text(cells[i]) if i < len(cells) else "")
                    for i, column in enumerate(columns)
                }
                if any(record[column] for column in required):
                    records.append(record)
        tabs[key] = records
    return tabs


def extract_exhorto(modal_body: Tag) -> Optional[ExhortoData]:
    table = modal_body.select_one("table.table-titulos.wellTable")
    if table is None:
        return None
    lines = [clean_cell_text(line) for line in table.get_text("\n").split("\n")]
    text = "\n".join(line for line in lines if line)

    origen = _CAUSA_ORIGEN_RE.search(text)
    tribunal = _TRIBUNAL_ORIGEN_RE.search(text)
    if origen is None and tribunal is None:
        return None

    jwt_origen = None
    link = table.select_one('a[onclick*="detalleCausaCivil"], a[onclick*="causaOrigenCivil"]')
    if link is not None:
        onclick = attr(link, "onclick")
        jwt_origen = extract_jwt_from_onclick(onclick, "detalleCausaCivil") or extract_jwt_from_onclick(
            onclick, "causaOrigenCivil"
        )
    return ExhortoData(
        causa_origen=origen.group(1).upper() if origen else None,
        tribunal_origen=tribunal.group(1).strip() if tribunal else None,
        jwt_causa_origen=jwt_origen,
    )


def extract_transport_cookies(cookies: dict[str, str]) -> Optional[dict[str, str]]:
    """Keep only the session and WAF cookies; without a session there is nothing to send."""

    picked = {name: cookies[name] for name in TRANSPORT_COOKIES if cookies.get(name)}
    return picked if picked.get("PHPSESSID") else None


def extract_folios(modal_body: Tag) -> list[Folio]:
    folios = parse_folio_rows(modal_body.select_one("#historiaCiv"))
    folios.extend(
        parse_folio_rows(modal_body.select_one("#piezasExhortoCiv"), source="piezas_exhorto")
    )
    return folios


def folio_preview(folios: Sequence[Folio]) -> dict[str, Any]:
    by_type = {"resoluciones": 0, "escritos": 0, "actuaciones": 0, "notificaciones": 0, "otros": 0}
    for folio in folios:
        by_type[infer_folio_type(folio.tramite)] += 1
    items = [
        {
            "text": f"Folio {f.numero} - {f.tramite} - {f.desc_tramite}"[:150],
            "type": infer_folio_type(f.tramite),
            "has_download": f.jwt_doc_principal is not None,
        }
        for f in list(folios)[:MAX_PREVIEW_ITEMS]
    ]
    return {"total": len(folios), "by_type": by_type, "items": items}


def row_click_from_row(row: Tag) -> Optional[dict[str, Any]]:
    """Read a results-table row (``#verDetalle``) the way it is recorded on click."""

    cells = row.find_all("td")
    if len(cells) < 5:
        return None
    data = {
        "rol": _text(cells[1]),
        "fecha": _text(cells[2]),
        "caratulado": _text(cells[3]),
        "tribunal": _text(cells[4]),
    }
    if not data["caratulado"] and not data["tribunal"]:
        return None
    return data


class CaseExtractor:
    """Passive extraction of a :class:`CasePackage` from the open case modal.

    ``store`` is the persistent key-value store (synced-case registry);
    ``session_store`` holds the last clicked results row for the browsing
    session.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        session_store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else MemoryStore()
        self.session_store = session_store if session_store is not None else MemoryStore()
        self._clock = clock
        self._last_clicked_row: Optional[dict[str, Any]] = None

    def record_row_click(self, row: dict[str, Any]) -> None:
        entry = dict(row)
        entry.setdefault("clicked_at", self._clock())
        self._last_clicked_row = entry
        self.session_store.set(LAST_CLICKED_ROW_KEY, entry)
        _scraper_event("row_click", rol=entry.get("rol"), tribunal=entry.get("tribunal"))

    def resolve_caratula(self, rol: str, partial: Optional[str]) -> Optional[str]:
        """Prefer the full title the user clicked over the truncated modal header."""

        cached = self._last_clicked_row
        if cached and cached.get("caratulado") and rol_matches(cached.get("rol"), rol):
            age = self._clock() - float(cached.get("clicked_at") or 0)
            if cached.get("clicked_at") and age < config.ROW_CLICK_MAX_AGE_SECONDS:
                return str(cached["caratulado"])[:MAX_CARATULA_LENGTH]

        session_copy = self.session_store.get(LAST_CLICKED_ROW_KEY)
        if (
            isinstance(session_copy, dict)
            and session_copy.get("caratulado")
            and rol_matches(session_copy.get("rol"), rol)
        ):
            return str(session_copy["caratulado"])[:MAX_CARATULA_LENGTH]

        registry = self.store.get(SYNCED_REGISTRY_KEY)
        if isinstance(registry, list):
            for entry in registry:
                if isinstance(entry, dict) and rol_matches(entry.get("rol"), rol):
                    if entry.get("caratula"):
                        return str(entry["caratula"])[:MAX_CARATULA_LENGTH]
                    break

        return partial or None

    def register_synced(self, package: CasePackage) -> None:
        registry = self.store.get(SYNCED_REGISTRY_KEY)
        entries = [e for e in registry if isinstance(e, dict)] if isinstance(registry, list) else []
        entries = [e for e in entries if not rol_matches(e.get("rol"), package.rol)]
        entries.append(
            {
                "rol": package.rol,
                "tribunal": package.tribunal or "",
                "caratula": package.caratula or "",
                "synced_at": utc_now_iso(),
            }
        )
        self.store.set(SYNCED_REGISTRY_KEY, entries)

    def extract(self, doc: PageDocument) -> Optional[CasePackage]:
        modal_body = find_modal_body(doc)
        if modal_body is None:
            _scraper_event("extract", phase="skip", reason="no_modal")
            return None

        meta = parse_metadata_table(modal_body)
        rol = meta["rol"]
        if not rol:
            _scraper_event("extract", phase="skip", reason="no_rol")
            return None

        direct = extract_direct_credentials(modal_body)
        folios = extract_folios(modal_body)
        cuadernos = extract_cuadernos(modal_body)

        package = CasePackage(
            rol=rol,
            libro_tipo=meta["libro_tipo"],
            tribunal=meta["tribunal"],
            estado_adm=meta["estado_adm"],
            procedimiento=meta["procedimiento"],
            procedimiento_raw=meta["procedimiento_raw"],
            etapa=meta["etapa"],
            ubicacion=meta["ubicacion"],
            fecha_ingreso=meta["fecha_ingreso"],
            estado_procesal=meta["estado_procesal"],
            caratula=self.resolve_caratula(rol, meta["partial_caratula"]),
            materia=meta["procedimiento_raw"],
            fuente=detect_entry_point(doc.url),
            cookies=extract_transport_cookies(doc.snapshot.cookies),
            jwt_texto_demanda=direct["jwt_texto_demanda"],
            jwt_certificado_envio=direct["jwt_certificado_envio"],
            jwt_ebook=direct["jwt_ebook"],
            jwt_anexos=_onclick_credential(
                modal_body,
                'a[onclick*="anexoCausaCivil"], a[href="#modalAnexoCausaCivil"]',
                "anexoCausaCivil",
            ),
            jwt_receptor=_onclick_credential(
                modal_body, 'a[onclick*="receptorCivil"]', "receptorCivil"
            ),
            csrf_token=extract_csrf_token(doc),
            cuadernos=tuple(cuadernos),
            folios=tuple(folios),
            tabs=extract_tabs(modal_body),
            exhorto=extract_exhorto(modal_body),
            extracted_at=utc_now_iso(),
            page_url=doc.url,
        )
        _scraper_event(
            "extract",
            phase="done",
            rol=rol,
            tribunal=package.tribunal,
            folios=len(folios),
            cuadernos=len(cuadernos),
            has_csrf=bool(package.csrf_token),
            has_cookies=bool(package.cookies),
        )
        return package


__all__ = [
    "CaseExtractor",
    "LAST_CLICKED_ROW_KEY",
    "SYNCED_REGISTRY_KEY",
    "detect_entry_point",
    "detect_rol_from_titles",
    "extract_csrf_token",
    "extract_direct_credentials",
    "extract_tabs",
    "find_modal_body",
    "folio_preview",
    "infer_folio_type",
    "map_procedimiento",
    "parse_metadata_table",
    "rol_matches",
    "row_click_from_row",
]
