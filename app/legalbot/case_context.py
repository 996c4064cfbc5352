"""Case detection and the human confirmation gate.

Nothing is captured until a detected case has been confirmed. Detection
walks an ordered list of strategies from the most to the least trustworthy
source and keeps the first syntactically valid identifier, recording where it
came from and how confident the match is. Secondary metadata, the document
zone and a document preview are then attached to the immutable
:class:`DetectedCase` shown to the operator.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from bs4.element import Tag

from . import config
from .dom import PageDocument, attr, text_of
from .extractor import (
    CaseExtractor,
    detect_rol_from_titles,
    extract_folios,
    find_modal_body,
    folio_preview,
    parse_metadata_table,
)
from .identity import CaseIdentity, is_valid_rol, libro_tipo_from_rol, normalize_rol
from .kv_store import KeyValueStore, MemoryStore
from .logging_utils import _scraper_event
from .models import CasePackage
from .utils import clean_text

CONFIRMED_CACHE_KEY = "legalbot_confirmed_causa"
MAX_PREVIEW_ITEMS = 50

_ROL = r"[A-Z]{1,4}-\d{1,8}-\d{4}"

URL_PATTERNS = (
    re.compile(rf"[?&]rol=({_ROL})", re.IGNORECASE),
    re.compile(r"[?&]rol=(\d{1,8}-\d{4})", re.IGNORECASE),
    re.compile(rf"/causa/({_ROL})", re.IGNORECASE),
    re.compile(rf"/expediente/({_ROL})", re.IGNORECASE),
    re.compile(rf"[?&]rit=({_ROL})", re.IGNORECASE),
    re.compile(r"[?&]ruc=(\d{4,}-\d{4})", re.IGNORECASE),
)
BODY_TEXT_PATTERNS = (
    re.compile(rf"ROL\s*:?\s*({_ROL})", re.IGNORECASE),
    re.compile(rf"RIT\s*:?\s*({_ROL})", re.IGNORECASE),
    re.compile(r"RUC\s*:?\s*(\d{4,}-\d{4})", re.IGNORECASE),
    re.compile(rf"Causa\s+(?:N[°º]?\s*)?({_ROL})", re.IGNORECASE),
    re.compile(rf"Expediente\s*:?\s*({_ROL})", re.IGNORECASE),
)

ANY_ROL_PATTERNS = (
    re.compile(rf"({_ROL})", re.IGNORECASE),
    re.compile(r"(?<![\w-])(\d{1,8}-\d{4})(?![\w-])"),
)

BREADCRUMB_SELECTORS = (
    ".breadcrumb",
    ".breadcrumbs",
    'nav[aria-label*="breadcrumb"]',
    "#breadcrumb",
    ".ruta-navegacion",
    ".path-nav",
)
FORM_FIELD_SELECTORS = (
    "#rolCausa",
    "#txtRol",
    'input[name="rol"]',
    'input[name*="Rol"]',
    'input[name="rit"]',
    'input[name="ruc"]',
    "#txtRit",
    "#txtRuc",
)
HEADER_SELECTORS = (
    ".detalle-causa",
    ".ficha-causa",
    ".header-causa",
    "#detalleCausa",
    "#fichaCausa",
    ".causa-header",
    ".panel-heading",
    ".card-header",
    "h1",
    "h2",
    "h3",
)
MAIN_CONTENT_SELECTORS = ("main", "#content", "#main", ".content", ".main-content")
DOCUMENT_CONTAINER_SELECTORS = (
    ".documentos",
    ".expediente",
    ".actuaciones",
    ".resoluciones",
    "#documentos",
    "#listaDocumentos",
    ".lista-documentos",
    '[class*="document"]',
    '[class*="expediente"]',
)
DOCUMENT_HEADER_KEYWORDS = (
    "DOCUMENTO",
    "ESCRITO",
    "RESOLUCIÓN",
    "RESOLUCION",
    "ACTUACIÓN",
    "ACTUACION",
    "NOTIFICACIÓN",
    "NOTIFICACION",
    "TIPO",
    "FECHA",
    "FOLIO",
    "CUADERNO",
    "DESCARGA",
)

_HEADER_CONTEXT_RE = re.compile(r"causa|rol|rit|ruc|expediente|tribunal", re.IGNORECASE)

# (field, patterns, max length) matched against the page's leading text.
METADATA_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...], int], ...] = (
    (
        "tribunal",
        (
            re.compile(r"Tribunal\s*:?\s*([^\n\r]{5,80})", re.IGNORECASE),
            re.compile(r"Juzgado\s+(?:de\s+)?([^\n\r]{5,80})", re.IGNORECASE),
            re.compile(r"Corte\s+(?:de\s+)?([^\n\r]{5,80})", re.IGNORECASE),
        ),
        80,
    ),
    (
        "caratula",
        (
            re.compile(r"Car[áa]tula\s*:?\s*([^\n\r]{5,120})", re.IGNORECASE),
            re.compile(r"Partes\s*:?\s*([^\n\r]{5,120})", re.IGNORECASE),
        ),
        120,
    ),
    (
        "materia",
        (
            re.compile(r"Materia\s*:?\s*([^\n\r]{3,80})", re.IGNORECASE),
            re.compile(r"Tipo\s+de\s+Causa\s*:?\s*([^\n\r]{3,80})", re.IGNORECASE),
        ),
        80,
    ),
    (
        "estado",
        (
            re.compile(r"Estado\s*:?\s*([^\n\r]{3,40})", re.IGNORECASE),
            re.compile(r"Situaci[oó]n\s*:?\s*([^\n\r]{3,40})", re.IGNORECASE),
        ),
        40,
    ),
)
METADATA_FIELDS = tuple(name for name, _, _ in METADATA_PATTERNS)

PREVIEW_TYPE_PATTERNS = (
    ("resoluciones", re.compile(r"RESOLUCI[OÓ]N|AUTO|SENTENCIA|DECRETO", re.IGNORECASE)),
    ("escritos", re.compile(r"ESCRITO|DEMANDA|CONTESTACI|RECURSO|APELACI", re.IGNORECASE)),
    ("actuaciones", re.compile(r"ACTUACI[OÓ]N|DILIGENCIA|AUDIENCIA", re.IGNORECASE)),
    ("notificaciones", re.compile(r"NOTIFICACI[OÓ]N|C[ÉE]DULA|CARTA", re.IGNORECASE)),
)


class CaseState(str, Enum):
    IDLE = "idle"
    DETECTED = "detected"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class FieldValue:
    value: str
    confidence: float
    source: str


@dataclass(frozen=True)
class DocumentZone:
    element: Tag
    kind: str
    confidence: float


@dataclass(frozen=True)
class DetectedCase:
    """One detection pass. Re-detection replaces it; it is never mutated."""

    rol: str
    confidence: float
    source: str
    fields: Mapping[str, FieldValue] = field(default_factory=dict)
    zone: Optional[DocumentZone] = None
    preview: Mapping[str, Any] = field(default_factory=dict)
    page_url: str = ""
    detected_at: float = 0.0

    def value(self, name: str) -> Optional[str]:
        found = self.fields.get(name)
        return found.value if found else None

    @property
    def tribunal(self) -> Optional[str]:
        return self.value("tribunal")

    @property
    def caratula(self) -> Optional[str]:
        return self.value("caratula")

    @property
    def identity(self) -> CaseIdentity:
        return CaseIdentity(self.rol, self.tribunal or "", self.caratula or "")

    @property
    def total_documents(self) -> int:
        return int(self.preview.get("total") or 0)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "rol": self.rol,
            "rol_source": self.source,
            "rol_confidence": self.confidence,
            "libro_tipo": libro_tipo_from_rol(self.rol),
            "has_document_zone": self.zone is not None,
            "document_zone_type": self.zone.kind if self.zone else None,
            "document_preview": dict(self.preview),
            "total_documents": self.total_documents,
            "page_url": self.page_url,
            "detected_at": self.detected_at,
            "field_sources": {
                name: {"source": fv.source, "confidence": fv.confidence}
                for name, fv in self.fields.items()
            },
        }
        for name in (*METADATA_FIELDS, "procedimiento"):
            payload[name] = self.value(name)
        return payload


Locate = Callable[[PageDocument], Optional[str]]


@dataclass(frozen=True)
class RolStrategy:
    source: str
    confidence: float
    locate: Locate


def infer_preview_type(text: str | None) -> str:
    for name, pattern in PREVIEW_TYPE_PATTERNS:
        if pattern.search(text or ""):
            return name
    return "otros"


def leading_text(doc: PageDocument, limit: int) -> str:
    """Body text with one line per text node, trimmed to ``limit`` chars."""

    body = doc.soup.body or doc.soup
    lines = (clean_text(s) for s in body.stripped_strings)
    return "\n".join(line for line in lines if line)[:limit]


def _first_valid(candidates: Sequence[Optional[str]]) -> Optional[str]:
    for candidate in candidates:
        rol = normalize_rol(candidate)
        if candidate and is_valid_rol(rol):
            return rol
    return None


def _search_patterns(text: str, patterns: Sequence[re.Pattern[str]]) -> Optional[str]:
    return _first_valid([m.group(1) for p in patterns for m in [p.search(text)] if m])


def _rol_from_url(doc: PageDocument) -> Optional[str]:
    return _search_patterns(doc.url or "", URL_PATTERNS)


def _rol_from_breadcrumbs(doc: PageDocument) -> Optional[str]:
    for selector in BREADCRUMB_SELECTORS:
        for crumb in doc.select(selector):
            found = _search_patterns(text_of(crumb), ANY_ROL_PATTERNS)
            if found:
                return found
    return None


def _rol_from_title(doc: PageDocument) -> Optional[str]:
    return _search_patterns(doc.title, ANY_ROL_PATTERNS)


def _rol_from_header(doc: PageDocument) -> Optional[str]:
    for selector in HEADER_SELECTORS:
        for header in doc.select(selector):
            text = text_of(header)[:500]
            if not _HEADER_CONTEXT_RE.search(text):
                continue
            found = _search_patterns(text, ANY_ROL_PATTERNS)
            if found:
                return found
    return None


def _rol_from_body(doc: PageDocument) -> Optional[str]:
    container = doc.select_first(MAIN_CONTENT_SELECTORS) or doc.soup.body or doc.soup
    return _search_patterns(text_of(container)[:3000], BODY_TEXT_PATTERNS)


class CaseContext:
    """State machine ``idle -> detected -> confirmed`` guarding every capture."""

    def __init__(
        self,
        scraper_config: Optional[dict[str, Any]] = None,
        *,
        store: Optional[KeyValueStore] = None,
        extractor: Optional[CaseExtractor] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        cfg = scraper_config or {}
        self.selectors: dict[str, list[str]] = cfg.get("selectors") or {}
        self.relevant_patterns = [
            re.compile(p, re.IGNORECASE) for p in cfg.get("relevantUrlPatterns") or [r"pjud\.cl"]
        ]
        self.store = store if store is not None else MemoryStore()
        self.extractor = extractor or CaseExtractor(self.store, clock=clock)
        self._clock = clock

        self.state = CaseState.IDLE
        self.detected: Optional[DetectedCase] = None
        self.strategies: tuple[RolStrategy, ...] = (
            RolStrategy("url", 0.95, _rol_from_url),
            RolStrategy("pjud_table", 0.95, detect_rol_from_titles),
            RolStrategy("breadcrumb", 0.9, _rol_from_breadcrumbs),
            RolStrategy("form_field", 0.9, self._rol_from_form_fields),
            RolStrategy("page_title", 0.85, _rol_from_title),
            RolStrategy("header_section", 0.85, _rol_from_header),
            RolStrategy("dom_text", 0.7, _rol_from_body),
        )

    # -- gate ---------------------------------------------------------------

    def confirm(self) -> bool:
        if self.detected is None:
            return False
        self.state = CaseState.CONFIRMED
        self.store.set(
            CONFIRMED_CACHE_KEY,
            {
                "rol": self.detected.rol,
                "tribunal": self.detected.tribunal,
                "caratula": self.detected.caratula,
                "materia": self.detected.value("materia"),
                "estado": self.detected.value("estado"),
                "confirmed_at": self._clock(),
            },
        )
        _scraper_event("case", phase="confirmed", rol=self.detected.rol)
        return True

    def reset(self) -> None:
        self.detected = None
        self.state = CaseState.IDLE

    def has_confirmed_case(self) -> bool:
        return self.state is CaseState.CONFIRMED and self.detected is not None

    @property
    def confirmed_case(self) -> Optional[DetectedCase]:
        return self.detected if self.has_confirmed_case() else None

    @property
    def document_zone(self) -> Optional[DocumentZone]:
        """The scope captures are limited to; only available once confirmed."""

        confirmed = self.confirmed_case
        return confirmed.zone if confirmed else None

    def locate_zone(self, doc: PageDocument) -> Optional[DocumentZone]:
        """Resolve the confirmed zone again on a fresh snapshot of the page."""

        zone = self.document_zone
        if zone is None:
            return None
        if zone.kind == "pjud_modal":
            modal_body = find_modal_body(doc)
            if modal_body is None:
                return None
            historia = modal_body.select_one("#historiaCiv")
            return DocumentZone(historia if historia is not None else modal_body, zone.kind, zone.confidence)
        return self.identify_document_zone(doc)

    # -- detection ----------------------------------------------------------

    def is_relevant_url(self, url: str | None) -> bool:
        return any(p.search(url or "") for p in self.relevant_patterns)

    def detect(self, doc: PageDocument) -> Optional[DetectedCase]:
        self.reset()
        if not self.is_relevant_url(doc.url):
            return None

        detected = self._detect_from_modal(doc) or self._detect_from_strategies(doc)
        if detected is None:
            _scraper_event("case", phase="not_found", url=doc.url)
            return None

        self.detected = detected
        self.state = CaseState.DETECTED
        _scraper_event(
            "case",
            phase="detected",
            rol=detected.rol,
            source=detected.source,
            confidence=detected.confidence,
            tribunal=detected.tribunal,
            documents=detected.total_documents,
        )
        return detected

    def _detect_from_modal(self, doc: PageDocument) -> Optional[DetectedCase]:
        modal_body = find_modal_body(doc)
        if modal_body is None:
            return None
        meta = parse_metadata_table(modal_body)
        rol = meta["rol"]
        if not rol or not is_valid_rol(rol):
            return None

        fields: dict[str, FieldValue] = {}
        values = {
            "tribunal": meta["tribunal"],
            "caratula": self.extractor.resolve_caratula(rol, meta["partial_caratula"]),
            "materia": meta["procedimiento_raw"],
            "estado": meta["estado_procesal"] or meta["estado_adm"],
            "procedimiento": meta["procedimiento"],
        }
        for name, value in values.items():
            if value:
                fields[name] = FieldValue(value, 0.99, "pjud_modal")
        self._fill_from_confirmed_cache(rol, fields)

        folios = extract_folios(modal_body)
        historia = modal_body.select_one("#historiaCiv")
        return DetectedCase(
            rol=rol,
            confidence=0.99,
            source="pjud_modal",
            fields=fields,
            zone=DocumentZone(historia if historia is not None else modal_body, "pjud_modal", 0.99),
            preview=folio_preview(folios),
            page_url=doc.url,
            detected_at=self._clock(),
        )

    def _detect_from_strategies(self, doc: PageDocument) -> Optional[DetectedCase]:
        for strategy in self.strategies:
            rol = strategy.locate(doc)
            if not rol:
                continue
            fields = self.extract_metadata(doc)
            self._fill_from_confirmed_cache(rol, fields)
            zone = self.identify_document_zone(doc)
            return DetectedCase(
                rol=rol,
                confidence=strategy.confidence,
                source=strategy.source,
                fields=fields,
                zone=zone,
                preview=self.document_preview(zone),
                page_url=doc.url,
                detected_at=self._clock(),
            )
        return None

    def _rol_from_form_fields(self, doc: PageDocument) -> Optional[str]:
        selectors = list(self.selectors.get("rolField") or []) + list(FORM_FIELD_SELECTORS)
        for selector in selectors:
            for element in doc.select(selector):
                value = attr(element, "value") or text_of(element)
                rol = _first_valid([value.strip()])
                if rol:
                    return rol
        return None

    def extract_metadata(self, doc: PageDocument) -> dict[str, FieldValue]:
        text = leading_text(doc, 5000)
        fields: dict[str, FieldValue] = {}
        for name, patterns, max_len in METADATA_PATTERNS:
            for pattern in patterns:
                match = pattern.search(text)
                if match:
                    fields[name] = FieldValue(match.group(1).strip()[:max_len], 0.7, "dom_text")
                    break
        return fields

    def _fill_from_confirmed_cache(self, rol: str, fields: dict[str, FieldValue]) -> None:
        cached = self.store.get(CONFIRMED_CACHE_KEY)
        if not isinstance(cached, dict) or cached.get("rol") != rol:
            return
        age = self._clock() - float(cached.get("confirmed_at") or 0)
        if age >= config.CONFIRMED_CACHE_MAX_AGE_SECONDS:
            return
        for name in METADATA_FIELDS:
            if name not in fields and cached.get(name):
                fields[name] = FieldValue(str(cached[name]), 0.8, "confirmed_cache")

    # -- document zone & preview ---------------------------------------------

    @staticmethod
    def is_document_table(table: Tag) -> bool:
        if len(table.find_all("tr")) < 2:
            return False
        thead = table.find("thead")
        header = text_of(thead if thead is not None else table.find("tr")).upper()
        return sum(1 for kw in DOCUMENT_HEADER_KEYWORDS if kw in header) >= 2

    def identify_document_zone(self, doc: PageDocument) -> Optional[DocumentZone]:
        for selector in self.selectors.get("causaTable") or []:
            for element in doc.select(selector):
                if element.name == "table" and self.is_document_table(element):
                    return DocumentZone(element, "table", 0.9)

        for table in doc.select("table"):
            if self.is_document_table(table):
                return DocumentZone(table, "table", 0.75)

        for selector in DOCUMENT_CONTAINER_SELECTORS:
            for element in doc.select(selector):
                if element.find("a") is not None:
                    return DocumentZone(element, "container", 0.7)
        return None

    def document_preview(self, zone: Optional[DocumentZone]) -> dict[str, Any]:
        preview: dict[str, Any] = {
            "total": 0,
            "by_type": {
                "resoluciones": 0,
                "escritos": 0,
                "actuaciones": 0,
                "notificaciones": 0,
                "otros": 0,
            },
            "items": [],
        }
        if zone is None:
            return preview

        def _add(text: str, kind: str, has_download: bool) -> None:
            preview["by_type"][kind] += 1
            preview["total"] += 1
            if len(preview["items"]) < MAX_PREVIEW_ITEMS:
                preview["items"].append(
                    {"text": text[:150], "type": kind, "has_download": has_download}
                )

        for row in zone.element.find_all("tr"):
            if len(row.find_all("td")) < 2:
                continue
            row_text = text_of(row)
            has_links = bool(row.select("a, button[onclick], [onclick]"))
            if not has_links and not row_text:
                continue
            _add(row_text, infer_preview_type(row_text), has_links)

        if preview["total"] == 0:
            for link in zone.element.find_all("a"):
                text = text_of(link)
                href = attr(link, "href").lower()
                onclick = attr(link, "onclick").lower()
                if ".pdf" in href or "download" in onclick or "documento" in onclick or len(text) > 3:
                    _add(text, infer_preview_type(f"{text} {href}"), True)
        return preview

    # -- extraction ----------------------------------------------------------

    def extract(self, doc: PageDocument) -> Optional[CasePackage]:
        package = self.extractor.extract(doc)
        if package is None:
            return None
        confirmed = self.confirmed_case
        if confirmed is None:
            return package
        approved = confirmed.identity
        found = package.identity
        if not approved.matches(found):
            # The modal now shows a different case than the one the operator approved.
            _scraper_event(
                "extract",
                phase="identity_mismatch",
                confirmed=approved.key(),
                found=found.key(),
            )
            return None
        return package


__all__ = [
    "CONFIRMED_CACHE_KEY",
    "CaseContext",
    "CaseState",
    "DetectedCase",
    "DocumentZone",
    "FieldValue",
    "RolStrategy",
    "infer_preview_type",
    "leading_text",
]
