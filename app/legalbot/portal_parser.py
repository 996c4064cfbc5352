"""Parsing of markup returned by the portal's modal endpoints.

The docket row rules here are the single source of truth: the page-side
extractor calls ``parse_folio_rows`` on the live snapshot and the server calls
``parse_folios_from_html`` on re-fetched markup, so both sides derive the
same folios and credentials. Unrecognisable markup yields empty results.
"""
from __future__ import annotations

import re
from typing import Any, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from .models import Folio, JwtRef

MIN_CREDENTIAL_LENGTH = 20
MIN_FOLIO_CELLS = 7

PRINCIPAL_DOC_ENDPOINTS = ("docuS.php", "docuN.php")
CERT_DOC_ENDPOINTS = ("docCertificadoEscrito.php",)

_INVISIBLE_RE = re.compile("[\u200b-\u200d\ufeff]")
_JWT_RE = re.compile(r"(eyJ[A-Za-z0-9_-]+\.[\w-]+\.[\w-]+)")


def clean_cell_text(text: str | None) -> str:
    if not text:
        return ""
    text = _INVISIBLE_RE.sub("", text).replace("\u00a0", " ")
    return re.sub(r"\s+", " ", text).strip()


def _cell_text(cell: Optional[Tag]) -> str:
    return clean_cell_text(cell.get_text(" ")) if cell is not None else ""


def _parse_int(value: str) -> Optional[int]:
    match = re.match(r"^\s*(-?\d+)", value or "")
    return int(match.group(1)) if match else None


def extract_form_jwt(cell: Optional[Tag], *endpoints: str) -> Optional[JwtRef]:
    """Return the credential posted by a form in ``cell`` whose action matches one of ``endpoints``."""

    if cell is None:
        return None
    for form in cell.find_all("form"):
        action = str(form.get("action") or "")
        if not any(ep in action for ep in endpoints):
            continue
        field = form.select_one('input[type="hidden"]') or form.find("input")
        if field is None:
            continue
        value = str(field.get("value") or "")
        if len(value) > MIN_CREDENTIAL_LENGTH:
            return JwtRef(jwt=value, action=action, param=str(field.get("name") or ""))
    return None


def extract_jwt_from_onclick(onclick: str | None, function_name: str) -> Optional[str]:
    if not onclick:
        return None
    pattern = re.compile(
        re.escape(function_name) + r"\s*\(\s*['\"]([^'\"]+)['\"]\s*\)", re.IGNORECASE
    )
    match = pattern.search(onclick)
    if match and len(match.group(1)) > MIN_CREDENTIAL_LENGTH:
        return match.group(1)
    jwt_match = _JWT_RE.search(onclick)
    return jwt_match.group(1) if jwt_match else None


def parse_folio_row(cells: list[Tag], *, source: Optional[str] = None) -> Optional[Folio]:
    numero = _parse_int(_cell_text(cells[0]))
    if numero is None:
        return None

    doc_cell = cells[1] if len(cells) > 1 else None
    geo_link = cells[-1].select_one('a[onclick*="geoReferencia"]') if cells else None

    return Folio(
        numero=numero,
        etapa=_cell_text(cells[3]) if len(cells) > 3 else "",
        tramite=_cell_text(cells[4]) if len(cells) > 4 else "",
        desc_tramite=_cell_text(cells[5]) if len(cells) > 5 else "",
        fecha_tramite=_cell_text(cells[6]) if len(cells) > 6 else "",
        foja=(_parse_int(_cell_text(cells[7])) or 0) if len(cells) > 7 else 0,
        jwt_doc_principal=extract_form_jwt(doc_cell, *PRINCIPAL_DOC_ENDPOINTS),
        jwt_certificado_escrito=extract_form_jwt(doc_cell, *CERT_DOC_ENDPOINTS),
        jwt_georef=(
            extract_jwt_from_onclick(str(geo_link.get("onclick") or ""), "geoReferencia")
            if geo_link is not None
            else None
        ),
        source=source,
    )


def parse_folio_rows(container: Optional[Tag], *, source: Optional[str] = None) -> list[Folio]:
    if container is None:
        return []
    folios: list[Folio] = []
    for row in container.select("tbody tr"):
        cells = row.find_all("td", recursive=False) or row.find_all("td")
        if len(cells) < MIN_FOLIO_CELLS:
            continue
        folio = parse_folio_row(cells, source=source)
        if folio is not None:
            folios.append(folio)
    return folios


def parse_folios_from_html(html: str | None) -> list[Folio]:
    """Extract docket entries from a ``causaCivil.php`` response."""

    if not html:
        return []
    root = BeautifulSoup(html, "html5lib")
    folios = parse_folio_rows(root.select_one("#historiaCiv"))
    folios.extend(parse_folio_rows(root.select_one("#piezasExhortoCiv"), source="piezas_exhorto"))
    return folios


_RECEPTOR_NAME_LABEL_RE = re.compile(r"^receptor(?:\s+judicial)?\s*:?\s*$", re.IGNORECASE)
_RECEPTOR_TYPE_LABEL_RE = re.compile(r"^tipo(?:\s+de)?\s+receptor\s*:?\s*$", re.IGNORECASE)
_RECEPTOR_NAME_INLINE_RE = re.compile(
    r"receptor(?:\s+judicial)?\s*:\s*(.+?)(?=\s+tipo\b|\s{2,}|$)", re.IGNORECASE
)
_RECEPTOR_TYPE_INLINE_RE = re.compile(r"tipo(?:\s+de)?\s+receptor\s*:\s*([^\n]+?)(?=\s{2,}|$)", re.IGNORECASE)


def _labelled_value(root: Tag, label_re: re.Pattern[str]) -> Optional[str]:
    for label in root.find_all(["th", "td", "label", "strong", "b", "dt", "span"]):
        if not label_re.match(_cell_text(label)):
            continue
        sibling = label.find_next_sibling()
        if sibling is None and label.parent is not None:
            sibling = label.parent.find_next_sibling()
        value = _cell_text(sibling)
        if value:
            return value
        tail = clean_cell_text(label.next_sibling if isinstance(label.next_sibling, str) else "")
        if tail:
            return tail
    return None


def _header_index(headers: list[str], *keywords: str) -> Optional[int]:
    for index, header in enumerate(headers):
        if any(kw in header for kw in keywords):
            return index
    return None


def _table_records(table: Tag, columns: dict[str, tuple[str, ...]]) -> list[dict[str, str]]:
    rows = table.find_all("tr")
    if not rows:
        return []
    headers = [_cell_text(c).upper() for c in rows[0].find_all(["th", "td"])]
    positions = {
        name: _header_index(headers, *keywords) for name, keywords in columns.items()
    }
    # Without a recognisable header fall back to column order.
    if all(pos is None for pos in positions.values()):
        positions = {name: idx for idx, name in enumerate(columns)}
        data_rows = rows
    else:
        data_rows = rows[1:]

    records: list[dict[str, str]] = []
    for row in data_rows:
        cells = row.find_all("td")
        if not cells:
            continue
        record = {
            name: (_cell_text(cells[pos]) if pos is not None and pos < len(cells) else "")
            for name, pos in positions.items()
        }
        if any(record.values()):
            records.append(record)
    return records


def parse_receptor_data(html: str | None) -> Optional[dict[str, Any]]:
    """Parse the receptor modal into name, type, certifications and diligences.

    Returns ``None`` when the markup carries none of them.
    """

    if not html:
        return None
    root = BeautifulSoup(html, "html5lib")
    full_text = clean_cell_text(root.get_text(" "))

    name = _labelled_value(root, _RECEPTOR_NAME_LABEL_RE)
    if not name:
        match = _RECEPTOR_NAME_INLINE_RE.search(full_text)
        name = match.group(1).strip() if match else None
    receptor_type = _labelled_value(root, _RECEPTOR_TYPE_LABEL_RE)
    if not receptor_type:
        match = _RECEPTOR_TYPE_INLINE_RE.search(full_text)
        receptor_type = match.group(1).strip() if match else None

    certificaciones: list[dict[str, str]] = []
    diligencias: list[dict[str, str]] = []
    for table in root.find_all("table"):
        header_row = table.find("tr")
        header = _cell_text(header_row).upper() if header_row is not None else ""
        if "CERTIFIC" in header or "RESULTADO" in header:
            certificaciones.extend(
                _table_records(
                    table,
                    {
                        "fecha": ("FECHA",),
                        "tipo": ("TIPO", "CERTIFIC"),
                        "resultado": ("RESULTADO", "ESTADO"),
                        "obs": ("OBS",),
                    },
                )
            )
        elif "DILIGENCIA" in header or "DESCRIP" in header:
            diligencias.extend(
                _table_records(
                    table,
                    {
                        "fecha": ("FECHA",),
                        "tipo": ("TIPO", "DILIGENCIA"),
                        "descripcion": ("DESCRIP", "DETALLE"),
                    },
                )
            )

    if not (name or receptor_type or certificaciones or diligencias):
        return None
    return {
        "receptor_nombre": name,
        "tipo_receptor": receptor_type,
        "certificaciones": certificaciones,
        "diligencias": diligencias,
    }


__all__ = [
    "clean_cell_text",
    "extract_form_jwt",
    "extract_jwt_from_onclick",
    "parse_folio_row",
    "parse_folio_rows",
    "parse_folios_from_html",
    "parse_receptor_data",
]
