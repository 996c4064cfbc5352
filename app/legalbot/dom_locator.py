"""Heuristic location of the records table and of download controls.

Known selectors from the served config are tried first. When the markup has
drifted, every table and every clickable is scored by textual and structural
signals. Control scoring is a list of ``(name, predicate, weight)`` rules
folded over a candidate so weights stay data-driven and individually
testable.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from bs4.element import Tag

from .dom import PageDocument, attr, text_of
from .identity import normalize_rol

DEFAULT_DOWNLOAD_KEYWORDS = (
    "descargar",
    "download",
    "pdf",
    "documento",
    "escrito",
    "resolución",
    "ver",
    "abrir",
    "sentencia",
)
DEFAULT_TABLE_KEYWORDS = ("ROL", "Causa", "Tribunal", "Carátula", "Fecha", "Tipo")
DEFAULT_MIN_CONFIDENCE = 0.35

CLICKABLE_SELECTOR = (
    'a, button, [onclick], [role="button"], input[type="button"], input[type="submit"]'
)
ICON_SELECTOR = 'i, svg, img, span[class*="icon"]'

_DOWNLOAD_HANDLER_RE = re.compile(r"download|descarga|abrir|verdoc|getdoc|obtener", re.IGNORECASE)
_NAV_HANDLER_RE = re.compile(r"window\.open|window\.location", re.IGNORECASE)
_ICON_RE = re.compile(r"download|descarga|pdf|file|archivo", re.IGNORECASE)
_PAGINATION_RE = re.compile(r"página|page|next|prev|anterior|siguiente", re.IGNORECASE)
_NAVIGATION_RE = re.compile(r"inicio|home|menú|salir|logout|cerrar", re.IGNORECASE)
_LEGAL_CONTENT_RE = re.compile(
    r"causa|rol|tribunal|expediente|carátula|juzgado|corte|demanda|querella", re.IGNORECASE
)
_PJUD_URL_RE = re.compile(r"pjud\.cl|oficinavirtual.*judicial", re.IGNORECASE)
_ROW_ROL_PATTERNS = (
    re.compile(r"[A-Z]{1,3}-\d{1,7}-\d{4}", re.IGNORECASE),
    re.compile(r"\d{1,7}-\d{4}"),
    re.compile(r"ROL\s*:?\s*([A-Z0-9\-]+)", re.IGNORECASE),
)


@dataclass
class ControlSignals:
    """Lower-cased signal strings read once from a candidate element."""

    text: str
    href: str
    onclick: str
    all_text: str
    has_download_attr: bool
    target: str
    icon_hits: int

    @classmethod
    def from_element(cls, element: Tag) -> "ControlSignals":
        text = text_of(element).lower()
        href = attr(element, "href").lower()
        onclick = attr(element, "onclick").lower()
        data_attrs = " ".join(
            f"{k}={v}" for k, v in element.attrs.items() if str(k).startswith("data-")
        )
        all_text = " ".join(
            [
                text,
                href,
                onclick,
                attr(element, "class").lower(),
                attr(element, "title").lower(),
                attr(element, "aria-label").lower(),
                data_attrs.lower(),
            ]
        )
        icon_hits = 0
        for icon in element.select(ICON_SELECTOR):
            info = f"{attr(icon, 'class')} {attr(icon, 'src')} {attr(icon, 'alt')}"
            if _ICON_RE.search(info):
                icon_hits += 1
        return cls(
            text=text,
            href=href,
            onclick=onclick,
            all_text=all_text,
            has_download_attr=element.has_attr("download"),
            target=attr(element, "target"),
            icon_hits=icon_hits,
        )


ScoreRule = tuple[str, Callable[[ControlSignals], float], float]

# Each predicate returns a multiplier (0/1, or a count) applied to its weight.
CONTROL_RULES: tuple[ScoreRule, ...] = (
    ("pdf_href", lambda s: float(".pdf" in s.href), 0.5),
    ("download_href", lambda s: float("download" in s.href or "descarga" in s.href), 0.3),
    ("download_attr", lambda s: float(s.has_download_attr), 0.45),
    ("download_handler", lambda s: float(bool(s.onclick) and bool(_DOWNLOAD_HANDLER_RE.search(s.onclick))), 0.35),
    ("window_handler", lambda s: float(bool(s.onclick) and bool(_NAV_HANDLER_RE.search(s.onclick))), 0.1),
    ("download_icon", lambda s: float(s.icon_hits), 0.25),
    ("new_tab", lambda s: float(s.target == "_blank"), 0.1),
    ("hash_anchor", lambda s: float(s.href.startswith("#") and "download" not in s.href), -0.2),
    ("pagination", lambda s: float(bool(_PAGINATION_RE.search(s.all_text))), -0.3),
    ("navigation", lambda s: float(bool(_NAVIGATION_RE.search(s.all_text))), -0.3),
)


def score_control(
    signals: ControlSignals,
    keywords: Sequence[str] = DEFAULT_DOWNLOAD_KEYWORDS,
    rules: Sequence[ScoreRule] = CONTROL_RULES,
) -> float:
    score = sum(0.15 for kw in keywords if kw.lower() in signals.all_text)
    for _name, predicate, weight in rules:
        score += predicate(signals) * weight
    return max(0.0, min(score, 1.0))


@dataclass
class Candidate:
    element: Tag
    score: float
    source: str
    selector: Optional[str] = None

    @property
    def href(self) -> str:
        return attr(self.element, "href")


@dataclass
class TableMatch:
    element: Tag
    source: str
    confidence: float


def _rows(table: Tag) -> list[Tag]:
    return table.find_all("tr")


class DomLocator:
    def __init__(self, scraper_config: Optional[dict[str, Any]] = None) -> None:
        cfg = scraper_config or {}
        self.selectors: dict[str, list[str]] = cfg.get("selectors") or {}
        heuristics = cfg.get("heuristics") or {}
        self.download_keywords: Sequence[str] = (
            heuristics.get("downloadKeywords") or DEFAULT_DOWNLOAD_KEYWORDS
        )
        self.table_keywords: Sequence[str] = heuristics.get("tableKeywords") or DEFAULT_TABLE_KEYWORDS
        self.min_confidence: float = float(
            heuristics.get("minConfidenceThreshold") or DEFAULT_MIN_CONFIDENCE
        )

    def score_element(self, element: Tag) -> float:
        return score_control(ControlSignals.from_element(element), self.download_keywords)

    def score_table(self, table: Tag) -> float:
        thead = table.find("thead")
        header_source = thead if thead is not None else table.find("tr")
        header_text = text_of(header_source).upper()
        full_text = text_of(table).upper()

        score = 0.0
        for kw in self.table_keywords:
            upper = kw.upper()
            if upper in header_text:
                score += 2
            elif upper in full_text:
                score += 0.5

        row_count = len(_rows(table))
        if row_count > 2:
            score += min(row_count, 10) * 0.15
        link_count = len(table.find_all("a"))
        if link_count > 0:
            score += min(link_count, 10) * 0.1
        return score

    def find_case_table(self, doc: PageDocument) -> Optional[TableMatch]:
        for selector in self.selectors.get("causaTable") or []:
            for table in doc.select(selector):
                if table.name == "table" and len(_rows(table)) > 1:
                    return TableMatch(table, "known_selector", 0.95)

        best: Optional[Tag] = None
        best_score = 0.0
        for table in doc.select("table"):
            score = self.score_table(table)
            if score > best_score:
                best, best_score = table, score

        if best is not None and best_score > 2:
            return TableMatch(best, "heuristic", min(best_score / 8, 0.9))
        return None

    def find_download_elements(
        self, doc: PageDocument, *, within: Optional[Tag] = None
    ) -> list[Candidate]:
        candidates: list[Candidate] = []

        for selector in self.selectors.get("downloadLink") or []:
            for element in doc.select(selector):
                candidates.append(Candidate(element, 0.9, "known_selector", selector))

        for element in doc.select(CLICKABLE_SELECTOR):
            score = self.score_element(element)
            if score >= self.min_confidence:
                candidates.append(Candidate(element, score, "heuristic"))

        if within is not None:
            candidates = [
                c
                for c in candidates
                if c.element is within or any(p is within for p in c.element.parents)
            ]
        return deduplicate_and_rank(candidates)

    def extract_case_rows(self, table: Tag) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for row in _rows(table):
            cells = row.find_all("td")
            if len(cells) < 2:
                continue
            row_text = text_of(row)

            links: list[Candidate] = []
            for element in row.select("a, button, [onclick]"):
                score = self.score_element(element)
                if score >= self.min_confidence:
                    links.append(Candidate(element, score, "heuristic"))

            rol = None
            for pattern in _ROW_ROL_PATTERNS:
                match = pattern.search(row_text)
                if match:
                    rol = normalize_rol(match.group(1) if match.groups() else match.group(0))
                    break

            if links or rol:
                rows.append(
                    {
                        "rol": rol,
                        "text": row_text[:300],
                        "download_links": sorted(links, key=lambda c: c.score, reverse=True),
                        "row": row,
                        "cell_count": len(cells),
                    }
                )
        return rows

    def analyze_page_context(self, doc: PageDocument) -> dict[str, Any]:
        table = self.find_case_table(doc)
        has_legal_content = bool(_LEGAL_CONTENT_RE.search(doc.body_text(5000)))
        is_pjud = bool(_PJUD_URL_RE.search(doc.url or ""))
        frame_count = len(doc.soup.select("iframe, frame"))
        return {
            "url": doc.url,
            "title": doc.title,
            "is_pjud": is_pjud,
            "is_relevant_page": is_pjud and (table is not None or has_legal_content),
            "has_table": table is not None,
            "table_confidence": table.confidence if table else 0,
            "has_legal_content": has_legal_content,
            "has_frames": frame_count > 0,
            "frame_count": frame_count,
            "skipped_frames": doc.skipped_frames,
        }


def deduplicate_and_rank(candidates: Sequence[Candidate]) -> list[Candidate]:
    """Keep the best-scoring entry per element and sort descending."""

    best: dict[int, Candidate] = {}
    for candidate in candidates:
        key = id(candidate.element)
        current = best.get(key)
        if current is None or candidate.score > current.score:
            best[key] = candidate
    return sorted(best.values(), key=lambda c: c.score, reverse=True)


__all__ = [
    "CONTROL_RULES",
    "Candidate",
    "ControlSignals",
    "DomLocator",
    "TableMatch",
    "deduplicate_and_rank",
    "score_control",
]
