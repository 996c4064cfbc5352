from __future__ import annotations

from app.legalbot.dom import PageDocument, PageSnapshot
from app.legalbot.dom_locator import (
    Candidate,
    ControlSignals,
    DomLocator,
    deduplicate_and_rank,
    score_control,
)
from app.legalbot.remote_config import default_config

URL = "https://oficinajudicialvirtual.pjud.cl/indexN.php"

CASE_LIST = """
<html><body>
<nav><a href="#top">Inicio</a><a href="/manual.pdf">Manual de uso</a></nav>
<table id="resultados">
  <thead><tr><th>ROL</th><th>Tribunal</th><th>Carátula</th><th>Fecha</th><th>Acción</th></tr></thead>
  <tbody>
    <tr><td>C-123-2024</td><td>1º Juzgado</td><td>A / B</td><td>01/01/2024</td>
        <td><a onclick="verDocumento(1)">Ver</a></td></tr>
    <tr><td>sin datos</td><td>-</td></tr>
    <tr><td>x</td></tr>
  </tbody>
</table>
</body></html>
"""


def _doc(html: str) -> PageDocument:
    return PageDocument(PageSnapshot(url=URL, html=html))


def _signals(html: str) -> ControlSignals:
    return ControlSignals.from_element(_doc(html).select_one("a"))


def test_score_control_rewards_download_signals() -> None:
    assert score_control(_signals('<a href="/x/documento.pdf" download>Descargar PDF</a>')) == 1.0
    assert score_control(_signals('<a href="#top">Inicio</a>')) == 0.0


def test_score_control_uses_given_rules_only() -> None:
    signals = _signals('<a href="/a.pdf" target="_blank">pdf</a>')

    assert score_control(signals, keywords=("pdf",), rules=()) == 0.15
    assert score_control(signals, keywords=(), rules=(("new_tab", lambda s: float(s.target == "_blank"), 0.1),)) == 0.1


def test_icons_count_as_signals() -> None:
    signals = _signals('<a><i class="fa fa-download"></i><img src="/img/pdf.png"></a>')
    assert signals.icon_hits == 2


def test_find_case_table_known_selector_and_heuristic() -> None:
    doc = _doc(CASE_LIST)

    known = DomLocator({"selectors": {"causaTable": ["#resultados"]}}).find_case_table(doc)
    assert known.source == "known_selector"
    assert known.confidence == 0.95

    guessed = DomLocator().find_case_table(doc)
    assert guessed.source == "heuristic"
    assert guessed.confidence == 0.9
    assert guessed.element.get("id") == "resultados"

    assert DomLocator().find_case_table(_doc("<table><tr><td>hola</td></tr></table>")) is None


def test_download_elements_are_limited_to_zone() -> None:
    doc = _doc(CASE_LIST)
    locator = DomLocator(default_config())

    everywhere = locator.find_download_elements(doc)
    inside = locator.find_download_elements(doc, within=doc.select_one("#resultados"))

    assert "/manual.pdf" in [c.href for c in everywhere]
    assert [c.element.get("onclick") for c in inside] == ["verDocumento(1)"]
    assert inside[0].source == "known_selector"


def test_extract_case_rows() -> None:
    doc = _doc(CASE_LIST)
    rows = DomLocator().extract_case_rows(doc.select_one("#resultados"))

    assert len(rows) == 1
    assert rows[0]["rol"] == "C-123-2024"
    assert rows[0]["cell_count"] == 5
    assert rows[0]["download_links"][0].score >= 0.35


def test_deduplicate_and_rank_keeps_best_per_element() -> None:
    doc = _doc('<a id="a">a</a><a id="b">b</a>')
    a, b = doc.select_one("#a"), doc.select_one("#b")

    ranked = deduplicate_and_rank(
        [Candidate(a, 0.5, "heuristic"), Candidate(b, 0.7, "heuristic"), Candidate(a, 0.9, "known_selector")]
    )

    assert [(c.element.get("id"), c.score) for c in ranked] == [("a", 0.9), ("b", 0.7)]


def test_analyze_page_context() -> None:
    context = DomLocator().analyze_page_context(_doc(CASE_LIST))

    assert context["is_pjud"] is True
    assert context["has_table"] is True
    assert context["has_legal_content"] is True
    assert context["is_relevant_page"] is True
    assert context["frame_count"] == 0
