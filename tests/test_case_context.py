from __future__ import annotations

from app.legalbot.case_context import CONFIRMED_CACHE_KEY, CaseContext, CaseState, infer_preview_type
from app.legalbot.dom import FrameSnapshot, PageDocument, PageSnapshot
from app.legalbot.extractor import CaseExtractor
from app.legalbot.kv_store import MemoryStore
from tests.test_extractor import MODAL_HTML, PORTAL_URL, FakeClock

DOCUMENT_TABLE_PAGE = """
<html><head><title>Detalle causa</title></head><body>
<main>
  <h2>Causa ROL: C-555-2023</h2>
  <p>Tribunal: 3º Juzgado Civil de Valparaíso</p>
  <p>Carátula: MUÑOZ / CONSTRUCTORA SUR</p>
  <table>
    <thead><tr><th>Folio</th><th>Fecha</th><th>Documento</th></tr></thead>
    <tbody>
      <tr><td>1</td><td>01/02/2023</td><td><a href="/docs/1.pdf">Resolución que provee</a></td></tr>
      <tr><td>2</td><td>03/02/2023</td><td><a href="/docs/2.pdf">Escrito de demanda</a></td></tr>
    </tbody>
  </table>
</main>
</body></html>
"""


def _doc(html: str, url: str = PORTAL_URL, frames: list[FrameSnapshot] | None = None) -> PageDocument:
    return PageDocument(PageSnapshot(url=url, html=html, frames=frames or []))


def _context(clock: FakeClock | None = None, store: MemoryStore | None = None) -> CaseContext:
    clock = clock or FakeClock()
    store = store if store is not None else MemoryStore()
    return CaseContext(store=store, extractor=CaseExtractor(store, clock=clock), clock=clock)


def test_rol_in_url_is_detected_with_high_confidence() -> None:
    context = _context()
    doc = _doc("<html><body><p>Sin datos</p></body></html>", url="https://oficinajudicialvirtual.pjud.cl/causa?rol=C-12345-2026")

    detected = context.detect(doc)

    assert detected is not None
    assert detected.rol == "C-12345-2026"
    assert detected.source == "url"
    assert detected.confidence >= 0.9
    assert context.state is CaseState.DETECTED


def test_irrelevant_site_is_ignored() -> None:
    context = _context()
    assert context.detect(_doc(MODAL_HTML, url="https://example.com/")) is None
    assert context.state is CaseState.IDLE


def test_open_modal_wins_over_other_strategies() -> None:
    detected = _context().detect(_doc(MODAL_HTML))

    assert detected.source == "pjud_modal"
    assert detected.confidence == 0.99
    assert detected.tribunal == "1º Juzgado Civil de Santiago"
    assert detected.caratula == "BANCO DE CHILE / PEREZ"
    assert detected.value("procedimiento") == "ejecutivo"
    assert detected.zone is not None
    assert detected.zone.kind == "pjud_modal"
    assert detected.total_documents == 2
    assert detected.to_dict()["libro_tipo"] == "c"


def test_dom_detection_reads_metadata_and_document_zone() -> None:
    detected = _context().detect(_doc(DOCUMENT_TABLE_PAGE))

    assert detected.rol == "C-555-2023"
    assert detected.source == "header_section"
    assert detected.tribunal == "3º Juzgado Civil de Valparaíso"
    assert detected.caratula == "MUÑOZ / CONSTRUCTORA SUR"
    assert detected.zone.kind == "table"
    assert detected.preview["total"] == 2
    assert detected.preview["by_type"]["resoluciones"] == 1
    assert detected.preview["by_type"]["escritos"] == 1


def test_confirmation_gate() -> None:
    store = MemoryStore()
    context = _context(store=store)

    assert context.confirm() is False
    assert context.document_zone is None

    context.detect(_doc(MODAL_HTML))
    assert context.has_confirmed_case() is False
    assert context.document_zone is None

    assert context.confirm() is True
    assert context.has_confirmed_case() is True
    assert context.document_zone is not None
    assert store.get(CONFIRMED_CACHE_KEY)["rol"] == "C-1234-2024"

    # a new detection always drops the confirmation
    context.detect(_doc(DOCUMENT_TABLE_PAGE))
    assert context.has_confirmed_case() is False


def test_confirmed_cache_fills_missing_fields_while_fresh() -> None:
    clock = FakeClock()
    store = MemoryStore()
    context = _context(clock, store)
    context.detect(_doc(DOCUMENT_TABLE_PAGE))
    context.confirm()

    bare = "<html><body><main><h2>Causa ROL: C-555-2023</h2></main></body></html>"
    clock.now += 60
    assert context.detect(_doc(bare)).tribunal == "3º Juzgado Civil de Valparaíso"

    clock.now += 10 * 60
    assert context.detect(_doc(bare)).tribunal is None


def test_extract_refuses_a_different_case_than_confirmed() -> None:
    context = _context()
    context.detect(_doc(DOCUMENT_TABLE_PAGE))
    context.confirm()

    assert context.extract(_doc(MODAL_HTML)) is None

    context.detect(_doc(MODAL_HTML))
    context.confirm()
    assert context.extract(_doc(MODAL_HTML)).rol == "C-1234-2024"


def test_extract_refuses_same_rol_in_another_tribunal() -> None:
    context = _context()
    context.detect(_doc(MODAL_HTML))
    context.confirm()

    moved = MODAL_HTML.replace("1º Juzgado Civil", "25º Juzgado Civil")
    assert context.extract(_doc(moved)) is None
    assert context.extract(_doc(MODAL_HTML)).tribunal == "1º Juzgado Civil de Santiago"


def test_extract_ignores_fields_the_confirmed_case_lacks() -> None:
    context = _context()
    context.detect(_doc("<html><body><p>ROL: C-1234-2024</p></body></html>"))
    context.confirm()
    assert context.confirmed_case.tribunal is None

    assert context.extract(_doc(MODAL_HTML)).tribunal == "1º Juzgado Civil de Santiago"


def test_same_origin_frames_are_searched() -> None:
    frame = FrameSnapshot(url="https://oficinajudicialvirtual.pjud.cl/frame.php", html=MODAL_HTML)
    foreign = FrameSnapshot(url="https://ads.example/frame", html="<p>ROL: C-1-2020</p>")
    doc = _doc("<html><body><p>Bienvenido</p></body></html>", frames=[frame, foreign])

    assert doc.skipped_frames == 1
    assert _context().detect(doc).rol == "C-1234-2024"


def test_infer_preview_type() -> None:
    assert infer_preview_type("Cédula de notificación") == "notificaciones"
    assert infer_preview_type("Audiencia preparatoria") == "actuaciones"
    assert infer_preview_type("") == "otros"
