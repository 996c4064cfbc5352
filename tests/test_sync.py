from __future__ import annotations

import json
import sqlite3
from typing import Any, Optional

import pytest

from app.legalbot import config, db, storage, sync
from app.legalbot.models import CasePackage
from app.legalbot.portal_client import FetchedDocument
from app.legalbot.sync import (
    SYNC_TIMEOUT_MESSAGE,
    SyncOrchestrator,
    build_download_tasks,
    clean_tramite,
    infer_doc_type,
)

JWT = "eyJhbGciOiJIUzI1NiJ9.eyJ4IjoxfQ.c2ln"


def _ref(name: str) -> dict[str, str]:
    return {"jwt": f"{JWT}-{name}", "action": "/ADIR_871/civil/documentos/docuS.php", "param": "dtaDoc"}


def _folio(numero: int, tramite: str = "Resolución") -> dict[str, Any]:
    return {
        "numero": numero,
        "tramite": tramite,
        "fecha_tramite": "02/01/2024",
        "jwt_doc_principal": _ref(f"f{numero}"),
    }


def _pdf(marker: str) -> bytes:
    return b"%PDF-1.4\n" + marker.encode() + b"\n" + b"0" * 6000


class StubClient:
    """Portal client double; each download can advance a fake clock."""

    def __init__(self, clock: Optional["FakeClock"] = None, step: float = 0.0) -> None:
        self.clock = clock
        self.step = step
        self.downloads: list[str] = []
        self.cuaderno_html: dict[str, Optional[str]] = {}
        self.receptor_html: Optional[str] = None
        self.fail_on: set[str] = set()

    def download_pdf(self, endpoint: str, param: str, credential: str) -> Optional[FetchedDocument]:
        self.downloads.append(credential)
        if self.clock is not None:
            self.clock.now += self.step
        if credential in self.fail_on:
            return None
        return FetchedDocument(data=_pdf(credential), content_type="application/pdf", url=endpoint)

    def fetch_cuaderno_html(self, credential: str, csrf_token: str, cookies: Any) -> Optional[str]:
        return self.cuaderno_html.get(credential)

    def fetch_receptor_html(self, credential: str, csrf_token: str, cookies: Any) -> Optional[str]:
        return self.receptor_html


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _run(package: CasePackage, client: StubClient, **kwargs: Any) -> tuple[Any, list[tuple[str, dict]]]:
    events: list[tuple[str, dict]] = []
    orchestrator = SyncOrchestrator(
        "user-1", package, client=client, emit=lambda e, d: events.append((e, d)), **kwargs
    )
    return orchestrator.run(), events


def test_clean_tramite_and_doc_type() -> None:
    assert clean_tramite("Resolución: (Provee) escrito nº 5") == "Resolución_Provee_escrito_n_5"
    assert len(clean_tramite("x" * 80)) == 30
    assert clean_tramite(None) == "doc"
    assert infer_doc_type("Sentencia definitiva") == "resolucion"
    assert infer_doc_type("Escrito de demanda") == "escrito"
    assert infer_doc_type("Actuación Receptor") == "actuacion"
    assert infer_doc_type("Cédula de notificación") == "notificacion"
    assert infer_doc_type("Otros") == "otro"


def test_two_folios_yield_two_tasks() -> None:
    package = CasePackage.from_dict({"rol": "C-1-2024", "folios": [_folio(1), _folio(2, "Escrito")]})

    tasks = build_download_tasks(package)

    assert len(tasks) == 2
    assert [t.folio for t in tasks] == [1, 2]
    assert tasks[0].filename == "C-1-2024_f1_Resolución.pdf"
    assert tasks[1].document_type == "escrito"
    assert {t.cuaderno for t in tasks} == {"Principal"}


def test_direct_documents_are_planned_first() -> None:
    package = CasePackage.from_dict(
        {
            "rol": "C-1-2024",
            "fecha_ingreso": "01/01/2024",
            "jwt_texto_demanda": _ref("demanda"),
            "jwt_certificado_envio": _ref("envio"),
            "jwt_ebook": _ref("ebook"),
            "cuadernos": [{"nombre": "Apremio", "jwt": "c1", "selected": True}],
            "folios": [dict(_folio(3), jwt_certificado_escrito=_ref("cert3"))],
        }
    )

    tasks = build_download_tasks(package)

    assert [t.filename for t in tasks] == [
        "C-1-2024_texto_demanda.pdf",
        "C-1-2024_certificado_envio.pdf",
        "C-1-2024_ebook.pdf",
        "C-1-2024_f3_Resolución.pdf",
        "C-1-2024_f3_cert_escrito.pdf",
    ]
    assert tasks[0].fecha == "01/01/2024"
    assert tasks[3].cuaderno == "Apremio"
    assert tasks[4].document_type == "actuacion"


def test_full_sync_stores_documents_and_dedups() -> None:
    package = CasePackage.from_dict(
        {
            "rol": "C-77-2024",
            "tribunal": "1º Juzgado Civil de Santiago",
            "caratula": "BANCO / PEREZ",
            "procedimiento": "ejecutivo",
            "folios": [_folio(1), _folio(2, "Escrito")],
            "tabs": {"litigantes": [{"rut": "1-9", "nombre": "PEREZ"}]},
        }
    )
    client = StubClient()

    result, events = _run(package, client)

    assert result is not None
    assert result.total_downloaded == 2
    assert result.documents_existing == 0
    assert result.tabs_stored is True
    assert result.receptor_stored is False
    assert events[-1][0] == "complete"
    assert events[-1][1]["total_downloaded"] == 2
    assert all(name == "progress" for name, _ in events[:-1])

    case = db.get_case(result.case_id)
    assert case["document_count"] == 2
    assert json.loads(case["tabs_data"]) == {"litigantes": [{"rut": "1-9", "nombre": "PEREZ"}]}
    for doc in result.documents_new:
        assert storage.exists(doc.storage_path)
        row = db.get_document(doc.document_id)
        assert row["source"] == "sync"
        assert row["case_id"] == result.case_id

    again, _ = _run(package, StubClient())
    assert again.case_id == result.case_id
    assert again.total_downloaded == 0
    assert again.documents_existing == 2


def test_failed_download_is_counted_not_fatal() -> None:
    package = CasePackage.from_dict({"rol": "C-2-2024", "folios": [_folio(1), _folio(2)]})
    client = StubClient()
    client.fail_on.add(f"{JWT}-f1")

    result, events = _run(package, client)

    assert result.documents_failed == 1
    assert result.total_downloaded == 1
    assert events[-1][0] == "complete"


def test_timeout_after_three_of_ten_still_completes() -> None:
    clock = FakeClock()
    package = CasePackage.from_dict({"rol": "C-3-2024", "folios": [_folio(n) for n in range(1, 11)]})
    client = StubClient(clock=clock, step=101.0)

    result, events = _run(package, client, clock=clock, timeout_seconds=300)

    assert len(client.downloads) == 3
    assert result.total_downloaded == 3
    assert SYNC_TIMEOUT_MESSAGE in result.errors
    assert events[-1][0] == "complete"
    assert SYNC_TIMEOUT_MESSAGE in events[-1][1]["errors"]
    assert any(d.get("message") == "Timeout reached. Stopping sync." for _, d in events)


def test_other_cuadernos_are_fetched_and_planned() -> None:
    from tests.test_portal_parser import CUADERNO_HTML

    package = CasePackage.from_dict(
        {
            "rol": "C-4-2024",
            "csrf_token": "csrf",
            "cuadernos": [
                {"nombre": "Principal", "jwt": "c-main", "selected": True},
                {"nombre": "Apremio", "jwt": "c-apremio"},
                {"nombre": "Tercería", "jwt": "c-missing"},
            ],
            "folios": [_folio(1)],
        }
    )
    client = StubClient()
    client.cuaderno_html["c-apremio"] = CUADERNO_HTML

    result, events = _run(package, client)

    # one visible folio, then three parsed folios (one with a certificate)
    assert len(client.downloads) == 1 + 4
    sub_progress = [d for _, d in events if "sub_total" in d]
    assert sub_progress[0]["sub_total"] == 2
    cuadernos = {doc.cuaderno for doc in result.documents_new}
    assert cuadernos == {"Principal", "Apremio"}


def test_receptor_data_is_stored() -> None:
    from tests.test_portal_parser import RECEPTOR_HTML

    package = CasePackage.from_dict(
        {"rol": "C-5-2024", "jwt_receptor": "rec", "csrf_token": "t", "folios": [_folio(1)]}
    )
    client = StubClient()
    client.receptor_html = RECEPTOR_HTML

    result, _ = _run(package, client)

    assert result.receptor_stored is True
    stored = json.loads(db.get_case(result.case_id)["receptor_data"])
    assert stored["receptor_nombre"] == "Juan Pérez Soto"


def test_case_update_keeps_existing_row_and_fills_metadata() -> None:
    first = CasePackage.from_dict({"rol": "C-6-2024", "tribunal": "T1", "folios": [_folio(1)]})
    second = CasePackage.from_dict(
        {"rol": "C-6-2024", "tribunal": "T1", "caratula": "A / B", "materia": "Cobro", "folios": [_folio(1)]}
    )

    case_a = sync.upsert_case_for_sync("user-1", first)
    case_b = sync.upsert_case_for_sync("user-1", second)
    case_other_court = sync.upsert_case_for_sync(
        "user-1", CasePackage.from_dict({"rol": "C-6-2024", "tribunal": "T2"})
    )

    assert case_a == case_b
    assert case_other_court != case_a
    row = db.get_case(case_a)
    assert row["caratula"] == "A / B"
    assert row["materia"] == "Cobro"


def test_fatal_error_emits_error_event(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(*args: Any, **kwargs: Any) -> None:
        raise RuntimeError("database locked")

    monkeypatch.setattr(sync.db, "refresh_case_stats", _boom)
    package = CasePackage.from_dict({"rol": "C-7-2024", "folios": [_folio(1)]})

    result, events = _run(package, StubClient())

    assert result is None
    assert events[-1] == ("error", {"message": "database locked"})


def test_stored_object_is_removed_when_document_insert_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    stored: list[str] = []
    real_store_bytes = storage.store_bytes

    def _store(user_id: str, filename: str, data: Any) -> str:
        key = real_store_bytes(user_id, filename, data)
        stored.append(key)
        return key

    def _insert(**kwargs: Any) -> int:
        raise sqlite3.IntegrityError("UNIQUE constraint failed: documents.file_hash")

    monkeypatch.setattr(sync.storage, "store_bytes", _store)
    monkeypatch.setattr(sync.db, "insert_document", _insert)
    package = CasePackage.from_dict({"rol": "C-8-2024", "folios": [_folio(1)]})

    result, _ = _run(package, StubClient())

    assert result.documents_failed == 1
    assert len(stored) == 1
    assert storage.exists(stored[0]) is False


def test_pipeline_trigger_posts_each_new_document(monkeypatch: pytest.MonkeyPatch) -> None:
    posted: list[tuple[str, dict, dict]] = []

    class _Ok:
        ok = True
        status_code = 200

    def _fake_post(url: str, json: dict, headers: dict, timeout: float) -> _Ok:
        posted.append((url, json, headers))
        return _Ok()

    monkeypatch.setattr(config, "ENABLE_PIPELINE_TRIGGERS", True)
    monkeypatch.setattr(config, "PIPELINE_APP_URL", "https://app.example")
    monkeypatch.setattr(config, "PIPELINE_SECRET_KEY", "secret")
    monkeypatch.setattr(sync.requests, "post", _fake_post)

    thread = sync.trigger_pipeline([11, 12])
    assert thread is not None
    thread.join(timeout=5)

    assert [p[1] for p in posted] == [{"document_id": 11}, {"document_id": 12}]
    assert posted[0][0] == "https://app.example/api/pipeline/process-document"
    assert posted[0][2] == {"X-Pipeline-Key": "secret"}


def test_pipeline_trigger_disabled_without_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "ENABLE_PIPELINE_TRIGGERS", True)
    monkeypatch.setattr(config, "PIPELINE_SECRET_KEY", "")
    assert sync.trigger_pipeline([1]) is None
