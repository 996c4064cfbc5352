from __future__ import annotations

import json
import os
import queue
import threading
from typing import Any, Generator, Optional

from flask import Flask, Response, jsonify, request

from app.legalbot import config, db, uploads
from app.legalbot.config_validation import validate_runtime_config
from app.legalbot.healthcheck import run_health_checks
from app.legalbot.logging_utils import _scraper_event
from app.legalbot.models import CasePackage
from app.legalbot.remote_config import served_config
from app.legalbot.sync import SyncOrchestrator
from app.legalbot.utils import ensure_dirs, log_line

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-change-me")
app.config["MAX_CONTENT_LENGTH"] = config.MAX_SINGLE_UPLOAD_BYTES + 1024 * 1024

# Initialise storage paths and SQLite schema on import so WSGI entrypoints
# also have the expected environment ready.
ensure_dirs()
db.initialize_schema()

TUS_VERSION = "1.0.0"
_STREAM_END = object()


def _authenticated_user() -> Optional[str]:
    """Return the user id for the request's Bearer token, if it is known."""

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return config.parse_api_tokens().get(token.strip())


def _unauthorized(context: str) -> tuple[Response, int]:
    _scraper_event(
        "error",
        phase="auth",
        context=context,
        error="unauthorized",
        remote_addr=request.remote_addr,
    )
    return jsonify({"error": "Unauthorized"}), 401


def _rejected(exc: uploads.UploadRejected) -> tuple[Response, int]:
    return jsonify({"error": str(exc), **exc.extra}), exc.status


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _tus_headers(response: Response) -> Response:
    response.headers["Tus-Resumable"] = TUS_VERSION
    response.headers["Cache-Control"] = "no-store"
    return response


@app.get("/api/scraper/config")
def api_scraper_config() -> Response:
    return jsonify(served_config())


@app.post("/api/scraper/sync")
def api_scraper_sync() -> Response:
    """Run a case sync and stream its progress as Server-Sent Events.

    The pipeline runs in a worker thread that feeds a queue; if the client
    goes away the generator stops but the worker finishes the sync.
    """

    user_id = _authenticated_user()
    if user_id is None:
        return _unauthorized("sync")

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"error": "Invalid JSON body"}), 400
    if not str(body.get("rol") or "").strip():
        return jsonify({"error": "Missing required field: rol"}), 400

    package = CasePackage.from_dict(body)
    if not package.has_credentials():
        return jsonify({"error": "The package carries no download credentials"}), 400

    _scraper_event(
        "sync",
        phase="request",
        user=user_id,
        rol=package.rol,
        tribunal=package.tribunal or None,
        folios=len(package.folios),
    )

    events: "queue.Queue[Any]" = queue.Queue()

    def _emit(event: str, data: dict[str, Any]) -> None:
        events.put((event, data))

    def _run() -> None:
        try:
            SyncOrchestrator(user_id, package, emit=_emit).run()
        except Exception as exc:  # noqa: BLE001
            log_line(f"[SYNC] Worker crashed: {exc!r}")
            events.put(("error", {"message": str(exc) or "Internal server error"}))
        finally:
            events.put(_STREAM_END)

    threading.Thread(target=_run, name=f"sync-{package.rol}", daemon=True).start()

    def _stream() -> Generator[str, None, None]:
        while True:
            item = events.get()
            if item is _STREAM_END:
                return
            event, data = item
            yield _sse(event, data)

    response = Response(_stream(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.post("/api/upload")
def api_upload() -> Response:
    user_id = _authenticated_user()
    if user_id is None:
        return _unauthorized("upload")

    upload = request.files.get("file")
    if upload is None:
        return jsonify({"error": "No file provided"}), 400

    try:
        payload = uploads.ingest_upload(
            user_id,
            upload.filename or "document.pdf",
            upload.mimetype or "",
            upload.read(),
            request.form,
        )
    except uploads.UploadRejected as exc:
        _scraper_event("upload", phase="rejected", user=user_id, error=str(exc), status=exc.status)
        return _rejected(exc)

    return jsonify(payload)


@app.post("/api/upload/confirm-hash")
def api_upload_confirm_hash() -> Response:
    user_id = _authenticated_user()
    if user_id is None:
        return _unauthorized("confirm_hash")

    body = request.get_json(silent=True) or {}
    try:
        payload = uploads.confirm_hash(
            user_id,
            str(body.get("storagePath") or ""),
            body.get("partialHash"),
            body.get("rol"),
        )
    except uploads.UploadRejected as exc:
        return _rejected(exc)
    return jsonify(payload)


@app.route("/api/upload/resumable", methods=["OPTIONS"])
def api_resumable_options() -> Response:
    response = Response(status=204)
    response.headers["Tus-Version"] = TUS_VERSION
    response.headers["Tus-Extension"] = "creation"
    response.headers["Tus-Max-Size"] = str(config.TIER_TOMO_MAX_BYTES)
    return _tus_headers(response)


@app.post("/api/upload/resumable")
def api_resumable_create() -> Response:
    user_id = _authenticated_user()
    if user_id is None:
        return _unauthorized("resumable")

    try:
        session_id = uploads.create_resumable_session(
            user_id,
            request.headers.get("Upload-Length"),
            request.headers.get("Upload-Metadata"),
        )
    except uploads.UploadRejected as exc:
        return _rejected(exc)

    response = Response(status=201)
    response.headers["Location"] = f"{request.base_url.rstrip('/')}/{session_id}"
    return _tus_headers(response)


@app.route("/api/upload/resumable/<session_id>", methods=["HEAD"])
def api_resumable_head(session_id: str) -> Response:
    user_id = _authenticated_user()
    if user_id is None:
        return _tus_headers(Response(status=401))

    try:
        status = uploads.resumable_status(user_id, session_id)
    except uploads.UploadRejected as exc:
        return _tus_headers(Response(status=exc.status))

    response = Response(status=200)
    response.headers["Upload-Offset"] = str(status["offset"])
    response.headers["Upload-Length"] = str(status["length"])
    return _tus_headers(response)


@app.patch("/api/upload/resumable/<session_id>")
def api_resumable_patch(session_id: str) -> Response:
    user_id = _authenticated_user()
    if user_id is None:
        return _unauthorized("resumable")

    if request.headers.get("Content-Type", "").split(";")[0].strip() != "application/offset+octet-stream":
        return jsonify({"error": "Content-Type must be application/offset+octet-stream"}), 415

    try:
        result = uploads.append_resumable_chunk(
            user_id,
            session_id,
            request.headers.get("Upload-Offset"),
            request.get_data(cache=False),
        )
    except uploads.UploadRejected as exc:
        response, status = _rejected(exc)
        if "offset" in exc.extra:
            response.headers["Upload-Offset"] = str(exc.extra["offset"])
        return _tus_headers(response), status

    response = Response(status=204)
    response.headers["Upload-Offset"] = str(result["offset"])
    if result.get("storage_path"):
        response.headers["Upload-Storage-Path"] = result["storage_path"]
    if result.get("status") == "duplicate":
        response.headers["Upload-Duplicate"] = "1"
    return _tus_headers(response)


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, and DB."""

    result = run_health_checks(entrypoint="api")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


try:
    validate_runtime_config("api")
except ValueError as exc:
    log_line(f"[CONFIG] Starting with invalid configuration: {exc}")
