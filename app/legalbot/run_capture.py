"""Operator-driven capture session in a headed Chromium window.

The operator logs into the portal and opens a case; on Enter the detected
case is printed and, once confirmed, the package is synced and the visible
documents are collected and uploaded.
"""
from __future__ import annotations

import argparse
import json
from typing import Any, Callable, Optional

from playwright.sync_api import sync_playwright

from . import config
from .capture import CaptureOrchestrator
from .channel import Envelope, MessageChannel
from .config_validation import validate_runtime_config
from .host import PlaywrightHost
from .logging_utils import _scraper_event
from .sync_client import SYNC_PROGRESS, BackgroundRelay
from .utils import ensure_dirs, log_line


def _log_progress(envelope: Envelope) -> None:
    if envelope.kind == SYNC_PROGRESS:
        log_line(f"[SYNC] {envelope.payload.get('message', '')}")


def run_capture_session(
    start_url: str,
    *,
    headless: bool = False,
    collect: bool = True,
    prompt: Callable[[str], str] = input,
) -> dict[str, Any]:
    ensure_dirs()
    validate_runtime_config("capture")
    outcome: dict[str, Any] = {"sync": None, "collect": None}

    with sync_playwright() as p:
        browser = p.chromium.launch(headless=headless)
        context = browser.new_context(user_agent=config.COMMON_HEADERS["User-Agent"])
        page = context.new_page()
        try:
            channel = MessageChannel()
            BackgroundRelay(channel)
            channel.subscribe(_log_progress)

            host = PlaywrightHost(page)
            orchestrator = CaptureOrchestrator(
                host, channel, store=host.store, session_store=host.session_store
            )
            orchestrator.on("status", lambda data: log_line(f"[CAPTURE] {data.get('message')}"))
            page.goto(start_url, wait_until="domcontentloaded")
            if not orchestrator.initialize():
                return outcome

            prompt("Open the case in the browser, then press Enter to detect it... ")
            detected = orchestrator.detect_case()
            if not detected:
                log_line("[CAPTURE] No case detected on this page.")
                return outcome
            log_line(f"[CAPTURE] Detected: {json.dumps(detected, ensure_ascii=False)}")
            if prompt("Sync this case? [y/N] ").strip().lower() not in {"y", "yes", "s", "si"}:
                return outcome
            orchestrator.confirm_case()

            outcome["sync"] = orchestrator.sync()
            if collect:
                outcome["collect"] = orchestrator.collect_documents()
                if orchestrator.pending_confirmation and prompt(
                    f"{len(orchestrator.pending_confirmation)} very large file(s) pending. Upload? [y/N] "
                ).strip().lower() in {"y", "yes", "s", "si"}:
                    outcome["collect"]["confirmed"] = orchestrator.confirm_pending_uploads()
        finally:
            context.close()
            browser.close()

    _scraper_event("capture", phase="session_done", synced=bool(outcome["sync"]))
    return outcome


def _cli_entrypoint(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Capture a case from the judicial portal")
    parser.add_argument("--url", default=f"{config.PORTAL_BASE_URL}{config.PORTAL_REFERER_PATH}")
    parser.add_argument("--headless", action="store_true")
    parser.add_argument("--no-collect", action="store_true", help="Only sync the case package")
    args = parser.parse_args(argv)

    outcome = run_capture_session(args.url, headless=args.headless, collect=not args.no_collect)
    log_line(f"[CAPTURE] Result: {json.dumps(outcome, ensure_ascii=False, default=str)}")
    return 0 if outcome.get("sync") and "error" not in outcome["sync"] else 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(_cli_entrypoint())
