from __future__ import annotations

from typing import Any

from .utils import log_line

# Field names whose values are credentials; only their presence is logged.
SECRET_FIELD_MARKERS = ("jwt", "token", "cookie", "secret", "authorization", "password")
MAX_VALUE_CHARS = 200


def _render(key: str, value: Any) -> str:
    lowered = key.lower()
    if value and not lowered.startswith("has_") and any(m in lowered for m in SECRET_FIELD_MARKERS):
        return f"{key}='<redacted>'"
    text = repr(value)
    if len(text) > MAX_VALUE_CHARS:
        text = text[: MAX_VALUE_CHARS - 3] + "..."
    return f"{key}={text}"


def _scraper_event(label: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Emit one ``[SCRAPER][LABEL] k=v, ...`` line with keys sorted.

    With only ``phase`` given it becomes the label; with both, ``phase`` is
    added to the fields. Credential-looking fields are masked and long values
    are cut so a case package can be logged without leaking its JWTs.
    """

    try:
        phase_label = label or (phase or "")
        if phase and label:
            fields.setdefault("phase", phase)
        payload = ", ".join(_render(k, v) for k, v in sorted(fields.items()))
        log_line(f"[SCRAPER][{phase_label.upper()}] {payload}")
    except Exception:
        return


__all__ = ["MAX_VALUE_CHARS", "SECRET_FIELD_MARKERS", "_scraper_event"]
