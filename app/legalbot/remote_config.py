"""Scraper configuration with a four level fallback cascade.

Selectors and heuristics live on the server so a markup change on the
portal can be answered by updating one JSON document. The provider tries, in
order: the in-memory copy while it is fresh, the remote endpoint, the last
persisted copy regardless of age, and finally the built-in defaults below.
"""
from __future__ import annotations

import copy
import time
from typing import Any, Callable, Optional

import requests

from . import config
from .kv_store import KeyValueStore, MemoryStore
from .logging_utils import _scraper_event
from .utils import load_json_file

CONFIG_CACHE_KEY = "legalbot_scraper_config"
CONFIG_CACHE_TS_KEY = "legalbot_scraper_config_ts"

DEFAULT_SCRAPER_CONFIG: dict[str, Any] = {
    "version": "1.0.0-default",
    "selectors": {
        "causaTable": [
            "#gridDatos",
            ".tabla-causas",
            "table.dataTable",
            "#tblDatos",
            "table.table-striped",
            'table[summary*="causa"]',
            "table",
        ],
        "downloadLink": [
            'a[href*=".pdf"]',
            'a[onclick*="download"]',
            'a[onclick*="descarga"]',
            'a[onclick*="Descarga"]',
            'a[onclick*="verDocumento"]',
            'a[onclick*="abrirDocumento"]',
            ".btn-descarga",
            "a.descarga",
            'a[title*="Descargar"]',
            'a[title*="Ver documento"]',
            'button[onclick*="download"]',
        ],
        "documentRow": ["tr.causa-row", "tr[data-id]", "tbody tr"],
        "rolField": [
            "#rolCausa",
            "#txtRol",
            ".rol-causa",
            'input[name="rol"]',
            'input[name*="Rol"]',
        ],
        "searchButton": [
            "#btnBuscar",
            "#btnConsulta",
            "#btnBuscarCausa",
            'input[type="submit"]',
            'button[type="submit"]',
        ],
    },
    "pdfUrlPatterns": [
        r"\.pdf",
        "download",
        "documento",
        "escrito",
        "resoluc",
        "getDocumento",
        "obtenerArchivo",
        "visorDocumento",
    ],
    "pdfContentTypes": ["application/pdf", "application/octet-stream", "application/x-pdf"],
    "heuristics": {
        "downloadKeywords": [
            "descargar",
            "download",
            "pdf",
            "documento",
            "escrito",
            "resolución",
            "auto",
            "sentencia",
            "ver",
            "abrir",
            "expediente",
            "notificación",
            "actuación",
        ],
        "tableKeywords": [
            "ROL",
            "Causa",
            "Carátula",
            "Tribunal",
            "Fecha",
            "Tipo",
            "Estado",
            "Documento",
            "Cuaderno",
            "Folio",
        ],
        "iconSelectors": [
            ".fa-download",
            ".fa-file-pdf",
            ".fa-file-pdf-o",
            '[class*="download"]',
            '[class*="pdf"]',
            'img[src*="pdf"]',
            'img[src*="download"]',
            'img[alt*="descargar"]',
            'img[alt*="PDF"]',
        ],
        "minConfidenceThreshold": 0.35,
    },
    "throttle": {
        "minDelayMs": config.THROTTLE_MIN_DELAY_MS,
        "maxDelayMs": config.THROTTLE_MAX_DELAY_MS,
        "maxConcurrent": config.THROTTLE_MAX_CONCURRENT,
        "burstLimit": config.THROTTLE_BURST_LIMIT,
        "burstWindowMs": config.THROTTLE_BURST_WINDOW_MS,
        "sessionCooldownMs": config.THROTTLE_SESSION_COOLDOWN_MS,
    },
    "relevantUrlPatterns": [r"pjud\.cl", r"oficinavirtual.*poder.*judicial", r"consultaunificada"],
}


def default_config() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_SCRAPER_CONFIG)


def merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay ``override`` on ``base``; nested dicts merge per key."""

    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def served_config() -> dict[str, Any]:
    """Return the config the API serves: defaults plus the optional overlay file."""

    overlay = load_json_file(config.SCRAPER_CONFIG_FILE, {})
    if not isinstance(overlay, dict):
        return default_config()
    return merge_config(default_config(), overlay)


class ConfigProvider:
    """Supplies the scraper config. ``get_config`` never raises."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        endpoint: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        http_get: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: KeyValueStore = store if store is not None else MemoryStore()
        self.endpoint = config.REMOTE_CONFIG_URL if endpoint is None else endpoint
        self.ttl_seconds = (
            config.REMOTE_CONFIG_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )
        self.timeout_seconds = (
            config.REMOTE_CONFIG_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self._http_get = http_get or requests.get
        self._clock = clock
        self._config: Optional[dict[str, Any]] = None
        self._last_fetch: float = 0.0
        self.last_source: Optional[str] = None

    def get_config(self) -> dict[str, Any]:
        now = self._clock()
        if self._config is not None and (now - self._last_fetch) < self.ttl_seconds:
            self.last_source = "memory"
            return self._config

        remote = self._fetch_remote()
        if remote is not None:
            self._config = merge_config(DEFAULT_SCRAPER_CONFIG, remote)
            self._last_fetch = now
            self._save_to_cache(remote, now)
            self.last_source = "remote"
            _scraper_event("config", phase="load", source="remote", version=self._config.get("version"))
            return self._config

        cached = self._load_from_cache()
        if cached is not None:
            self._config = merge_config(DEFAULT_SCRAPER_CONFIG, cached)
            self.last_source = "cache"
            _scraper_event("config", phase="load", source="cache", version=self._config.get("version"))
            return self._config

        self._config = default_config()
        self.last_source = "defaults"
        _scraper_event("config", phase="load", source="defaults", version=self._config.get("version"))
        return self._config

    def force_refresh(self) -> dict[str, Any]:
        self._config = None
        self._last_fetch = 0.0
        return self.get_config()

    def _fetch_remote(self) -> Optional[dict[str, Any]]:
        if not self.endpoint:
            return None
        try:
            response = self._http_get(
                self.endpoint,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
            status = getattr(response, "status_code", None)
            if status is None or int(status) >= 400:
                _scraper_event("config", phase="remote_fetch", ok=False, http_status=status)
                return None
            payload = response.json()
        except Exception as exc:  # noqa: BLE001
            _scraper_event("config", phase="remote_fetch", ok=False, error=repr(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    def _save_to_cache(self, payload: dict[str, Any], fetched_at: float) -> None:
        try:
            self.store.set(CONFIG_CACHE_KEY, payload)
            self.store.set(CONFIG_CACHE_TS_KEY, fetched_at)
        except Exception as exc:  # noqa: BLE001
            _scraper_event("config", phase="cache_write", ok=False, error=repr(exc))

    def _load_from_cache(self) -> Optional[dict[str, Any]]:
        try:
            cached = self.store.get(CONFIG_CACHE_KEY)
            fetched_at = self.store.get(CONFIG_CACHE_TS_KEY) or 0
        except Exception as exc:  # noqa: BLE001
            _scraper_event("config", phase="cache_read", ok=False, error=repr(exc))
            return None
        if not isinstance(cached, dict):
            return None
        try:
            self._last_fetch = float(fetched_at)
        except (TypeError, ValueError):
            self._last_fetch = 0.0
        return cached


__all__ = [
    "CONFIG_CACHE_KEY",
    "CONFIG_CACHE_TS_KEY",
    "ConfigProvider",
    "DEFAULT_SCRAPER_CONFIG",
    "default_config",
    "merge_config",
    "served_config",
]
