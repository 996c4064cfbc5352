"""Configuration constants for the legalbot capture and sync service."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("LEGALBOT_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
STORAGE_DIR: Path = DATA_DIR / "documents"
UPLOAD_TMP_DIR: Path = DATA_DIR / "uploads_tmp"
KV_STORE_FILE: Path = DATA_DIR / "kv_store.json"
DB_PATH: Path = DATA_DIR / "legalbot.db"
# Optional JSON overlay for the scraper config served at /api/scraper/config.
SCRAPER_CONFIG_FILE: Path = DATA_DIR / "scraper_config.json"

# Remote portal
PORTAL_BASE_URL: str = os.getenv(
    "LEGALBOT_PORTAL_BASE_URL", "https://oficinajudicialvirtual.pjud.cl"
).rstrip("/")
PORTAL_REFERER_PATH: str = "/indexN.php"
CUADERNO_ENDPOINT: str = "/ADIR_871/civil/modal/causaCivil.php"
RECEPTOR_ENDPOINT: str = "/ADIR_871/civil/modal/receptorCivil.php"
DEFAULT_DOCUMENT_PARAM: str = "dtaDoc"

PORTAL_MIN_DELAY_MS: int = int(os.getenv("LEGALBOT_PORTAL_MIN_DELAY_MS", "500"))
PORTAL_MAX_DELAY_MS: int = int(os.getenv("LEGALBOT_PORTAL_MAX_DELAY_MS", "1000"))


def _parse_timeout_seconds(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Per-request timeout for portal fetches.
PORTAL_REQUEST_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "LEGALBOT_PORTAL_TIMEOUT_SECONDS", 30
)
# Wall-clock budget for a single server-side sync.
SYNC_TIMEOUT_SECONDS: int = _parse_timeout_seconds("LEGALBOT_SYNC_TIMEOUT_SECONDS", 300)
# Remote scraper config fetch.
REMOTE_CONFIG_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "LEGALBOT_REMOTE_CONFIG_TIMEOUT_SECONDS", 5
)
REMOTE_CONFIG_TTL_SECONDS: int = _parse_timeout_seconds(
    "LEGALBOT_REMOTE_CONFIG_TTL_SECONDS", 30 * 60
)
# Single-shot upload and resumable transfer requests from the client side.
UPLOAD_TIMEOUT_SECONDS: int = _parse_timeout_seconds("LEGALBOT_UPLOAD_TIMEOUT_SECONDS", 120)
# How long a captured package stays available in the background relay.
PACKAGE_TTL_SECONDS: int = _parse_timeout_seconds("LEGALBOT_PACKAGE_TTL_SECONDS", 10 * 60)

# Size limits (bytes)
MIN_DOCUMENT_BYTES: int = 5 * 1024
MAX_SINGLE_UPLOAD_BYTES: int = int(
    os.getenv("LEGALBOT_MAX_SINGLE_UPLOAD_BYTES", str(50 * 1024 * 1024))
)
TIER_STANDARD_MAX_BYTES: int = 50 * 1024 * 1024
TIER_LARGE_MAX_BYTES: int = 500 * 1024 * 1024
TIER_TOMO_MAX_BYTES: int = 5 * 1024 * 1024 * 1024
PARTIAL_HASH_SAMPLE_BYTES: int = 1024 * 1024
RESUMABLE_CHUNK_BYTES: int = 6 * 1024 * 1024
# Rough uplink speed used for transfer time estimates (10 Mbit/s).
ASSUMED_UPLOAD_BYTES_PER_SECOND: int = int(
    os.getenv("LEGALBOT_ASSUMED_UPLOAD_BPS", str(1_250_000))
)

# Client-side capture
MAX_DOM_CANDIDATES: int = int(os.getenv("LEGALBOT_MAX_DOM_CANDIDATES", "30"))
CAPTURE_WAIT_SECONDS: float = float(os.getenv("LEGALBOT_CAPTURE_WAIT_SECONDS", "10"))
ROW_CLICK_MAX_AGE_SECONDS: int = 5 * 60
CONFIRMED_CACHE_MAX_AGE_SECONDS: int = 5 * 60

# Throttle defaults (overridden by the served scraper config)
THROTTLE_MIN_DELAY_MS: int = int(os.getenv("LEGALBOT_THROTTLE_MIN_DELAY_MS", "2500"))
THROTTLE_MAX_DELAY_MS: int = int(os.getenv("LEGALBOT_THROTTLE_MAX_DELAY_MS", "7000"))
THROTTLE_MAX_CONCURRENT: int = int(os.getenv("LEGALBOT_THROTTLE_MAX_CONCURRENT", "1"))
THROTTLE_BURST_LIMIT: int = int(os.getenv("LEGALBOT_THROTTLE_BURST_LIMIT", "5"))
THROTTLE_BURST_WINDOW_MS: int = int(os.getenv("LEGALBOT_THROTTLE_BURST_WINDOW_MS", "60000"))
THROTTLE_SESSION_COOLDOWN_MS: int = int(
    os.getenv("LEGALBOT_THROTTLE_SESSION_COOLDOWN_MS", "3000")
)

# Remote config + API endpoints used by the client side
API_BASE_URL: str = os.getenv("LEGALBOT_API_BASE_URL", "").rstrip("/")
API_TOKEN: str = os.getenv("LEGALBOT_API_TOKEN", "")
REMOTE_CONFIG_URL: str = os.getenv(
    "LEGALBOT_REMOTE_CONFIG_URL",
    f"{API_BASE_URL}/api/scraper/config" if API_BASE_URL else "",
)
RESUMABLE_ENDPOINT: str = os.getenv(
    "LEGALBOT_RESUMABLE_ENDPOINT",
    f"{API_BASE_URL}/api/upload/resumable" if API_BASE_URL else "",
)
STORAGE_BUCKET: str = os.getenv("LEGALBOT_STORAGE_BUCKET", "case-files")

# Server-side
# Comma separated ``token:user_id`` pairs accepted as Bearer credentials.
API_TOKENS_RAW: str = os.getenv("LEGALBOT_API_TOKENS", "")
PIPELINE_APP_URL: str = os.getenv("LEGALBOT_APP_URL", "").rstrip("/")
PIPELINE_SECRET_KEY: str = os.getenv("PIPELINE_SECRET_KEY", "")
MIN_FREE_MB: int = int(os.getenv("MIN_FREE_MB", "400"))

ENABLE_PIPELINE_TRIGGERS: bool = os.getenv(
    "LEGALBOT_ENABLE_PIPELINE_TRIGGERS", "1"
).strip().lower() not in {"0", "false"}

COMMON_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "*/*",
    "Accept-Language": "es-CL,es;q=0.9,en;q=0.8",
}


def parse_api_tokens(raw: str | None = None) -> dict[str, str]:
    """Return the ``token -> user_id`` mapping accepted by the API."""

    source = API_TOKENS_RAW if raw is None else raw
    tokens: dict[str, str] = {}
    for chunk in source.split(","):
        token, sep, user_id = chunk.strip().partition(":")
        if not sep or not token.strip() or not user_id.strip():
            continue
        tokens[token.strip()] = user_id.strip()
    return tokens


def pipeline_triggers_enabled() -> bool:
    """Return ``True`` when downstream processing triggers should be fired."""

    return bool(ENABLE_PIPELINE_TRIGGERS and PIPELINE_APP_URL and PIPELINE_SECRET_KEY)

