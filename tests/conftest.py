from __future__ import annotations

from pathlib import Path

import pytest

from app.legalbot import config, db


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "STORAGE_DIR", data_dir / "documents")
    monkeypatch.setattr(config, "UPLOAD_TMP_DIR", data_dir / "uploads_tmp")
    monkeypatch.setattr(config, "KV_STORE_FILE", data_dir / "kv_store.json")
    monkeypatch.setattr(config, "SCRAPER_CONFIG_FILE", data_dir / "scraper_config.json")
    monkeypatch.setattr(config, "DB_PATH", data_dir / "legalbot.db")
    monkeypatch.setattr(config, "MIN_FREE_MB", 0)
    monkeypatch.setattr(config, "ENABLE_PIPELINE_TRIGGERS", False)
    return data_dir


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Every test gets its own data directory and database."""

    path = _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    return path
