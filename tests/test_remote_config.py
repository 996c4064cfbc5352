from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import requests

from app.legalbot import config
from app.legalbot.kv_store import JsonFileStore, MemoryStore
from app.legalbot.remote_config import (
    CONFIG_CACHE_KEY,
    CONFIG_CACHE_TS_KEY,
    DEFAULT_SCRAPER_CONFIG,
    ConfigProvider,
    merge_config,
    served_config,
)


class FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def json(self) -> Any:
        return self.payload


class FakeGet:
    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    def __call__(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(url)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_defaults_without_endpoint() -> None:
    provider = ConfigProvider(MemoryStore(), endpoint="")

    cfg = provider.get_config()

    assert cfg["version"] == "1.0.0-default"
    assert provider.last_source == "defaults"
    cfg["selectors"]["causaTable"].clear()
    assert DEFAULT_SCRAPER_CONFIG["selectors"]["causaTable"]


def test_remote_then_memory_then_cache() -> None:
    store = MemoryStore()
    clock = Clock()
    http_get = FakeGet(
        FakeResponse({"version": "2.0.0", "throttle": {"minDelayMs": 100}}),
        requests.ConnectionError("offline"),
    )
    provider = ConfigProvider(store, endpoint="https://cfg.example/config", ttl_seconds=60, http_get=http_get, clock=clock)

    cfg = provider.get_config()
    assert provider.last_source == "remote"
    assert cfg["version"] == "2.0.0"
    assert cfg["throttle"]["minDelayMs"] == 100
    assert cfg["throttle"]["maxDelayMs"] == config.THROTTLE_MAX_DELAY_MS
    assert store.get(CONFIG_CACHE_KEY) == {"version": "2.0.0", "throttle": {"minDelayMs": 100}}
    assert store.get(CONFIG_CACHE_TS_KEY) == 1_000.0

    clock.now += 30
    assert provider.get_config() is cfg
    assert provider.last_source == "memory"
    assert len(http_get.calls) == 1

    clock.now += 60
    cached = provider.get_config()
    assert provider.last_source == "cache"
    assert cached["version"] == "2.0.0"


def test_bad_remote_answers_fall_back() -> None:
    for outcome in (FakeResponse({"error": "down"}, status_code=503), FakeResponse(["not", "a", "dict"])):
        provider = ConfigProvider(MemoryStore(), endpoint="https://cfg.example", http_get=FakeGet(outcome))
        assert provider.get_config()["version"] == "1.0.0-default"
        assert provider.last_source == "defaults"


def test_force_refresh_refetches() -> None:
    http_get = FakeGet(FakeResponse({"version": "3"}), FakeResponse({"version": "4"}))
    provider = ConfigProvider(MemoryStore(), endpoint="https://cfg.example", http_get=http_get)

    assert provider.get_config()["version"] == "3"
    assert provider.force_refresh()["version"] == "4"


def test_merge_config_is_recursive_and_pure() -> None:
    base = {"a": {"b": 1, "c": 2}, "d": [1]}

    merged = merge_config(base, {"a": {"c": 3}, "d": [2]})

    assert merged == {"a": {"b": 1, "c": 3}, "d": [2]}
    assert base == {"a": {"b": 1, "c": 2}, "d": [1]}


def test_served_config_ignores_non_object_overlay() -> None:
    config.SCRAPER_CONFIG_FILE.write_text(json.dumps(["x"]), encoding="utf-8")
    assert served_config()["version"] == "1.0.0-default"

    config.SCRAPER_CONFIG_FILE.write_text("{broken", encoding="utf-8")
    assert served_config()["version"] == "1.0.0-default"


def test_json_file_store_persists(tmp_path: Path) -> None:
    path = tmp_path / "kv" / "store.json"
    store = JsonFileStore(path)

    store.set("hashes", ["a", "b"])
    store.set("ts", 12.5)
    store.remove("ts")
    store.remove("missing")

    reopened = JsonFileStore(path)
    assert reopened.get("hashes") == ["a", "b"]
    assert reopened.get("ts", "gone") == "gone"
    assert json.loads(path.read_text(encoding="utf-8")) == {"hashes": ["a", "b"]}
