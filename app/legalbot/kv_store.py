"""Key-value stores used by the client-side components.

The capture side only ever needs ``get``/``set``/``remove``; the in-memory
store backs tests and short-lived sessions, the JSON file store persists
between runs using the same atomic write as the rest of the data directory.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from .utils import load_json_file, save_json_file


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class JsonFileStore:
    """Key-value store persisted as a single JSON document."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        data = load_json_file(self.path, {})
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            save_json_file(self.path, data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                save_json_file(self.path, data)


__all__ = ["KeyValueStore", "MemoryStore", "JsonFileStore"]
