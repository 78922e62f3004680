from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from droidops.constants import DEFAULT_CONFIG, DEFAULT_STATE_PATH

STATE_VERSION = 1

LOGGER = logging.getLogger("droidops.storage")


def _default_state() -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "workflows": {},
        "config": dict(DEFAULT_CONFIG),
    }


class LocalJsonStorage:
    """Small key-value document persisted as one JSON file.

    Top-level collections map keys to plain JSON objects. Every write rewrites
    the whole document under an internal lock.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._state = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                state = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable state file %s: %s", self._path, exc)
            return _default_state()
        if not isinstance(state, dict):
            return _default_state()
        if not isinstance(state.get("workflows"), dict):
            state["workflows"] = {}
        config = state.get("config")
        if not isinstance(config, dict):
            state["config"] = dict(DEFAULT_CONFIG)
        else:
            for key, value in DEFAULT_CONFIG.items():
                config.setdefault(key, value)
        state.setdefault("version", STATE_VERSION)
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)
        os.replace(tmp_path, self._path)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._state.setdefault("config", dict(DEFAULT_CONFIG))
        return {key: config.get(key, default) for key, default in DEFAULT_CONFIG.items()}

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        with self._lock:
            config = self._state.setdefault("config", dict(DEFAULT_CONFIG))
            for key, value in changes.items():
                if key not in DEFAULT_CONFIG:
                    raise KeyError(f"Unknown config key '{key}'")
                if value is not None:
                    config[key] = value
            self._persist()
        return self.get_config()

    # -- Collections --------------------------------------------------------------
    def replace_collection(self, collection: str, items: Dict[str, Dict[str, Any]]) -> None:
        """Swap a whole collection in a single write."""
        with self._lock:
            self._state[collection] = dict(items)
            self._persist()

    def load_collection(self, collection: str) -> Dict[str, Any]:
        return dict(self._collection(collection))


_storage: Optional[LocalJsonStorage] = None


def resolve_state_path() -> Path:
    return Path(os.getenv("DROIDOPS_STATE_PATH", DEFAULT_STATE_PATH)).expanduser()


def get_storage() -> LocalJsonStorage:
    """Return the process-wide storage backed by ``DROIDOPS_STATE_PATH``."""
    global _storage
    if _storage is None:
        _storage = LocalJsonStorage(resolve_state_path())
    return _storage
