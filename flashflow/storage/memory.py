from __future__ import annotations

import copy
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from flashflow.logging import get_logger


class KeyValueStore(Protocol):
    """Persistence boundary: JSON-serializable values addressed by string keys."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def put(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process key/value store, optionally persisted to a JSON state file."""

    def __init__(self, fs_root: str | None = None, *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self._data: Dict[str, Any] = {}
        # RLock so persistence can run while a write holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist and fs_root is not None
        self.fs_root = Path(fs_root) if fs_root else None
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info("memory_store_loaded", keys=len(self._data))

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "kv_store.json"

    def _persist_state(self) -> None:
        if not self.persist:
            return
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps({"version": 1, "data": self._data}, ensure_ascii=False))
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self._data = dict(data.get("data", {}))
        return True

    async def get(self, key: str) -> Optional[Any]:
        with self._data_lock:
            value = self._data.get(key)
            return copy.deepcopy(value)

    async def put(self, key: str, value: Any) -> None:
        with self._data_lock:
            self._data[key] = copy.deepcopy(value)
            self._persist_state()

    async def delete(self, key: str) -> None:
        with self._data_lock:
            if self._data.pop(key, None) is not None:
                self._persist_state()

    def keys(self, prefix: str = "") -> List[str]:
        with self._data_lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    async def close(self) -> None:
        return None
