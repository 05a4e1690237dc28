from __future__ import annotations

import asyncio
import weakref
from typing import Any, Dict, List

from flashflow.logging import get_logger

DEFAULT_MAX_TURNS = 10
MAX_TURNS_LIMIT = 20


def memory_key(flow_id: str, node_id: str, session_id: str) -> str:
    return f"memory:{flow_id}:{node_id}:{session_id}"


def _clamp_turns(max_turns: int) -> int:
    return min(MAX_TURNS_LIMIT, max(1, int(max_turns)))


class ConversationMemory:
    """Long-lived chat history for LLM nodes, scoped by flow, node and session.

    Writes are append-only; turns beyond ``max_turns`` (a user and an
    assistant message each) are trimmed oldest first.
    """

    def __init__(self, store: Any) -> None:
        self.store = store
        self.logger = get_logger(__name__)
        # entries vanish once no append holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def get_history(
        self,
        flow_id: str,
        node_id: str,
        session_id: str,
        max_turns: int = DEFAULT_MAX_TURNS,
    ) -> List[Dict[str, str]]:
        stored = await self.store.get(memory_key(flow_id, node_id, session_id)) or []
        messages = [
            {"role": m["role"], "content": m["content"]}
            for m in stored
            if isinstance(m, dict) and m.get("role") in ("user", "assistant") and isinstance(m.get("content"), str)
        ]
        return messages[-_clamp_turns(max_turns) * 2 :]

    async def append(
        self,
        flow_id: str,
        node_id: str,
        session_id: str,
        role: str,
        content: str,
        *,
        max_turns: int = DEFAULT_MAX_TURNS,
    ) -> None:
        if role not in ("user", "assistant"):
            raise ValueError(f"unsupported memory role {role!r}")
        key = memory_key(flow_id, node_id, session_id)
        lock = self._lock_for(key)
        async with lock:
            stored = await self.store.get(key) or []
            stored.append({"role": role, "content": content})
            limit = _clamp_turns(max_turns) * 2
            trimmed = len(stored) - limit
            if trimmed > 0:
                stored = stored[trimmed:]
                self.logger.debug("memory_trimmed", key=key, dropped=trimmed)
            await self.store.put(key, stored)

    async def clear(self, flow_id: str, node_id: str, session_id: str) -> None:
        await self.store.delete(memory_key(flow_id, node_id, session_id))
