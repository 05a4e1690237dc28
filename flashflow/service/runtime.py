from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from flashflow.config import get_settings, reset_settings_cache
from flashflow.logging import get_logger
from flashflow.service.executors import build_executor_registry
from flashflow.service.image import ImageService
from flashflow.service.llm import build_llm_service
from flashflow.service.memory import ConversationMemory
from flashflow.service.rag import RAGService
from flashflow.service.sandbox import SandboxConfig
from flashflow.service.scheduler import WorkflowScheduler
from flashflow.service.tools import ToolService
from flashflow.storage.memory import MemoryStore
from flashflow.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def flow_key(flow_id: str) -> str:
    return f"flow:{flow_id}"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if self.settings.use_memory_store:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                persist=not self.settings.test_mode,
            )
        else:
            if not self.settings.redis_url:
                raise RuntimeError("REDIS_URL is required when USE_MEMORY_STORE is false")
            store = RedisStore(self.settings.redis_url)
            try:
                store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            self.store = store
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
        )

        self.llm = build_llm_service(self.settings)
        self.memory = ConversationMemory(self.store)
        self.tools = ToolService(
            settings=self.settings,
            sandbox_config=SandboxConfig(),
            tool_workers=self.settings.tool_workers,
        )
        self.rag = RAGService(self.store, fetcher=self.tools.fetcher)
        self.image = ImageService(
            api_url=self.settings.image_api_url,
            api_key=self.settings.image_api_key,
            default_model=self.settings.default_image_model,
        )
        self.executors = build_executor_registry(
            llm=self.llm,
            memory=self.memory,
            rag=self.rag,
            tools=self.tools,
            image=self.image,
        )
        self.scheduler = WorkflowScheduler(
            self.executors,
            node_timeout_seconds=self.settings.node_timeout_seconds,
        )

        logger.info(
            "runtime_initialized",
            llm_backend=self.llm.backend.mode,
            model=self.settings.default_llm_model,
            image_configured=bool(self.settings.image_api_url),
            search_configured=bool(self.settings.tavily_api_key),
            node_timeout_seconds=self.settings.node_timeout_seconds,
        )

    async def save_flow(self, flow_id: str, workflow: Dict[str, Any]) -> None:
        await self.store.put(flow_key(flow_id), workflow)

    async def load_flow(self, flow_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(flow_key(flow_id))

    async def close(self) -> None:
        self.tools.shutdown(wait=False)
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.tools.shutdown(wait=False)
            if isinstance(runtime.store, RedisStore):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(runtime.store.close())
                else:
                    loop.create_task(runtime.store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
