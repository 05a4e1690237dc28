from __future__ import annotations

import json
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from flashflow.config import LLMBackendMode, Settings
from flashflow.logging import get_logger
from flashflow.service.errors import ServerError, StreamReadError

logger = get_logger(__name__)


@dataclass
class ChatDelta:
    """One streamed increment of a chat completion."""

    content: str = ""
    reasoning: str = ""


class ChatBackend(Protocol):
    """Interface for pluggable chat completion backends."""

    mode: str

    def stream(
        self,
        messages: List[dict],
        *,
        model: str,
        temperature: float,
        response_format: Optional[str] = None,
    ) -> AsyncIterator[ChatDelta]: ...


class OpenAIChatBackend:
    """Streams OpenAI-compatible ``chat/completions``."""

    mode = "openai"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        if client is None and not api_key:
            raise ServerError("LLM_API_KEY is required for the openai backend")
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def stream(
        self,
        messages: List[dict],
        *,
        model: str,
        temperature: float,
        response_format: Optional[str] = None,
    ) -> AsyncIterator[ChatDelta]:
        kwargs: dict = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "stream": True,
        }
        if response_format == "json_object":
            kwargs["response_format"] = {"type": "json_object"}
        try:
            stream = await self.client.chat.completions.create(**kwargs)
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = choices[0].delta
                content = getattr(delta, "content", None) or ""
                # reasoning models expose their thinking separately
                reasoning = getattr(delta, "reasoning_content", None) or ""
                if content or reasoning:
                    yield ChatDelta(content=content, reasoning=reasoning)
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.warning("llm_stream_failed", model=model, error=str(exc))
            raise StreamReadError(str(exc)) from exc


class EchoChatBackend:
    """Deterministic offline backend used for local runs and tests."""

    mode = "echo"

    def __init__(self, chunk_size: int = 16) -> None:
        self.chunk_size = chunk_size

    async def stream(
        self,
        messages: List[dict],
        *,
        model: str,
        temperature: float,
        response_format: Optional[str] = None,
    ) -> AsyncIterator[ChatDelta]:
        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        text = (
            json.dumps({"echo": last_user}, ensure_ascii=False)
            if response_format == "json_object"
            else last_user
        )
        for start in range(0, len(text), self.chunk_size):
            yield ChatDelta(content=text[start : start + self.chunk_size])


class LLMService:
    """LLM executor that delegates to a pluggable chat backend."""

    def __init__(
        self,
        *,
        default_model: str,
        default_temperature: float = 0.7,
        backend: ChatBackend,
    ) -> None:
        self.default_model = default_model
        self.default_temperature = default_temperature
        self.backend = backend

    def stream(
        self,
        messages: List[dict],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        response_format: Optional[str] = None,
    ) -> AsyncIterator[ChatDelta]:
        return self.backend.stream(
            messages,
            model=model or self.default_model,
            temperature=self.default_temperature if temperature is None else temperature,
            response_format=response_format,
        )


def build_llm_service(settings: Settings) -> LLMService:
    if settings.llm_backend == LLMBackendMode.ECHO:
        backend: ChatBackend = EchoChatBackend()
    elif not settings.llm_api_key:
        logger.warning("llm_api_key_missing", fallback="echo")
        backend = EchoChatBackend()
    else:
        backend = OpenAIChatBackend(api_key=settings.llm_api_key, base_url=settings.llm_base_url)
    logger.info("llm_backend_selected", mode=backend.mode, model=settings.default_llm_model)
    return LLMService(
        default_model=settings.default_llm_model,
        default_temperature=settings.default_temperature,
        backend=backend,
    )
