from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flashflow.logging import get_logger

logger = get_logger(__name__)

# Hard ceiling for a single node, whatever the environment asks for
MAX_NODE_TIMEOUT_SECONDS = 600


class LLMBackendMode(str, Enum):
    """Chat completion backends the LLM service can be built with."""

    OPENAI = "openai"
    ECHO = "echo"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow service."""

    # LLM backend
    llm_backend: LLMBackendMode = env_field(LLMBackendMode.OPENAI, "LLM_BACKEND")
    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_base_url: str | None = env_field(None, "LLM_BASE_URL")
    default_llm_model: str = env_field("deepseek-ai/DeepSeek-V3.2", "DEFAULT_LLM_MODEL")
    default_temperature: float = env_field(0.7, "DEFAULT_TEMPERATURE")
    # Image backend
    image_api_url: str | None = env_field(
        None,
        "IMAGE_API_URL",
        description="Endpoint accepting {model, prompt, ...} and returning an image url",
    )
    image_api_key: str | None = env_field(None, "IMAGE_API_KEY")
    default_image_model: str = env_field("Kwai-Kolors/Kolors", "DEFAULT_IMAGE_MODEL")
    # Tools
    tavily_api_key: str | None = env_field(None, "TAVILY_API_KEY")
    tool_network_allowlist: List[str] = env_field(
        ["*"],
        "TOOL_NETWORK_ALLOWLIST",
        description="Comma-separated hosts, *.wildcards, CIDRs or * for any host tools may fetch from",
    )
    tool_network_proxy_url: str | None = env_field(None, "TOOL_NETWORK_PROXY_URL")
    tool_fetch_timeout: float = env_field(30.0, "TOOL_FETCH_TIMEOUT")
    tool_fetch_connect_timeout: float = env_field(10.0, "TOOL_FETCH_CONNECT_TIMEOUT")
    tool_timeout_seconds: float = env_field(15.0, "TOOL_TIMEOUT_SECONDS")
    tool_workers: int = env_field(8, "TOOL_WORKERS")
    code_sandbox_timeout_seconds: float = env_field(60.0, "CODE_SANDBOX_TIMEOUT_SECONDS")
    # Scheduler
    node_timeout_seconds: float = env_field(
        120.0,
        "NODE_TIMEOUT_SECONDS",
        description="Per-node execution timeout; capped at MAX_NODE_TIMEOUT_SECONDS",
    )
    # Storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/flashflow", "SHARED_FS_ROOT")
    # Server
    host: str = env_field("127.0.0.1", "FLASHFLOW_HOST")
    port: int = env_field(8000, "FLASHFLOW_PORT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("llm_backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> LLMBackendMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return LLMBackendMode(value)

    @field_validator("tool_network_allowlist", mode="before")
    @classmethod
    def _split_allowlist(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("node_timeout_seconds")
    @classmethod
    def _cap_node_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("node_timeout_seconds must be positive")
        if value > MAX_NODE_TIMEOUT_SECONDS:
            logger.warning(
                "node_timeout_capped",
                requested=value,
                cap=MAX_NODE_TIMEOUT_SECONDS,
            )
            return float(MAX_NODE_TIMEOUT_SECONDS)
        return value

    @field_validator("default_temperature")
    @classmethod
    def _validate_temperature(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("default_temperature must be within [0, 1]")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
