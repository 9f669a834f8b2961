# core/config.py
"""
Provider credentials and endpoints, read from the environment (and `.env`).

Only the Provider Registry consumes these settings; the orchestrator itself
never looks at the environment.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_AZURE_API_VERSION = "2024-12-01-preview"


@dataclass(frozen=True)
class ProviderSettings:
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    anthropic_base_url: Optional[str] = None
    google_api_key: Optional[str] = None
    google_base_url: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: Optional[str] = None
    ollama_base_url: Optional[str] = None
    azure_openai_api_key: Optional[str] = None
    azure_openai_endpoint: Optional[str] = None
    azure_openai_api_version: str = DEFAULT_AZURE_API_VERSION

    def credentials_for(self, provider: str) -> dict:
        """Default api_key/base_url pair for a provider kind."""
        if provider == "azure":
            return {"api_key": self.azure_openai_api_key, "base_url": self.azure_openai_endpoint}
        return {
            "api_key": getattr(self, f"{provider}_api_key", None),
            "base_url": getattr(self, f"{provider}_base_url", None),
        }


def _env(name: str) -> Optional[str]:
    # Treat blank values in .env files as unset
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


def load_settings() -> ProviderSettings:
    return ProviderSettings(
        openai_api_key=_env("OPENAI_API_KEY"),
        openai_base_url=_env("OPENAI_BASE_URL"),
        anthropic_api_key=_env("ANTHROPIC_API_KEY"),
        anthropic_base_url=_env("ANTHROPIC_BASE_URL"),
        google_api_key=_env("GOOGLE_API_KEY"),
        google_base_url=_env("GOOGLE_BASE_URL"),
        openrouter_api_key=_env("OPENROUTER_API_KEY"),
        openrouter_base_url=_env("OPENROUTER_BASE_URL"),
        ollama_base_url=_env("OLLAMA_BASE_URL"),
        azure_openai_api_key=_env("AZURE_OPENAI_API_KEY"),
        azure_openai_endpoint=_env("AZURE_OPENAI_ENDPOINT"),
        azure_openai_api_version=_env("AZURE_OPENAI_API_VERSION") or DEFAULT_AZURE_API_VERSION,
    )


@dataclass(frozen=True)
class HttpPoolSettings:
    """
    Connection pool sizing for the shared provider HTTP client.

    `read_timeout` only guards against a dead socket; per-attempt deadlines are
    enforced by the orchestrator.
    """
    connect_timeout: float = 10.0
    read_timeout: float = 600.0
    write_timeout: float = 30.0
    pool_timeout: float = 10.0
    max_connections: int = 100
    max_keepalive_connections: int = 20


def load_http_pool_settings() -> HttpPoolSettings:
    defaults = HttpPoolSettings()
    return HttpPoolSettings(
        connect_timeout=float(_env("LLM_HTTP_CONNECT_TIMEOUT") or defaults.connect_timeout),
        read_timeout=float(_env("LLM_HTTP_READ_TIMEOUT") or defaults.read_timeout),
        write_timeout=float(_env("LLM_HTTP_WRITE_TIMEOUT") or defaults.write_timeout),
        pool_timeout=float(_env("LLM_HTTP_POOL_TIMEOUT") or defaults.pool_timeout),
        max_connections=int(_env("LLM_HTTP_MAX_CONNECTIONS") or defaults.max_connections),
        max_keepalive_connections=int(_env("LLM_HTTP_MAX_KEEPALIVE") or defaults.max_keepalive_connections),
    )
