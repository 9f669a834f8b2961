# providers/registry.py
"""
Provider Registry: maps a provider identity to a transport.

Pure lookup and construction. Per-provider default credentials come from
`ProviderSettings`; explicit `api_key` / `base_url` on a request win over them.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from core.config import ProviderSettings, load_settings
from core.exceptions import ConfigurationError
from core.models import ModelRequest, Provider
from providers.anthropic import AnthropicTransport
from providers.azure import AzureOpenAITransport
from providers.base import ProviderTransport
from providers.google import GoogleTransport
from providers.ollama import OllamaTransport
from providers.openai_compat import OpenAICompatibleTransport, OpenRouterTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ModelRequest], ProviderTransport]

# Which resolved credentials must be present before any attempt
_REQUIRED_CREDENTIALS: Dict[str, Tuple[str, ...]] = {
    Provider.OPENAI.value: ("api_key",),
    Provider.ANTHROPIC.value: ("api_key",),
    Provider.GOOGLE.value: ("api_key",),
    Provider.OPENROUTER.value: ("api_key",),
    Provider.AZURE.value: ("api_key", "base_url"),
    Provider.OLLAMA.value: (),
}

_CREDENTIAL_ENV = {
    (Provider.OPENAI.value, "api_key"): "OPENAI_API_KEY",
    (Provider.ANTHROPIC.value, "api_key"): "ANTHROPIC_API_KEY",
    (Provider.GOOGLE.value, "api_key"): "GOOGLE_API_KEY",
    (Provider.OPENROUTER.value, "api_key"): "OPENROUTER_API_KEY",
    (Provider.AZURE.value, "api_key"): "AZURE_OPENAI_API_KEY",
    (Provider.AZURE.value, "base_url"): "AZURE_OPENAI_ENDPOINT",
}


@dataclass(frozen=True)
class _Registration:
    factory: TransportFactory
    required_credentials: Tuple[str, ...] = ()


class ProviderRegistry:
    """
    Usage:
        registry = ProviderRegistry(load_settings())
        registry.validate(request)
        transport = registry.get_transport(request)
    """

    def __init__(self, settings: Optional[ProviderSettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or load_settings()
        self._client = client
        self._registrations: Dict[str, _Registration] = {}
        self._register_builtins()

    def _register_builtins(self) -> None:
        simple = {
            Provider.OPENAI.value: OpenAICompatibleTransport,
            Provider.OPENROUTER.value: OpenRouterTransport,
            Provider.ANTHROPIC.value: AnthropicTransport,
            Provider.GOOGLE.value: GoogleTransport,
            Provider.OLLAMA.value: OllamaTransport,
        }
        for name, cls in simple.items():
            self.register(name, self._builtin_factory(cls), _REQUIRED_CREDENTIALS[name])

        def azure_factory(request: ModelRequest) -> ProviderTransport:
            creds = self.resolve_credentials(request)
            return AzureOpenAITransport(
                api_key=creds["api_key"],
                base_url=creds["base_url"],
                client=self._client,
                api_version=self.settings.azure_openai_api_version,
            )

        self.register(Provider.AZURE.value, azure_factory, _REQUIRED_CREDENTIALS[Provider.AZURE.value])

    def _builtin_factory(self, cls) -> TransportFactory:
        def factory(request: ModelRequest) -> ProviderTransport:
            creds = self.resolve_credentials(request)
            return cls(api_key=creds["api_key"], base_url=creds["base_url"], client=self._client)
        return factory

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register(
        self,
        provider: str,
        factory: TransportFactory,
        required_credentials: Iterable[str] = (),
    ) -> None:
        """Register (or replace) the transport factory for a provider identity."""
        key = provider.value if isinstance(provider, Provider) else provider
        self._registrations[key] = _Registration(factory, tuple(required_credentials))
        logger.debug("Registered provider transport", extra={"event": "provider_registered", "provider": key})

    def providers(self) -> List[str]:
        return list(self._registrations)

    def resolve_credentials(self, request: ModelRequest) -> Dict[str, Optional[str]]:
        defaults = self.settings.credentials_for(request.provider)
        return {
            "api_key": request.api_key or defaults.get("api_key"),
            "base_url": request.base_url or defaults.get("base_url"),
        }

    def validate(self, request: ModelRequest) -> None:
        """
        Fail fast when `request` cannot be attempted.

        :raises ConfigurationError: unknown provider or missing credentials.
        """
        registration = self._registrations.get(request.provider)
        if registration is None:
            raise ConfigurationError(f"Unsupported provider: {request.provider}", provider=request.provider)

        creds = self.resolve_credentials(request)
        for name in registration.required_credentials:
            if not creds.get(name):
                env = _CREDENTIAL_ENV.get((request.provider, name))
                hint = f" (set {env} or pass {name} on the request)" if env else ""
                raise ConfigurationError(
                    f"Missing {name} for provider {request.provider}{hint}",
                    provider=request.provider,
                )

    def get_transport(self, request: ModelRequest) -> ProviderTransport:
        registration = self._registrations.get(request.provider)
        if registration is None:
            raise ConfigurationError(f"Unsupported provider: {request.provider}", provider=request.provider)
        return registration.factory(request)
