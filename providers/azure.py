# providers/azure.py
"""
Azure OpenAI deployments.

Requests are addressed by deployment rather than model name. Reasoning
deployments (o1/o3 families) reject `temperature` and expect
`max_completion_tokens` in place of `max_tokens`.
"""

from typing import Any, Dict

from core.config import DEFAULT_AZURE_API_VERSION
from core.models import ModelRequest
from providers.openai_compat import OpenAICompatibleTransport

REASONING_MARKERS = ("o1", "o3")


def is_reasoning_deployment(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in REASONING_MARKERS)


class AzureOpenAITransport(OpenAICompatibleTransport):
    kind = "azure"

    def __init__(self, api_key=None, base_url=None, client=None, api_version: str = DEFAULT_AZURE_API_VERSION):
        super().__init__(api_key=api_key, base_url=base_url, client=client)
        self.api_version = api_version

    @staticmethod
    def _deployment(request: ModelRequest) -> str:
        return request.deployment or request.model

    def _url(self, request: ModelRequest) -> str:
        endpoint = (self.base_url or "").rstrip("/")
        return (
            f"{endpoint}/openai/deployments/{self._deployment(request)}"
            f"/chat/completions?api-version={self.api_version}"
        )

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "api-key": self.api_key or ""}

    def _payload(self, request: ModelRequest, stream: bool) -> Dict[str, Any]:
        payload = super()._payload(request, stream)
        # The deployment in the URL selects the model
        payload.pop("model", None)
        if is_reasoning_deployment(self._deployment(request)):
            payload.pop("temperature", None)
            max_tokens = payload.pop("max_tokens", None)
            if max_tokens is not None:
                payload["max_completion_tokens"] = max_tokens
        return payload
