# providers/openai_compat.py
import logging
from typing import Any, AsyncIterator, Dict, Optional

from core.models import ModelRequest, ModelResponse, ResponseChunk, normalize_usage
from providers.base import ProviderTransport, load_json_event, parse_sse_data

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class OpenAICompatibleTransport(ProviderTransport):
    """
    Chat Completions over HTTP for OpenAI and OpenAI-compatible gateways
    (OpenRouter, self-hosted proxies).
    """

    kind = "openai"
    default_base_url = OPENAI_BASE_URL

    def _url(self, request: ModelRequest) -> str:
        base = (self.base_url or self.default_base_url).rstrip("/")
        return f"{base}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, request: ModelRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": request.messages_as_dicts(),
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if stream:
            # Ask for a trailing usage event so the final chunk can carry counts
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def invoke_once(self, request: ModelRequest) -> ModelResponse:
        response = await self.client.post(
            self._url(request), json=self._payload(request, stream=False), headers=self._headers()
        )
        response.raise_for_status()
        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Unexpected {self.kind} response structure: {e}") from e
        raw_usage = data.get("usage")
        return ModelResponse(
            content=content,
            usage=normalize_usage(raw_usage),
            provider=request.provider,
            model=data.get("model", request.model),
            raw_usage=raw_usage,
        )

    async def invoke_streaming(self, request: ModelRequest) -> AsyncIterator[ResponseChunk]:
        raw_usage: Optional[Dict[str, Any]] = None
        async with self.client.stream(
            "POST", self._url(request), json=self._payload(request, stream=True), headers=self._headers()
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                data = parse_sse_data(line)
                if not data:
                    continue
                if data == "[DONE]":
                    break
                event = load_json_event(data, self.kind)
                if event is None:
                    continue
                if event.get("usage"):
                    raw_usage = event["usage"]
                for choice in event.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield ResponseChunk(content=content)
        yield ResponseChunk(content="", done=True, raw_usage=raw_usage)


class OpenRouterTransport(OpenAICompatibleTransport):
    kind = "openrouter"
    default_base_url = OPENROUTER_BASE_URL
