# providers/anthropic.py
import logging
from typing import Any, AsyncIterator, Dict, List

from core.models import ModelRequest, ModelResponse, ResponseChunk, normalize_usage
from providers.base import ProviderTransport, load_json_event, parse_sse_data

logger = logging.getLogger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class AnthropicTransport(ProviderTransport):
    """Anthropic Messages API."""

    kind = "anthropic"

    def _url(self) -> str:
        return f"{(self.base_url or ANTHROPIC_BASE_URL).rstrip('/')}/v1/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _payload(self, request: ModelRequest, stream: bool) -> Dict[str, Any]:
        # System prompts are a top-level field, not a message role
        system_parts: List[str] = []
        messages = []
        for m in request.messages:
            if m.role == "system":
                system_parts.append(m.content)
            else:
                messages.append({"role": m.role, "content": m.content})

        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if stream:
            payload["stream"] = True
        return payload

    async def invoke_once(self, request: ModelRequest) -> ModelResponse:
        response = await self.client.post(
            self._url(), json=self._payload(request, stream=False), headers=self._headers()
        )
        response.raise_for_status()
        data = response.json()
        content = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        )
        raw_usage = data.get("usage")
        return ModelResponse(
            content=content,
            usage=normalize_usage(raw_usage),
            provider=request.provider,
            model=data.get("model", request.model),
            raw_usage=raw_usage,
        )

    async def invoke_streaming(self, request: ModelRequest) -> AsyncIterator[ResponseChunk]:
        raw_usage: Dict[str, Any] = {}
        async with self.client.stream(
            "POST", self._url(), json=self._payload(request, stream=True), headers=self._headers()
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                data = parse_sse_data(line)
                if not data:
                    continue
                event = load_json_event(data, self.kind)
                if event is None:
                    continue
                event_type = event.get("type")
                if event_type == "message_start":
                    raw_usage.update((event.get("message") or {}).get("usage") or {})
                elif event_type == "content_block_delta":
                    text = (event.get("delta") or {}).get("text")
                    if text:
                        yield ResponseChunk(content=text)
                elif event_type == "message_delta":
                    # Output token count arrives at the end of the message
                    raw_usage.update(event.get("usage") or {})
                elif event_type == "message_stop":
                    break
                elif event_type == "error":
                    raise RuntimeError(f"Anthropic stream error: {event.get('error')}")
        yield ResponseChunk(content="", done=True, raw_usage=raw_usage or None)
