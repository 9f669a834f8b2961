# providers/ollama.py
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from core.models import ModelRequest, ModelResponse, ResponseChunk, normalize_usage
from providers.base import ProviderTransport

logger = logging.getLogger(__name__)

OLLAMA_BASE_URL = "http://localhost:11434"


def _usage_fields(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    usage = {k: data[k] for k in ("prompt_eval_count", "eval_count") if data.get(k) is not None}
    return usage or None


class OllamaTransport(ProviderTransport):
    """Local Ollama server, /api/chat. Needs no credentials."""

    kind = "ollama"

    def _url(self) -> str:
        return f"{(self.base_url or OLLAMA_BASE_URL).rstrip('/')}/api/chat"

    def _payload(self, request: ModelRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": request.messages_as_dicts(),
            "stream": stream,
        }
        options = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options:
            payload["options"] = options
        return payload

    async def invoke_once(self, request: ModelRequest) -> ModelResponse:
        response = await self.client.post(self._url(), json=self._payload(request, stream=False))
        response.raise_for_status()
        data = response.json()
        try:
            content = data["message"]["content"]
        except KeyError as e:
            raise ValueError(f"Unexpected ollama response structure: {e}") from e
        raw_usage = _usage_fields(data)
        return ModelResponse(
            content=content,
            usage=normalize_usage(raw_usage),
            provider=request.provider,
            model=data.get("model", request.model),
            raw_usage=raw_usage,
        )

    async def invoke_streaming(self, request: ModelRequest) -> AsyncIterator[ResponseChunk]:
        raw_usage = None
        async with self.client.stream("POST", self._url(), json=self._payload(request, stream=True)) as response:
            response.raise_for_status()
            # Ollama streams newline-delimited JSON objects
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(
                        "Malformed JSON line from ollama",
                        extra={"event": "malformed_chunk", "provider": self.kind, "error": str(e), "line": line[:200]}
                    )
                    continue
                if chunk.get("error"):
                    raise RuntimeError(f"Ollama stream error: {chunk['error']}")
                content = (chunk.get("message") or {}).get("content")
                if content:
                    yield ResponseChunk(content=content)
                if chunk.get("done"):
                    raw_usage = _usage_fields(chunk)
                    break
        yield ResponseChunk(content="", done=True, raw_usage=raw_usage)
