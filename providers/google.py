# providers/google.py
import logging
from typing import Any, AsyncIterator, Dict, Optional

from core.models import ModelRequest, ModelResponse, ResponseChunk, normalize_usage
from providers.base import ProviderTransport, load_json_event, parse_sse_data

logger = logging.getLogger(__name__)

GOOGLE_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def _candidate_text(event: Dict[str, Any]) -> str:
    parts = []
    for candidate in event.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text"):
                parts.append(part["text"])
    return "".join(parts)


class GoogleTransport(ProviderTransport):
    """Gemini generateContent / streamGenerateContent."""

    kind = "google"

    def _url(self, request: ModelRequest, stream: bool) -> str:
        base = (self.base_url or GOOGLE_BASE_URL).rstrip("/")
        if stream:
            return f"{base}/models/{request.model}:streamGenerateContent?alt=sse"
        return f"{base}/models/{request.model}:generateContent"

    def _headers(self) -> Dict[str, str]:
        # Never put the key in the URL: httpx error messages include the full URL
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key or ""}

    def _payload(self, request: ModelRequest) -> Dict[str, Any]:
        system_parts = []
        contents = []
        for m in request.messages:
            if m.role == "system":
                system_parts.append({"text": m.content})
                continue
            role = "model" if m.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": m.content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        generation_config = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    async def invoke_once(self, request: ModelRequest) -> ModelResponse:
        response = await self.client.post(
            self._url(request, stream=False), json=self._payload(request), headers=self._headers()
        )
        response.raise_for_status()
        data = response.json()
        raw_usage = data.get("usageMetadata")
        return ModelResponse(
            content=_candidate_text(data),
            usage=normalize_usage(raw_usage),
            provider=request.provider,
            model=request.model,
            raw_usage=raw_usage,
        )

    async def invoke_streaming(self, request: ModelRequest) -> AsyncIterator[ResponseChunk]:
        raw_usage: Optional[Dict[str, Any]] = None
        async with self.client.stream(
            "POST", self._url(request, stream=True), json=self._payload(request), headers=self._headers()
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                data = parse_sse_data(line)
                if not data:
                    continue
                event = load_json_event(data, self.kind)
                if event is None:
                    continue
                # Every event repeats cumulative counts; keep the latest
                if event.get("usageMetadata"):
                    raw_usage = event["usageMetadata"]
                text = _candidate_text(event)
                if text:
                    yield ResponseChunk(content=text)
        yield ResponseChunk(content="", done=True, raw_usage=raw_usage)
