import json

import httpx
import pytest

from core.config import ProviderSettings
from core.exceptions import ConfigurationError, OrchestrationError
from core.models import ModelRequest, OrchestrationOptions, Usage
from core.orchestrator import LLMOrchestrator
from providers.anthropic import AnthropicTransport
from providers.azure import AzureOpenAITransport
from providers.google import GoogleTransport
from providers.ollama import OllamaTransport
from providers.openai_compat import OpenAICompatibleTransport, OpenRouterTransport
from providers.registry import ProviderRegistry

MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hi"},
    {"role": "assistant", "content": "Hello"},
    {"role": "user", "content": "Bye"},
]


def mock_client(handler):
    """AsyncClient that records requests and answers through `handler`."""
    seen = []

    def _handle(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(_handle)), seen


def sse(*events) -> bytes:
    return "".join(f"data: {e if isinstance(e, str) else json.dumps(e)}\n\n" for e in events).encode()


async def collect(agen):
    return [chunk async for chunk in agen]


# ----------------------------------------------------------------------
# OpenAI-compatible
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_invoke_once():
    client, seen = mock_client(lambda r: httpx.Response(200, json={
        "model": "gpt-4o-2024",
        "choices": [{"message": {"content": "pong"}}],
        "usage": {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6},
    }))
    transport = OpenAICompatibleTransport(api_key="sk-test", client=client)

    response = await transport.invoke_once(ModelRequest("openai", "gpt-4o", MESSAGES, max_tokens=10))

    assert response.content == "pong"
    assert response.usage == Usage(5, 1, 6)
    request = seen[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["max_tokens"] == 10
    assert body["stream"] is False
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}


@pytest.mark.asyncio
async def test_openai_stream_yields_deltas_and_final_usage():
    body = sse(
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Hel"}}]},
        "not json",
        {"choices": [{"delta": {"content": "lo"}}]},
        {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2}},
        "[DONE]",
    )
    client, seen = mock_client(lambda r: httpx.Response(200, content=body))
    transport = OpenRouterTransport(api_key="or-key", client=client)

    chunks = await collect(transport.invoke_streaming(ModelRequest("openrouter", "meta/llama", MESSAGES)))

    assert [c.content for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].done
    assert chunks[-1].raw_usage == {"prompt_tokens": 3, "completion_tokens": 2}
    assert str(seen[0].url).startswith("https://openrouter.ai/api/v1/chat/completions")
    assert json.loads(seen[0].content)["stream_options"] == {"include_usage": True}


@pytest.mark.asyncio
async def test_http_errors_propagate_raw():
    client, _ = mock_client(lambda r: httpx.Response(429, json={"error": "slow down"}))
    transport = OpenAICompatibleTransport(api_key="k", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        await transport.invoke_once(ModelRequest("openai", "gpt-4o", MESSAGES))


# ----------------------------------------------------------------------
# Azure
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_azure_addresses_deployment():
    client, seen = mock_client(lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))
    transport = AzureOpenAITransport(api_key="az", base_url="https://res.openai.azure.com/", client=client,
                                     api_version="2024-06-01")

    await transport.invoke_once(ModelRequest("azure", "gpt-4o", MESSAGES, deployment="prod-4o",
                                             temperature=0.3, max_tokens=20))

    request = seen[0]
    assert request.url.path == "/openai/deployments/prod-4o/chat/completions"
    assert request.url.params["api-version"] == "2024-06-01"
    assert request.headers["api-key"] == "az"
    body = json.loads(request.content)
    assert "model" not in body
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 20


@pytest.mark.asyncio
async def test_azure_reasoning_deployment_quirks():
    client, seen = mock_client(lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))
    transport = AzureOpenAITransport(api_key="az", base_url="https://res.openai.azure.com", client=client)

    await transport.invoke_once(ModelRequest("azure", "o3-mini", MESSAGES, deployment="my-o3-mini",
                                             temperature=0.3, max_tokens=20))

    body = json.loads(seen[0].content)
    assert "temperature" not in body
    assert "max_tokens" not in body
    assert body["max_completion_tokens"] == 20


# ----------------------------------------------------------------------
# Anthropic
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_anthropic_lifts_system_prompt():
    client, seen = mock_client(lambda r: httpx.Response(200, json={
        "content": [{"type": "text", "text": "Hi "}, {"type": "text", "text": "there"}],
        "usage": {"input_tokens": 7, "output_tokens": 2},
    }))
    transport = AnthropicTransport(api_key="ak", client=client)

    response = await transport.invoke_once(ModelRequest("anthropic", "claude-3-haiku-20240307", MESSAGES))

    assert response.content == "Hi there"
    assert response.usage == Usage(7, 2, 9)
    request = seen[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "ak"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["system"] == "Be brief."
    assert body["max_tokens"] == 4096
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]


@pytest.mark.asyncio
async def test_anthropic_stream_events():
    body = sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 4, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "message_delta", "usage": {"output_tokens": 6}},
        {"type": "message_stop"},
    )
    client, _ = mock_client(lambda r: httpx.Response(200, content=body))
    transport = AnthropicTransport(api_key="ak", client=client)

    chunks = await collect(transport.invoke_streaming(ModelRequest("anthropic", "claude", MESSAGES)))

    assert [c.content for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].raw_usage == {"input_tokens": 4, "output_tokens": 6}


# ----------------------------------------------------------------------
# Google
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_google_maps_roles_and_usage():
    client, seen = mock_client(lambda r: httpx.Response(200, json={
        "candidates": [{"content": {"parts": [{"text": "Salut"}]}}],
        "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1, "totalTokenCount": 5},
    }))
    transport = GoogleTransport(api_key="gk", client=client)

    response = await transport.invoke_once(ModelRequest("google", "gemini-1.5-flash", MESSAGES, max_tokens=8))

    assert response.content == "Salut"
    assert response.usage == Usage(4, 1, 5)
    request = seen[0]
    assert request.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert request.headers["x-goog-api-key"] == "gk"
    assert "key" not in request.url.params
    body = json.loads(request.content)
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["generationConfig"] == {"maxOutputTokens": 8}


@pytest.mark.asyncio
async def test_google_stream():
    body = sse(
        {"candidates": [{"content": {"parts": [{"text": "Sa"}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "lut"}]}}],
         "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2}},
    )
    client, seen = mock_client(lambda r: httpx.Response(200, content=body))
    transport = GoogleTransport(api_key="gk", client=client)

    chunks = await collect(transport.invoke_streaming(ModelRequest("google", "gemini-1.5-flash", MESSAGES)))

    assert [c.content for c in chunks] == ["Sa", "lut", ""]
    assert chunks[-1].raw_usage == {"promptTokenCount": 4, "candidatesTokenCount": 2}
    assert dict(seen[0].url.params) == {"alt": "sse"}
    assert seen[0].headers["x-goog-api-key"] == "gk"


@pytest.mark.asyncio
async def test_google_api_key_stays_out_of_error_text():
    client, seen = mock_client(lambda r: httpx.Response(400, json={"error": {"message": "bad request"}}))
    registry = ProviderRegistry(ProviderSettings(google_api_key="SECRET-KEY-123"), client=client)
    orchestrator = LLMOrchestrator(registry)

    with pytest.raises(OrchestrationError) as exc_info:
        await orchestrator.generate(ModelRequest("google", "gemini-1.5-flash", MESSAGES),
                                    OrchestrationOptions(retry={"max_retries": 0}))

    error = exc_info.value
    assert error.status_code == 400
    assert "SECRET-KEY-123" not in error.message
    assert "SECRET-KEY-123" not in str(error.__cause__)
    assert "SECRET-KEY-123" not in str(seen[0].url)
    assert seen[0].headers["x-goog-api-key"] == "SECRET-KEY-123"


# ----------------------------------------------------------------------
# Ollama
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ollama_stream_ndjson():
    lines = [
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": False},
        {"message": {"content": ""}, "done": True, "prompt_eval_count": 3, "eval_count": 2},
    ]
    body = "\n".join(json.dumps(line) for line in lines).encode()
    client, seen = mock_client(lambda r: httpx.Response(200, content=body))
    transport = OllamaTransport(base_url="http://ollama:11434", client=client)

    chunks = await collect(transport.invoke_streaming(ModelRequest("ollama", "llama3", MESSAGES)))

    assert [c.content for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].raw_usage == {"prompt_eval_count": 3, "eval_count": 2}
    assert str(seen[0].url) == "http://ollama:11434/api/chat"


@pytest.mark.asyncio
async def test_ollama_invoke_once():
    client, _ = mock_client(lambda r: httpx.Response(200, json={
        "message": {"content": "pong"}, "prompt_eval_count": 2, "eval_count": 1,
    }))
    transport = OllamaTransport(client=client)

    response = await transport.invoke_once(ModelRequest("ollama", "llama3", MESSAGES))

    assert response.content == "pong"
    assert response.usage == Usage(2, 1, 3)


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------

def test_registry_validation_rules():
    registry = ProviderRegistry(ProviderSettings(openai_api_key="sk", azure_openai_api_key="az"))

    registry.validate(ModelRequest("openai", "gpt-4o"))
    registry.validate(ModelRequest("ollama", "llama3"))
    registry.validate(ModelRequest("anthropic", "claude", api_key="explicit"))

    with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
        registry.validate(ModelRequest("anthropic", "claude"))
    with pytest.raises(ConfigurationError, match="AZURE_OPENAI_ENDPOINT"):
        registry.validate(ModelRequest("azure", "gpt-4o", deployment="d"))
    with pytest.raises(ConfigurationError, match="Unsupported provider"):
        registry.validate(ModelRequest("mystery", "m"))


def test_registry_builds_transports_with_resolved_credentials():
    settings = ProviderSettings(openai_api_key="default-key", azure_openai_api_key="az",
                                azure_openai_endpoint="https://res.openai.azure.com",
                                azure_openai_api_version="2024-06-01")
    registry = ProviderRegistry(settings)

    default = registry.get_transport(ModelRequest("openai", "gpt-4o"))
    overridden = registry.get_transport(ModelRequest("openai", "gpt-4o", api_key="override",
                                                     base_url="http://proxy/v1"))
    azure = registry.get_transport(ModelRequest("azure", "gpt-4o"))

    assert isinstance(default, OpenAICompatibleTransport)
    assert default.api_key == "default-key"
    assert (overridden.api_key, overridden.base_url) == ("override", "http://proxy/v1")
    assert isinstance(azure, AzureOpenAITransport)
    assert azure.api_version == "2024-06-01"
    assert set(registry.providers()) >= {"openai", "anthropic", "google", "openrouter", "ollama", "azure"}


def test_registry_custom_provider():
    registry = ProviderRegistry(ProviderSettings())
    sentinel = OllamaTransport()
    registry.register("local-proxy", lambda request: sentinel, required_credentials=("base_url",))

    with pytest.raises(ConfigurationError):
        registry.validate(ModelRequest("local-proxy", "m"))
    registry.validate(ModelRequest("local-proxy", "m", base_url="http://proxy"))
    assert registry.get_transport(ModelRequest("local-proxy", "m")) is sentinel
