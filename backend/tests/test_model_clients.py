import asyncio
import json

import httpx

from forecaster.config import Settings
from forecaster.services.model_clients import (
    GeminiClient,
    OpenAIChatClient,
    build_model_clients,
    call_all_models,
    invoke_model,
)

from _helpers import ScriptedClient, model_json


def _chat_transport(content: str, status: int = 200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if status >= 400:
            return httpx.Response(status, text="upstream exploded")
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    return httpx.MockTransport(handler)


def _deepseek(transport, api_key="sk-test"):
    return OpenAIChatClient(
        "Deepseek",
        "DEEPSEEK_API_KEY",
        "https://api.deepseek.com/v1/chat/completions",
        api_key,
        "deepseek-chat",
        transport=transport,
    )


def test_chat_client_success_is_parsed():
    seen = []
    client = _deepseek(_chat_transport(model_json(), seen=seen))
    result = asyncio.run(invoke_model(client, "prompt", timeout=5))
    assert result.success
    assert result.model_name == "Deepseek"
    assert result.prediction.windows["1h"].prob_up == 0.6

    request = seen[0]
    assert request.headers["authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "deepseek-chat"
    assert body["temperature"] == 0.3
    assert body["messages"][1] == {"role": "user", "content": "prompt"}


def test_garbage_response_is_a_failed_result_with_raw_text():
    client = _deepseek(_chat_transport("I think BTC goes to the moon, trust me."))
    result = asyncio.run(invoke_model(client, "prompt", timeout=5))
    assert result.success is False
    assert result.error_reason == "Failed to parse response"
    assert result.prediction is None
    assert "moon" in result.raw_text


def test_http_error_status_is_a_failed_result():
    client = _deepseek(_chat_transport("", status=503))
    result = asyncio.run(invoke_model(client, "prompt", timeout=5))
    assert result.success is False
    assert result.error_reason == "API error: 503"
    assert result.raw_text == "upstream exploded"


def test_missing_api_key_fails_without_network():
    seen = []
    client = _deepseek(_chat_transport(model_json(), seen=seen), api_key=None)
    result = asyncio.run(invoke_model(client, "prompt", timeout=5))
    assert result.error_reason == "DEEPSEEK_API_KEY not set"
    assert seen == []


def test_transport_error_is_a_failed_result():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _deepseek(httpx.MockTransport(handler))
    result = asyncio.run(invoke_model(client, "prompt", timeout=5))
    assert result.success is False
    assert result.error_reason.startswith("Request failed")


def test_gemini_request_and_response_shape():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": model_json()}]}}]})

    client = GeminiClient("g-key", "gemini-2.0-flash", transport=httpx.MockTransport(handler))
    result = asyncio.run(invoke_model(client, "prompt", timeout=5))
    assert result.success
    assert result.model_name == "Gemini"
    assert "gemini-2.0-flash:generateContent" in str(seen[0].url)
    body = json.loads(seen[0].content)
    assert body["generationConfig"]["temperature"] == 0.3


def test_slow_model_times_out_without_blocking_others():
    clients = [
        ScriptedClient("Deepseek", text=model_json()),
        ScriptedClient("Gemini", text=model_json(), delay=5),
        ScriptedClient("XAI", text=model_json()),
    ]
    results = asyncio.run(call_all_models(clients, "prompt", timeout=0.05))
    assert [r.model_name for r in results] == ["Deepseek", "Gemini", "XAI"]
    assert [r.success for r in results] == [True, False, True]
    assert results[1].error_reason == "timed out after 0.05s"


def test_unexpected_exception_becomes_failed_result():
    clients = [
        ScriptedClient("Deepseek", error=RuntimeError("boom")),
        ScriptedClient("Gemini", text=model_json()),
    ]
    results = asyncio.run(call_all_models(clients, "prompt", timeout=1))
    assert results[0].success is False
    assert "boom" in results[0].error_reason
    assert results[1].success is True


def test_build_model_clients_uses_settings():
    settings = Settings(DEEPSEEK_API_KEY="a", GEMINI_API_KEY="b", XAI_API_KEY="c", XAI_MODEL="grok-test")
    clients = build_model_clients(settings)
    assert [c.name for c in clients] == ["Deepseek", "Gemini", "XAI"]
    assert clients[2].model == "grok-test"
    assert all(c.timeout == settings.MODEL_TIMEOUT_SECONDS for c in clients)
