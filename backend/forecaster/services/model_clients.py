"""
Forecasting model clients.

Each client turns a prompt into raw text; `invoke_model` wraps a client call
with its own timeout and the response parser and always returns a
ModelResult. `call_all_models` runs every client concurrently and waits for
all of them.
"""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from forecaster.config import Settings
from forecaster.core.types import ModelResult
from forecaster.observability.metrics import MODEL_CALLS
from forecaster.services.parser import parse_model_response
from forecaster.services.prompt import SYSTEM_PROMPT

logger = structlog.get_logger(__name__)


class ModelCallError(Exception):
    """Transport-level failure talking to a model provider."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class ModelClient(ABC):
    name: str = "model"
    key_env: str = "API_KEY"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        timeout: float = 45.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.transport = transport

    @abstractmethod
    def endpoint(self) -> str: ...

    @abstractmethod
    def payload(self, prompt: str) -> Dict[str, Any]: ...

    @abstractmethod
    def extract_text(self, body: Dict[str, Any]) -> str: ...

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def complete(self, prompt: str) -> str:
        if not self.api_key:
            raise ModelCallError(f"{self.key_env} not set")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.endpoint(), json=self.payload(prompt), headers=self.headers())
        if response.status_code >= 400:
            raise ModelCallError(f"API error: {response.status_code}", raw_text=response.text)
        try:
            body = response.json()
        except ValueError as exc:
            raise ModelCallError("response body is not JSON", raw_text=response.text) from exc
        return self.extract_text(body)


class OpenAIChatClient(ModelClient):
    """Chat-completions style API (DeepSeek, xAI)."""

    def __init__(self, name: str, key_env: str, base_url: str, api_key: Optional[str], model: str, **kwargs: Any) -> None:
        super().__init__(api_key, model, **kwargs)
        self.name = name
        self.key_env = key_env
        self.base_url = base_url

    def endpoint(self) -> str:
        return self.base_url

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    def payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def extract_text(self, body: Dict[str, Any]) -> str:
        choices = body.get("choices") or [{}]
        message = choices[0].get("message") or {}
        return message.get("content") or ""


class GeminiClient(ModelClient):
    name = "Gemini"
    key_env = "GEMINI_API_KEY"

    def endpoint(self) -> str:
        return (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            f"{self.model}:generateContent?key={self.api_key}"
        )

    def payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": f"{SYSTEM_PROMPT}\n\n{prompt}"}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }

    def extract_text(self, body: Dict[str, Any]) -> str:
        candidates = body.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or [{}]
        return parts[0].get("text") or ""


def build_model_clients(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[ModelClient]:
    common = {
        "temperature": settings.MODEL_TEMPERATURE,
        "max_tokens": settings.MODEL_MAX_TOKENS,
        "timeout": settings.MODEL_TIMEOUT_SECONDS,
        "transport": transport,
    }
    return [
        OpenAIChatClient(
            "Deepseek",
            "DEEPSEEK_API_KEY",
            "https://api.deepseek.com/v1/chat/completions",
            settings.DEEPSEEK_API_KEY,
            settings.DEEPSEEK_MODEL,
            **common,
        ),
        GeminiClient(settings.GEMINI_API_KEY, settings.GEMINI_MODEL, **common),
        OpenAIChatClient(
            "XAI",
            "XAI_API_KEY",
            "https://api.x.ai/v1/chat/completions",
            settings.XAI_API_KEY,
            settings.XAI_MODEL,
            **common,
        ),
    ]


def _failed(name: str, reason: str, raw_text: str = "") -> ModelResult:
    MODEL_CALLS.labels(model=name, outcome="failed").inc()
    logger.warning("model.call_failed", model=name, reason=reason)
    return ModelResult.failed(name, reason, raw_text)


async def invoke_model(client: ModelClient, prompt: str, timeout: float) -> ModelResult:
    """Call one model under its own timeout; failures become failed results, never exceptions."""
    start = time.perf_counter()
    try:
        text = await asyncio.wait_for(client.complete(prompt), timeout=timeout)
    except asyncio.TimeoutError:
        return _failed(client.name, f"timed out after {timeout:g}s")
    except ModelCallError as exc:
        return _failed(client.name, str(exc), exc.raw_text)
    except httpx.HTTPError as exc:
        return _failed(client.name, f"Request failed: {exc!r}")

    parsed = parse_model_response(text, model_name=client.name)
    if parsed is None:
        return _failed(client.name, "Failed to parse response", text)

    MODEL_CALLS.labels(model=client.name, outcome="success").inc()
    logger.info(
        "model.call_succeeded",
        model=client.name,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    return ModelResult.succeeded(client.name, parsed, text)


async def call_all_models(clients: Sequence[ModelClient], prompt: str, timeout: float) -> List[ModelResult]:
    """Run every client concurrently and return one result per client, in client order."""
    outcomes = await asyncio.gather(
        *(invoke_model(client, prompt, timeout) for client in clients),
        return_exceptions=True,
    )
    results: List[ModelResult] = []
    for client, outcome in zip(clients, outcomes):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            results.append(_failed(client.name, f"Unexpected error: {outcome!r}"))
        else:
            results.append(outcome)

    logger.info(
        "model.calls_completed",
        success=sum(1 for r in results if r.success),
        total=len(results),
    )
    return results
