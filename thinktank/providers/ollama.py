"""Ollama adapter: /api/chat newline-delimited JSON stream over httpx."""

import json
import logging
import os
from collections.abc import AsyncIterator, Iterator

import httpx

from config.config_loader import ModelConfig
from thinktank.models import TokenUsage
from thinktank.providers.base import (
    AIProvider,
    LLMRequest,
    NetworkError,
    ParseError,
    RateLimited,
    StreamChunk,
    StreamState,
)

logger = logging.getLogger(__name__)

BASE_URL_ENV = "OLLAMA_BASE_URL"
_DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaProvider(AIProvider):
    """Local Ollama server. Needs no API key; OLLAMA_BASE_URL overrides the host."""

    framing = "ndjson"

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        self._base_url = (
            config.base_url or os.environ.get(BASE_URL_ENV, "").strip() or _DEFAULT_BASE_URL
        ).rstrip("/")

    @property
    def base_url(self) -> str:
        return self._base_url

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _payload(self, request: LLMRequest) -> dict:
        system, messages = request.split_system()
        chat = [{"role": "system", "content": system}] if system else []
        chat.extend({"role": m.role.value, "content": m.content} for m in messages)
        return {
            "model": request.model or self._config.model,
            "messages": chat,
            "stream": True,
            "options": {
                "temperature": request.temperature if request.temperature is not None else self._config.temperature,
                "num_predict": request.max_tokens or self._config.max_tokens,
            },
        }

    async def _raw_stream(self, request: LLMRequest) -> AsyncIterator[bytes]:
        try:
            async with httpx.AsyncClient(timeout=self._config.timeout_sec) as client:
                async with client.stream("POST", f"{self._base_url}/api/chat", json=self._payload(request)) as response:
                    if response.status_code == 429:
                        raise RateLimited(self._config.name, "Rate limited (HTTP 429)")
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise NetworkError(
                            self._config.name, f"Ollama API error {response.status_code}: {body[:300]}"
                        )
                    async for data in response.aiter_bytes():
                        yield data
        except httpx.HTTPError as exc:
            raise NetworkError(self._config.name, f"API call failed: {exc}") from exc

    def _chunks_from_frame(self, frame: str, state: StreamState) -> Iterator[StreamChunk]:
        try:
            payload = json.loads(frame)
        except json.JSONDecodeError as exc:
            raise ParseError(self._config.name, f"Invalid JSON line: {exc}") from exc
        if not isinstance(payload, dict):
            raise ParseError(self._config.name, "Line is not a JSON object")

        if payload.get("error"):
            raise NetworkError(self._config.name, str(payload["error"]))

        delta = (payload.get("message") or {}).get("content", "")
        if not payload.get("done"):
            if delta:
                yield StreamChunk(delta=delta)
            return

        state.finish_reason = payload.get("done_reason") or "stop"
        state.usage = TokenUsage(
            input_tokens=int(payload.get("prompt_eval_count") or 0),
            output_tokens=int(payload.get("eval_count") or 0),
        )
        yield StreamChunk(
            delta=delta,
            is_complete=True,
            finish_reason=state.finish_reason,
            usage=state.usage,
        )
