"""Gemini adapter: streamGenerateContent with alt=sse over httpx."""

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
    MessageRole,
    MissingApiKey,
    NetworkError,
    ParseError,
    RateLimited,
    StreamChunk,
    StreamState,
)
from thinktank.providers.framing import SSEEvent

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GeminiProvider(AIProvider):
    """Google Gemini provider via the REST streaming endpoint."""

    framing = "sse"

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise MissingApiKey(config.name, config.api_key_env)
        self._api_key = api_key
        self._base_url = (config.base_url or _DEFAULT_BASE_URL).rstrip("/")

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _payload(self, request: LLMRequest) -> dict:
        system, messages = request.split_system()
        payload: dict = {
            "contents": [
                {
                    "role": "model" if m.role is MessageRole.ASSISTANT else "user",
                    "parts": [{"text": m.content}],
                }
                for m in messages
            ],
            "generationConfig": {
                "temperature": request.temperature if request.temperature is not None else self._config.temperature,
                "maxOutputTokens": request.max_tokens or self._config.max_tokens,
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    async def _raw_stream(self, request: LLMRequest) -> AsyncIterator[bytes]:
        model = request.model or self._config.model
        url = f"{self._base_url}/models/{model}:streamGenerateContent"
        try:
            async with httpx.AsyncClient(timeout=self._config.timeout_sec) as client:
                async with client.stream(
                    "POST",
                    url,
                    params={"alt": "sse"},
                    headers={"x-goog-api-key": self._api_key},
                    json=self._payload(request),
                ) as response:
                    if response.status_code == 429:
                        raise RateLimited(self._config.name, "Rate limited (HTTP 429)")
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise NetworkError(self._config.name, f"API error {response.status_code}: {body[:300]}")
                    async for data in response.aiter_bytes():
                        yield data
        except httpx.HTTPError as exc:
            raise NetworkError(self._config.name, f"API call failed: {exc}") from exc

    def _chunks_from_frame(self, frame: SSEEvent, state: StreamState) -> Iterator[StreamChunk]:
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError as exc:
            raise ParseError(self._config.name, f"Invalid JSON frame: {exc}") from exc
        if not isinstance(payload, dict):
            raise ParseError(self._config.name, "Frame is not a JSON object")

        if "error" in payload:
            error = payload["error"] or {}
            if error.get("code") == 429:
                raise RateLimited(self._config.name, error.get("message", "rate limited"))
            raise NetworkError(self._config.name, error.get("message", "stream error"))

        usage = payload.get("usageMetadata")
        if usage:
            state.usage.input_tokens = int(usage.get("promptTokenCount", 0))
            state.usage.output_tokens = int(usage.get("candidatesTokenCount", 0))

        candidates = payload.get("candidates") or []
        if not candidates:
            return
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
        if text:
            yield StreamChunk(delta=text)
        if candidate.get("finishReason"):
            state.finish_reason = candidate["finishReason"]

    def _end_of_stream(self, state: StreamState) -> StreamChunk | None:
        # Gemini has no terminal event: the connection closes after the finishReason frame.
        if state.finish_reason is None:
            return None
        return StreamChunk(
            is_complete=True,
            finish_reason=state.finish_reason,
            usage=TokenUsage(state.usage.input_tokens, state.usage.output_tokens),
        )
