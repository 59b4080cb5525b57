"""OpenAI adapter: chat-completions SSE stream read as raw bytes via the openai SDK."""

import json
import logging
import os
from collections.abc import AsyncIterator, Iterator

import openai
from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from thinktank.models import TokenUsage
from thinktank.providers.base import (
    AIProvider,
    LLMRequest,
    MissingApiKey,
    NetworkError,
    ParseError,
    RateLimited,
    StreamChunk,
    StreamState,
)
from thinktank.providers.framing import SSEEvent

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    framing = "sse"
    #: OpenAI-compatible servers do not all accept stream_options.
    include_usage = True

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise MissingApiKey(config.name, config.api_key_env)
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, timeout=config.timeout_sec)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _messages(self, request: LLMRequest) -> list[dict[str, str]]:
        system, messages = request.split_system()
        payload = [{"role": "system", "content": system}] if system else []
        payload.extend({"role": m.role.value, "content": m.content} for m in messages)
        return payload

    async def _raw_stream(self, request: LLMRequest) -> AsyncIterator[bytes]:
        extra: dict = {}
        if self.include_usage:
            extra["stream_options"] = {"include_usage": True}
        try:
            async with self._client.chat.completions.with_streaming_response.create(
                model=request.model or self._config.model,
                messages=self._messages(request),
                temperature=request.temperature if request.temperature is not None else self._config.temperature,
                max_tokens=request.max_tokens or self._config.max_tokens,
                stream=True,
                **extra,
            ) as response:
                async for data in response.iter_bytes():
                    yield data
        except openai.RateLimitError as exc:
            raise RateLimited(self._config.name, f"Rate limited: {exc}") from exc
        except openai.APIStatusError as exc:
            raise NetworkError(self._config.name, f"API error {exc.status_code}: {exc}") from exc
        except openai.APIError as exc:
            raise NetworkError(self._config.name, f"API call failed: {exc}") from exc

    def _chunks_from_frame(self, frame: SSEEvent, state: StreamState) -> Iterator[StreamChunk]:
        if frame.data.strip() == "[DONE]":
            yield StreamChunk(
                is_complete=True,
                finish_reason=state.finish_reason or "stop",
                usage=TokenUsage(state.usage.input_tokens, state.usage.output_tokens),
            )
            return
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError as exc:
            raise ParseError(self._config.name, f"Invalid JSON frame: {exc}") from exc
        if not isinstance(payload, dict):
            raise ParseError(self._config.name, "Frame is not a JSON object")

        if "error" in payload:
            error = payload["error"] or {}
            message = error.get("message", "stream error") if isinstance(error, dict) else str(error)
            raise NetworkError(self._config.name, message)

        usage = payload.get("usage")
        if usage:
            state.usage.input_tokens = int(usage.get("prompt_tokens", 0))
            state.usage.output_tokens = int(usage.get("completion_tokens", 0))

        choices = payload.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        content = (choice.get("delta") or {}).get("content")
        if content:
            yield StreamChunk(delta=content)
        if choice.get("finish_reason"):
            state.finish_reason = choice["finish_reason"]

    def _end_of_stream(self, state: StreamState) -> StreamChunk | None:
        # Some compatible servers close the stream without a [DONE] sentinel.
        if state.finish_reason is None:
            return None
        return StreamChunk(
            is_complete=True,
            finish_reason=state.finish_reason,
            usage=TokenUsage(state.usage.input_tokens, state.usage.output_tokens),
        )
