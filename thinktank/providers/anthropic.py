"""Anthropic Claude adapter: Messages API SSE stream read as raw bytes via the anthropic SDK."""

import json
import logging
import os
from collections.abc import AsyncIterator, Iterator

import anthropic as anthropic_sdk

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

_DEFAULT_MAX_TOKENS = 4096
_OVERLOAD_ERRORS = {"overloaded_error", "rate_limit_error"}


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    framing = "sse"

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise MissingApiKey(config.name, config.api_key_env)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, timeout=config.timeout_sec)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def _raw_stream(self, request: LLMRequest) -> AsyncIterator[bytes]:
        system, messages = request.split_system()
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        try:
            async with self._client.messages.with_streaming_response.create(
                model=request.model or self._config.model,
                max_tokens=request.max_tokens or self._config.max_tokens or _DEFAULT_MAX_TOKENS,
                messages=[{"role": m.role.value, "content": m.content} for m in messages],
                system=system if system else anthropic_sdk.NOT_GIVEN,
                temperature=temperature,
                stream=True,
            ) as response:
                async for data in response.iter_bytes():
                    yield data
        except anthropic_sdk.RateLimitError as exc:
            raise RateLimited(self._config.name, f"Rate limited: {exc}") from exc
        except anthropic_sdk.APIStatusError as exc:
            if exc.status_code == 529:
                raise RateLimited(self._config.name, f"Overloaded: {exc}") from exc
            raise NetworkError(self._config.name, f"API error {exc.status_code}: {exc}") from exc
        except anthropic_sdk.APIError as exc:
            raise NetworkError(self._config.name, f"API call failed: {exc}") from exc

    def _chunks_from_frame(self, frame: SSEEvent, state: StreamState) -> Iterator[StreamChunk]:
        if frame.data == "[DONE]":
            yield StreamChunk(is_complete=True, finish_reason=state.finish_reason or "end_turn", usage=state.usage)
            return
        try:
            event = json.loads(frame.data)
        except json.JSONDecodeError as exc:
            raise ParseError(self._config.name, f"Invalid JSON frame: {exc}") from exc
        if not isinstance(event, dict):
            raise ParseError(self._config.name, "Frame is not a JSON object")

        event_type = event.get("type") or frame.event
        if event_type == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            state.usage.input_tokens = int(usage.get("input_tokens", 0))
        elif event_type == "content_block_delta":
            text = (event.get("delta") or {}).get("text")
            if text:
                yield StreamChunk(delta=text)
        elif event_type == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason")
            if stop_reason:
                state.finish_reason = stop_reason
            usage = event.get("usage") or {}
            if "output_tokens" in usage:
                state.usage.output_tokens = int(usage["output_tokens"])
        elif event_type == "message_stop":
            yield StreamChunk(
                is_complete=True,
                finish_reason=state.finish_reason or "end_turn",
                usage=TokenUsage(state.usage.input_tokens, state.usage.output_tokens),
            )
        elif event_type == "error":
            error = event.get("error") or {}
            message = error.get("message", "stream error")
            if error.get("type") in _OVERLOAD_ERRORS:
                raise RateLimited(self._config.name, message)
            raise NetworkError(self._config.name, message)
        else:
            logger.debug("Ignoring Anthropic event type: %s", event_type)
