"""Abstract base for all AI model providers.

Every adapter exposes the same capability set: ``name()``, ``model_string()``,
``complete_stream()`` and ``complete()``. Subclasses supply the raw byte
stream and the per-frame mapping onto canonical ``StreamChunk`` items; the
buffering, completion and truncation rules live here once.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from thinktank.models import TokenUsage
from thinktank.providers.framing import NDJSONDecoder, SSEDecoder

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class MissingApiKey(ProviderError):
    """Credential variable absent or blank at construction time."""

    def __init__(self, provider_name: str, env_var: str) -> None:
        self.env_var = env_var
        super().__init__(provider_name, f"Missing API key: {env_var}")


class NetworkError(ProviderError):
    """Transport-level failure or non-success HTTP status."""


class ParseError(ProviderError):
    """Malformed provider frame."""


class RateLimited(ProviderError):
    """Provider refused the call because of rate limits or overload."""


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class LLMMessage:
    role: MessageRole
    content: str


@dataclass
class LLMRequest:
    model: str
    messages: list[LLMMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None

    def split_system(self) -> tuple[str | None, list[LLMMessage]]:
        """Return (system prompt, non-system messages); system messages win over system_prompt."""
        system = self.system_prompt
        rest: list[LLMMessage] = []
        for message in self.messages:
            if message.role is MessageRole.SYSTEM:
                system = message.content
            else:
                rest.append(message)
        return system, rest


@dataclass
class StreamChunk:
    delta: str = ""
    is_complete: bool = False
    finish_reason: str | None = None
    usage: TokenUsage | None = None


@dataclass
class LLMResponse:
    content: str
    finish_reason: str | None
    provider: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    latency_sec: float = 0.0


@dataclass
class StreamState:
    """Per-call scratch space shared between frame handlers of one stream."""

    finish_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    completed: bool = False


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    #: "sse" or "ndjson"
    framing = "sse"

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'anthropic', 'ollama')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    def _raw_stream(self, request: LLMRequest) -> AsyncIterator[bytes]:
        """Open one connection and yield raw response bytes as they arrive.

        Implementations map transport failures onto NetworkError / RateLimited.
        """
        ...

    @abstractmethod
    def _chunks_from_frame(self, frame: Any, state: StreamState) -> Iterable[StreamChunk]:
        """Map one decoded frame onto zero or more canonical chunks.

        Unknown event types must produce nothing. Raise ParseError for
        undecodable frames; the caller skips them.
        """
        ...

    def _end_of_stream(self, state: StreamState) -> StreamChunk | None:
        """Completion chunk for protocols that signal the end by closing the connection."""
        return None

    def _decoder(self) -> SSEDecoder | NDJSONDecoder:
        return NDJSONDecoder() if self.framing == "ndjson" else SSEDecoder()

    async def complete_stream(self, request: LLMRequest) -> AsyncIterator[StreamChunk]:
        """Yield canonical chunks for one request.

        The sequence ends right after the first chunk with ``is_complete=True``.
        A transport failure raises a ProviderError and ends the sequence; a
        connection that closes before completion raises NetworkError.
        """
        decoder = self._decoder()
        state = StreamState()
        raw = self._raw_stream(request)
        try:
            async for data in raw:
                for frame in decoder.feed(data):
                    for chunk in self._safe_chunks(frame, state):
                        yield chunk
                        if chunk.is_complete:
                            return
            for frame in decoder.flush():
                for chunk in self._safe_chunks(frame, state):
                    yield chunk
                    if chunk.is_complete:
                        return
            final = self._end_of_stream(state)
            if final is not None:
                state.completed = True
                yield final
                return
        finally:
            aclose = getattr(raw, "aclose", None)
            if aclose is not None:
                await aclose()
        raise NetworkError(self.name(), "stream ended before completion")

    def _safe_chunks(self, frame: Any, state: StreamState) -> list[StreamChunk]:
        try:
            chunks = list(self._chunks_from_frame(frame, state))
        except ParseError as exc:
            logger.debug("Skipping malformed frame from %s: %s", self.name(), exc)
            return []
        for index, chunk in enumerate(chunks):
            if chunk.is_complete:
                state.completed = True
                return chunks[: index + 1]
        return chunks

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Drain ``complete_stream`` and concatenate its deltas."""
        start = time.monotonic()
        parts: list[str] = []
        finish_reason: str | None = None
        usage = TokenUsage()
        async for chunk in self.complete_stream(request):
            parts.append(chunk.delta)
            if chunk.usage is not None:
                usage = chunk.usage
            if chunk.is_complete:
                finish_reason = chunk.finish_reason
        latency = time.monotonic() - start
        logger.info(
            "%s complete: %.2fs, %s tokens",
            self.name(),
            latency,
            usage.total,
        )
        return LLMResponse(
            content="".join(parts),
            finish_reason=finish_reason,
            provider=self.name(),
            model=self.model_string(),
            usage=usage,
            latency_sec=latency,
        )
