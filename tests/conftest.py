"""Shared pytest fixtures."""

import asyncio
import json
import re
from collections.abc import AsyncIterator, Iterable
from pathlib import Path
from typing import Any

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, ParticipantConfig, PromptsConfig
from thinktank.models import Participant, ParticipantRole, Session, SessionConfig, TokenUsage
from thinktank.providers.base import AIProvider, LLMRequest, NetworkError, StreamChunk, StreamState

AGREE_VOTE = "VOTE: AGREE\nREASONING: The synthesis covers the goal.\nCONCERNS:\n- none"


def split_pieces(content: str) -> list[str]:
    """Word-sized pieces whose concatenation is ``content``."""
    return re.findall(r"\S+\s*|\s+", content)


class MockProvider(AIProvider):
    """Scripted test double that streams through the real AIProvider machinery.

    Each call consumes the next entry of ``responses`` (the last one repeats).
    Frames are NDJSON lines: ``{"delta": ...}`` then ``{"done": true}``.
    """

    framing = "ndjson"

    def __init__(
        self,
        provider_name: str = "mock",
        responses: list[str] | None = None,
        fail_with: Exception | None = None,
        fail_after_first_delta: bool = False,
        delay: float = 0.0,
    ) -> None:
        self._name = provider_name
        self.responses = list(responses) if responses is not None else ["Mock response"]
        self.fail_with = fail_with
        self.fail_after_first_delta = fail_after_first_delta
        self.delay = delay
        self.requests: list[LLMRequest] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next_response(self) -> str:
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        return self.responses[index]

    async def _raw_stream(self, request: LLMRequest) -> AsyncIterator[bytes]:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        content = self._next_response()
        for index, piece in enumerate(split_pieces(content)):
            yield (json.dumps({"delta": piece}) + "\n").encode("utf-8")
            if self.fail_after_first_delta and index == 0:
                raise NetworkError(self._name, "connection reset")
        yield (json.dumps({"done": True, "output_tokens": len(content.split())}) + "\n").encode("utf-8")

    def _chunks_from_frame(self, frame: Any, state: StreamState) -> Iterable[StreamChunk]:
        data = json.loads(frame)
        if data.get("done"):
            usage = TokenUsage(input_tokens=10, output_tokens=data["output_tokens"])
            yield StreamChunk(is_complete=True, finish_reason="stop", usage=usage)
        else:
            yield StreamChunk(delta=data["delta"])


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        provider="anthropic",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        draft="{participant} ({role}) drafts for: {goal}",
        critique="{participant} critiques for {goal}:\n{proposals}",
        synthesis="{participant} synthesizes {goal}:\n{proposals}\nCritiques:\n{critiques}",
        convergence="{participant} votes on {goal}:\n{synthesis}",
        refinement="{participant} refines {goal}:\n{synthesis}\nConcerns:\n{concerns}",
        response="{participant} responds on {goal}:\n{critiques}",
        personas={"architect": "You are an architect.", "critic": "You are a critic."},
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        max_rounds=2,
        convergence_threshold=0.8,
        round_timeout_sec=30,
        output_dir=tmp_path / "output",
        beadifier_model="claude",
        fallback_order=["claude", "openai"],
        panel=[
            ParticipantConfig(name="Architect", model="claude", role="architect"),
            ParticipantConfig(name="Critic", model="openai", role="critic"),
        ],
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    models = {
        "claude": ModelConfig(
            name="claude",
            provider="anthropic",
            model="claude-sonnet-4-20250514",
            api_key_env="ANTHROPIC_API_KEY",
            timeout_sec=60,
            max_tokens=4096,
        ),
        "openai": ModelConfig(
            name="openai",
            provider="openai",
            model="gpt-4o",
            api_key_env="OPENAI_API_KEY",
            timeout_sec=60,
            max_tokens=4096,
        ),
    }
    return AppConfig(
        defaults=sample_defaults_config,
        models=models,
        prompts=sample_prompts_config,
        available_providers={"claude", "openai"},
    )


@pytest.fixture
def sample_session() -> Session:
    return Session(
        goal="Design a TODO API",
        config=SessionConfig(max_rounds=2, convergence_threshold=0.8, round_timeout_sec=5.0),
    )


@pytest.fixture
def three_participants() -> list[Participant]:
    return [
        Participant(name="Architect", role=ParticipantRole.ARCHITECT),
        Participant(name="Critic", role=ParticipantRole.CRITIC),
        Participant(name="Synth", role=ParticipantRole.SYNTHESIZER),
    ]


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()
