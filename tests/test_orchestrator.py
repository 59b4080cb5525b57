"""Tests for thinktank/orchestrator.py, driven by scripted MockProviders."""

import asyncio
import gc

import pytest

from config.config_loader import ModelConfig, PromptsConfig
from thinktank.events import (
    ContentDelta,
    Error,
    ParticipantComplete,
    ParticipantError,
    ParticipantThinking,
    RoundComplete,
    RoundStarted,
)
from thinktank.models import (
    Participant,
    ParticipantRole,
    RoundStatus,
    RoundType,
    Session,
    SessionConfig,
    SessionStatus,
)
from thinktank.orchestrator import InvalidTransitionError, Orchestrator, OrchestratorError
from thinktank.providers.base import NetworkError, RateLimited
from tests.conftest import AGREE_VOTE, MockProvider

DISAGREE_VOTE = "VOTE: DISAGREE\nREASONING: Missing security.\nCONCERNS:\n- no auth"


def _script(*votes: str) -> list[str]:
    """Responses for Draft, Critique, Synthesis, Convergence, then (Refinement, Synthesis, Convergence)*."""
    responses = ["Draft proposal", "SCORE: 60\nCONCERNS:\n- none", "Synthesis v1", votes[0]]
    for i, vote in enumerate(votes[1:], start=2):
        responses += ["Refined proposal", f"Synthesis v{i}", vote]
    return responses


def _session(**config) -> Session:
    return Session(goal="Design a TODO API", config=SessionConfig(**{"round_timeout_sec": 5.0, **config}))


async def test_run_round_event_order(sample_session, sample_prompts_config):
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        architect = Participant(name="A", role=ParticipantRole.ARCHITECT)
        orch.add_participant(architect, [MockProvider("pa", ["Proposal from A"])])
        sub = orch.subscribe()
        rnd = await orch.run_round(RoundType.DRAFT)
        events = sub.drain()

    assert [e.kind for e in events] == [
        "round_started",
        "participant_thinking",
        "content_delta",
        "content_delta",
        "content_delta",
        "participant_complete",
        "round_complete",
    ]
    assert "".join(e.delta for e in events if isinstance(e, ContentDelta)) == "Proposal from A"
    assert rnd.status is RoundStatus.COMPLETE
    assert rnd.number == 1
    assert rnd.contributions[0].content == "Proposal from A"
    assert rnd.contributions[0].provider == "pa"
    assert rnd.contributions[0].tokens.output_tokens == 3
    assert sample_session.rounds == [rnd]
    assert sample_session.status is SessionStatus.ACTIVE
    assert sample_session.total_tokens.total == 13


async def test_per_participant_event_order(sample_session, sample_prompts_config, three_participants):
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        for i, participant in enumerate(three_participants):
            orch.add_participant(participant, [MockProvider(f"p{i}", [f"answer number {i}"], delay=0.01 * i)])
        sub = orch.subscribe()
        await orch.run_round(RoundType.DRAFT)
        events = sub.drain()

    for participant in three_participants:
        own = [e for e in events if getattr(e, "participant_id", None) == participant.id]
        assert isinstance(own[0], ParticipantThinking)
        assert isinstance(own[-1], ParticipantComplete)
        assert all(isinstance(e, ContentDelta) for e in own[1:-1])


async def test_humans_are_skipped_and_persona_used(sample_session, sample_prompts_config):
    provider = MockProvider("pa", ["hello"])
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A", role=ParticipantRole.ARCHITECT), [provider])
        orch.add_participant(Participant.human("Dana"))
        rnd = await orch.run_round(RoundType.DRAFT)

    assert [c.participant_name for c in rnd.contributions] == ["A"]
    assert provider.requests[0].system_prompt == "You are an architect."
    assert "A (architect) drafts for: Design a TODO API" in provider.requests[0].messages[0].content
    assert len(sample_session.participants) == 2


async def test_critique_sees_all_proposals(sample_session, sample_prompts_config):
    a = MockProvider("pa", ["Use REST", "critique"])
    b = MockProvider("pb", ["Use GraphQL", "critique"])
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A"), [a])
        orch.add_participant(Participant(name="B"), [b])
        await orch.run_round(RoundType.DRAFT)
        await orch.run_round(RoundType.CRITIQUE)

    prompt = a.requests[1].messages[0].content
    assert "**A**: Use REST" in prompt
    assert "**B**: Use GraphQL" in prompt
    assert "---" in prompt


async def test_failure_is_isolated(sample_session, sample_prompts_config):
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A"), [MockProvider("pa", ["fine"])])
        orch.add_participant(Participant(name="B"), [MockProvider("pb", fail_with=NetworkError("pb", "down"))])
        sub = orch.subscribe()
        rnd = await orch.run_round(RoundType.DRAFT)
        events = sub.drain()

    assert rnd.status is RoundStatus.COMPLETE
    ok, failed = rnd.contributions
    assert ok.content == "fine" and not ok.failed
    assert failed.failed and "down" in failed.error
    assert any(isinstance(e, ParticipantError) and e.retrying_with is None for e in events)
    assert any(isinstance(e, Error) and "B" in e.message for e in events)
    assert isinstance(events[-1], RoundComplete)


async def test_fallback_before_first_delta(sample_session, sample_prompts_config):
    primary = MockProvider("primary", fail_with=RateLimited("primary", "429"))
    backup = MockProvider("backup", ["Backup answer"])
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A"), [primary, backup])
        sub = orch.subscribe()
        rnd = await orch.run_round(RoundType.DRAFT)
        events = sub.drain()

    contribution = rnd.contributions[0]
    assert contribution.content == "Backup answer"
    assert contribution.provider == "backup"
    assert not contribution.failed
    retries = [e for e in events if isinstance(e, ParticipantError)]
    assert len(retries) == 1 and retries[0].retrying_with == "backup"
    assert not any(isinstance(e, Error) for e in events)


async def test_no_fallback_after_partial_output(sample_session, sample_prompts_config):
    primary = MockProvider("primary", ["one two three"], fail_after_first_delta=True)
    backup = MockProvider("backup")
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A"), [primary, backup])
        rnd = await orch.run_round(RoundType.DRAFT)

    contribution = rnd.contributions[0]
    assert contribution.failed
    assert contribution.content == "one "
    assert backup.calls == 0


async def test_participant_timeout(sample_prompts_config):
    session = _session(round_timeout_sec=0.05)
    with Orchestrator(session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="Fast"), [MockProvider("fast", ["quick"])])
        orch.add_participant(Participant(name="Slow"), [MockProvider("slow", ["late"], delay=1.0)])
        rnd = await orch.run_round(RoundType.DRAFT)

    fast, slow = rnd.contributions
    assert fast.content == "quick"
    assert slow.failed and "timed out" in slow.error
    assert rnd.status is RoundStatus.COMPLETE


async def test_cancel_skips_round_and_stops_session(sample_session, sample_prompts_config):
    with Orchestrator(sample_session, sample_prompts_config, poll_interval=0.01) as orch:
        orch.add_participant(Participant(name="A"), [MockProvider("pa", delay=5.0)])
        sub = orch.subscribe()
        task = asyncio.create_task(orch.run_round(RoundType.DRAFT))
        await asyncio.sleep(0.05)
        orch.cancel()
        rnd = await asyncio.wait_for(task, timeout=1.0)
        events = sub.drain()

        assert rnd.status is RoundStatus.SKIPPED
        assert sample_session.rounds == [rnd]
        assert sample_session.status is SessionStatus.STOPPED
        assert any(isinstance(e, Error) and "cancelled" in e.message for e in events)
        assert isinstance(events[-1], RoundComplete)
        assert events[-1].status is RoundStatus.SKIPPED
        with pytest.raises(OrchestratorError):
            await orch.run_round(RoundType.DRAFT)


async def test_fatal_prechecks_emit_nothing(sample_session, sample_prompts_config):
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        sub = orch.subscribe()
        with pytest.raises(OrchestratorError, match="No participants"):
            await orch.run_round(RoundType.DRAFT)
        orch.add_participant(Participant.human("Dana"))
        with pytest.raises(OrchestratorError, match="No model participants"):
            await orch.run_round(RoundType.DRAFT)
        orch.add_participant(Participant(name="A"), [MockProvider()])
        with pytest.raises(InvalidTransitionError):
            await orch.run_round(RoundType.CONVERGENCE)
        assert sub.try_recv() is None
        assert sample_session.rounds == []


def test_add_participant_validation(sample_session, sample_prompts_config):
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        with pytest.raises(OrchestratorError):
            orch.add_participant(Participant(name="A"), [])
        with pytest.raises(OrchestratorError):
            orch.add_participant(Participant.human("Dana"), [MockProvider()])


def test_one_orchestrator_per_session(sample_session, sample_prompts_config):
    first = Orchestrator(sample_session, sample_prompts_config)
    with pytest.raises(OrchestratorError, match="already has an active orchestrator"):
        Orchestrator(sample_session, sample_prompts_config)
    first.close()
    Orchestrator(sample_session, sample_prompts_config).close()


async def test_deliberate_all_agree(sample_prompts_config, three_participants):
    session = _session(max_rounds=2)
    with Orchestrator(session, sample_prompts_config) as orch:
        for participant in three_participants:
            responses = _script(AGREE_VOTE)
            responses[2] = f"Synthesis text from {participant.name}"
            orch.add_participant(participant, [MockProvider(participant.name.lower(), responses)])
        result = await orch.deliberate()

    assert [r.round_type for r in result.rounds] == [
        RoundType.DRAFT,
        RoundType.CRITIQUE,
        RoundType.SYNTHESIS,
        RoundType.CONVERGENCE,
    ]
    assert result.convergence.agreement_count == 3
    assert result.convergence.disagreement_count == 0
    assert result.convergence.score == 1.0
    assert result.convergence.is_converged
    assert result.refinement_rounds == 0
    assert result.final_synthesis == "Synthesis text from Synth"
    assert not result.cancelled
    assert session.status is SessionStatus.CONVERGED
    assert [s.round_number for s in orch.quality.snapshots] == [2]
    assert orch.quality.latest().average_score == 60.0


async def test_deliberate_refines_until_agreement(sample_prompts_config):
    session = _session(max_rounds=3)
    agreeing = MockProvider("pa", _script(AGREE_VOTE, AGREE_VOTE))
    dissenting = MockProvider("pb", _script(DISAGREE_VOTE, AGREE_VOTE))
    with Orchestrator(session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="Architect"), [agreeing])
        orch.add_participant(Participant(name="Critic"), [dissenting])
        result = await orch.deliberate()

    types = [r.round_type for r in result.rounds]
    assert types[4:] == [RoundType.REFINEMENT, RoundType.SYNTHESIS, RoundType.CONVERGENCE]
    assert result.refinement_rounds == 1
    assert result.convergence.is_converged
    refinement_prompt = agreeing.requests[4].messages[0].content
    assert "- Critic: no auth" in refinement_prompt
    assert orch.dissent_log.dissents[0].round_number == 4


async def test_deliberate_stops_at_refinement_cap(sample_prompts_config):
    session = _session(max_rounds=2)
    agreeing = MockProvider("pa", _script(AGREE_VOTE, AGREE_VOTE, AGREE_VOTE))
    dissenting = MockProvider("pb", _script(DISAGREE_VOTE, DISAGREE_VOTE, DISAGREE_VOTE))
    with Orchestrator(session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="Architect"), [agreeing])
        orch.add_participant(Participant(name="Critic"), [dissenting])
        result = await orch.deliberate()

    refinements = [r for r in result.rounds if r.round_type is RoundType.REFINEMENT]
    assert len(refinements) == result.refinement_rounds == 2
    assert len(result.rounds) == 10
    assert not result.convergence.is_converged
    assert result.convergence.blocking_concerns == ["Critic: no auth"]
    assert session.status is SessionStatus.ACTIVE


async def test_deliberate_all_fail_marks_session_failed(sample_prompts_config):
    session = _session()
    with Orchestrator(session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A"), [MockProvider("pa", fail_with=NetworkError("pa", "down"))])
        with pytest.raises(OrchestratorError, match="All participants failed"):
            await orch.deliberate()
    assert session.status is SessionStatus.FAILED


async def test_deliberate_after_cancel(sample_prompts_config):
    session = _session()
    with Orchestrator(session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A"), [MockProvider()])
        orch.cancel()
        result = await orch.deliberate()
    assert result.cancelled
    assert result.rounds == []
    assert session.status is SessionStatus.STOPPED


async def test_participant_model_settings_reach_every_attempt(sample_session, sample_prompts_config):
    model_cfg = ModelConfig(
        name="claude",
        provider="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=123,
        temperature=0.1,
    )
    primary = MockProvider("primary", fail_with=RateLimited("primary", "429"))
    backup = MockProvider("backup", ["Backup answer"])
    with Orchestrator(sample_session, sample_prompts_config) as orch:
        orch.add_participant(Participant(name="A", model_config=model_cfg), [primary, backup])
        plain_provider = MockProvider("plain")
        orch.add_participant(Participant(name="B"), [plain_provider])
        rnd = await orch.run_round(RoundType.DRAFT)

    assert rnd.contributions[0].content == "Backup answer"
    for request in (primary.requests[0], backup.requests[0]):
        assert request.temperature == 0.1
        assert request.max_tokens == 123
    plain = plain_provider.requests[0]
    assert plain.temperature is None and plain.max_tokens is None


async def test_bad_template_is_rejected_before_round_starts(sample_session):
    prompts = PromptsConfig(
        draft="{participant} {unknown_field}",
        critique="{proposals}",
        synthesis="{critiques}",
        convergence="{synthesis}",
        refinement="{concerns}",
    )
    with Orchestrator(sample_session, prompts) as orch:
        provider = MockProvider()
        orch.add_participant(Participant(name="A"), [provider])
        sub = orch.subscribe()
        with pytest.raises(OrchestratorError, match="draft prompt template.*unknown_field"):
            await orch.run_round(RoundType.DRAFT)
        assert sub.try_recv() is None

    assert sample_session.rounds == []
    assert provider.calls == 0


async def test_deliberate_with_bad_template_marks_nothing_started(sample_session):
    prompts = PromptsConfig(draft="{goal", critique="", synthesis="", convergence="", refinement="")
    with Orchestrator(sample_session, prompts) as orch:
        orch.add_participant(Participant(name="A"), [MockProvider()])
        with pytest.raises(OrchestratorError, match="Invalid draft prompt template"):
            await orch.deliberate()
    assert sample_session.rounds == []


def test_dropped_orchestrator_releases_session(sample_session, sample_prompts_config):
    orch = Orchestrator(sample_session, sample_prompts_config)
    del orch
    gc.collect()
    Orchestrator(sample_session, sample_prompts_config).close()
