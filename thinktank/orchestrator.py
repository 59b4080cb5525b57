"""Deliberation orchestration: concurrent participant streams, round sealing, refinement loop."""

import asyncio
import logging
import weakref
from contextlib import aclosing
from dataclasses import dataclass, field

from config.config_loader import PromptsConfig
from thinktank.convergence import DissentLog, calculate_convergence, detect_divergences
from thinktank.convergence import needs_refinement as _needs_refinement
from thinktank.events import (
    ContentDelta,
    Error,
    EventBroadcaster,
    EventSubscription,
    ParticipantComplete,
    ParticipantError,
    ParticipantThinking,
    RoundComplete,
    RoundStarted,
)
from thinktank.models import (
    Contribution,
    ConvergenceScore,
    Participant,
    ParticipantRole,
    Round,
    RoundStatus,
    RoundType,
    Session,
    SessionStatus,
)
from thinktank.opinions import parse_opinion
from thinktank.prompts import build_prompt, system_prompt_for, template_error
from thinktank.providers.base import AIProvider, LLMMessage, LLMRequest, MessageRole, ProviderError
from thinktank.quality import QualityTracker
from thinktank.rounds import (
    OPINION_ROUNDS,
    InvalidTransitionError,
    OrchestratorError,
    next_round_type,
    validate_transition,
)

logger = logging.getLogger(__name__)

__all__ = [
    "DeliberationResult",
    "InvalidTransitionError",
    "Orchestrator",
    "OrchestratorError",
]


@dataclass
class _Seat:
    participant: Participant
    providers: list[AIProvider] = field(default_factory=list)


@dataclass
class DeliberationResult:
    rounds: list[Round]
    convergence: ConvergenceScore
    refinement_rounds: int = 0
    final_synthesis: str = ""
    cancelled: bool = False


class Orchestrator:
    """Drives one Session through its rounds and broadcasts progress events.

    Only one Orchestrator may hold a given session id at a time; release it
    with ``close()`` or by using the orchestrator as a context manager. An
    orchestrator that is garbage collected without being closed releases it
    too.
    """

    _active_sessions: set[str] = set()

    def __init__(
        self,
        session: Session,
        prompts: PromptsConfig,
        event_capacity: int = 256,
        poll_interval: float = 0.1,
    ) -> None:
        if session.id in Orchestrator._active_sessions:
            raise OrchestratorError(f"Session {session.id} already has an active orchestrator")
        Orchestrator._active_sessions.add(session.id)
        # Releases the session id if the orchestrator is dropped without close().
        self._release = weakref.finalize(self, Orchestrator._active_sessions.discard, session.id)
        self.session = session
        self.prompts = prompts
        self.poll_interval = poll_interval
        self.events = EventBroadcaster(event_capacity)
        self.dissent_log = DissentLog(session.id)
        self.quality = QualityTracker()
        self._seats: list[_Seat] = []
        self._cancel = asyncio.Event()
        self._closed = False

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()
        self.events.close()

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def subscribe(self) -> EventSubscription:
        return self.events.subscribe()

    def cancel(self) -> None:
        """Request a stop; an in-flight round observes it within one poll interval."""
        logger.info("Cancellation requested for session %s", self.session.id)
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # -- participants ------------------------------------------------------

    def add_participant(self, participant: Participant, providers: list[AIProvider] | None = None) -> None:
        """Register ``participant`` with its adapter chain, primary first.

        Raises:
            OrchestratorError: a model participant without adapters, or a
                human participant given adapters.
        """
        providers = list(providers or [])
        if participant.is_human and providers:
            raise OrchestratorError(f"Human participant {participant.name} cannot take providers")
        if not participant.is_human and not providers:
            raise OrchestratorError(f"Participant {participant.name} needs at least one provider")
        self._seats.append(_Seat(participant=participant, providers=providers))
        if all(p.id != participant.id for p in self.session.participants):
            self.session.participants.append(participant)
        logger.debug(
            "Participant %s (%s) joined with %s",
            participant.name,
            participant.role_label,
            ", ".join(p.name() for p in providers) or "no providers",
        )

    def _ai_seats(self) -> list[_Seat]:
        return [s for s in self._seats if not s.participant.is_human]

    def _weights(self) -> dict[str, float]:
        return {s.participant.id: s.participant.weight for s in self._seats}

    # -- analysis ----------------------------------------------------------

    def convergence(self) -> ConvergenceScore:
        return calculate_convergence(
            self.session.rounds,
            self.session.config.convergence_threshold,
            self._weights(),
        )

    def needs_refinement(self) -> bool:
        return _needs_refinement(
            self.session.rounds,
            self.session.config.convergence_threshold,
            self._weights(),
        )

    def _previous_type(self) -> RoundType | None:
        latest = self.session.latest_round()
        return latest.round_type if latest else None

    # -- rounds ------------------------------------------------------------

    def _precheck(self, round_type: RoundType) -> None:
        if self._closed:
            raise OrchestratorError("Orchestrator is closed")
        if not self._seats:
            raise OrchestratorError("No participants registered")
        if not self._ai_seats():
            raise OrchestratorError("No model participants registered")
        if self.cancelled:
            raise OrchestratorError(f"Session {self.session.id} was cancelled")
        validate_transition(self._previous_type(), round_type)
        problem = template_error(round_type, self.prompts)
        if problem:
            raise OrchestratorError(f"Invalid {round_type.value} prompt template ({problem})")

    async def run_round(self, round_type: RoundType) -> Round:
        """Run one round across every model participant and return it sealed.

        Raises:
            OrchestratorError: nothing to run, illegal transition or a
                cancelled session. Raised before any event is published.
        """
        self._precheck(round_type)
        if self.session.status is SessionStatus.CREATING:
            self.session.set_status(SessionStatus.ACTIVE)

        rnd = Round(
            number=len(self.session.rounds) + 1,
            round_type=round_type,
            status=RoundStatus.IN_PROGRESS,
        )
        seats = self._ai_seats()
        concerns = self.convergence().blocking_concerns if round_type is RoundType.REFINEMENT else None

        logger.info("Starting round %d (%s) with %d participants", rnd.number, round_type.value, len(seats))
        self.events.publish(RoundStarted(round=rnd.number, round_type=round_type))

        tasks = [
            asyncio.create_task(self._run_participant(seat, round_type, concerns))
            for seat in seats
        ]
        if not await self._wait_or_cancel(tasks):
            return self._skip_round(rnd, tasks)

        for task in tasks:
            contribution = task.result()
            if round_type in OPINION_ROUNDS and not contribution.failed:
                contribution.opinion = parse_opinion(contribution.content, round_type)
            rnd.add_contribution(contribution)
            self.session.total_tokens.add(contribution.tokens)

        rnd.divergences = detect_divergences(rnd)
        rnd.seal()
        self.session.add_round(rnd)
        self.dissent_log.analyze_round(rnd)
        if round_type is RoundType.CRITIQUE:
            self.quality.record_round(rnd)

        succeeded = len(rnd.successful_contributions())
        logger.info(
            "Round %d complete: %d/%d participants succeeded",
            rnd.number,
            succeeded,
            len(seats),
        )
        self.events.publish(RoundComplete(round=rnd.number, status=rnd.status))
        return rnd

    async def _wait_or_cancel(self, tasks: list[asyncio.Task]) -> bool:
        """Wait for every task. Returns False if cancellation interrupted the wait."""
        pending = set(tasks)
        while pending:
            if self.cancelled:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                return False
            _, pending = await asyncio.wait(pending, timeout=self.poll_interval)
        return True

    def _skip_round(self, rnd: Round, tasks: list[asyncio.Task]) -> Round:
        for task in tasks:
            if task.done() and not task.cancelled():
                rnd.add_contribution(task.result())
        rnd.seal(RoundStatus.SKIPPED)
        self.session.add_round(rnd)
        self.session.set_status(SessionStatus.STOPPED)
        logger.warning("Round %d cancelled", rnd.number)
        self.events.publish(Error(message=f"Round {rnd.number} cancelled"))
        self.events.publish(RoundComplete(round=rnd.number, status=RoundStatus.SKIPPED))
        return rnd

    async def _run_participant(
        self,
        seat: _Seat,
        round_type: RoundType,
        concerns: list[str] | None,
    ) -> Contribution:
        """Stream one participant's turn. Never raises except on cancellation."""
        participant = seat.participant
        contribution = Contribution(participant_id=participant.id, participant_name=participant.name)
        prompt = build_prompt(round_type, participant, self.session, self.prompts, concerns)
        self.events.publish(ParticipantThinking(participant_id=participant.id, participant_name=participant.name))

        timeout = self.session.config.round_timeout_sec
        try:
            await asyncio.wait_for(self._stream_with_fallback(seat, prompt, contribution), timeout=timeout)
        except TimeoutError:
            self._fail(contribution, f"timed out after {timeout:g}s")
        return contribution

    async def _stream_with_fallback(self, seat: _Seat, prompt: str, contribution: Contribution) -> None:
        participant = seat.participant
        system = system_prompt_for(participant, self.prompts) or None
        # The participant's own settings apply on every attempt, fallbacks included.
        model_cfg = participant.model_config

        for index, provider in enumerate(seat.providers):
            contribution.provider = provider.name()
            request = LLMRequest(
                model=provider.model_string(),
                messages=[LLMMessage(role=MessageRole.USER, content=prompt)],
                system_prompt=system,
                temperature=model_cfg.temperature if model_cfg else None,
                max_tokens=model_cfg.max_tokens if model_cfg else None,
            )
            try:
                async with aclosing(provider.complete_stream(request)) as stream:
                    async for chunk in stream:
                        if chunk.delta:
                            contribution.append(chunk.delta)
                            self.events.publish(ContentDelta(participant_id=participant.id, delta=chunk.delta))
                        if chunk.usage is not None:
                            contribution.tokens = chunk.usage
            except Exception as exc:
                if not isinstance(exc, ProviderError):
                    exc = ProviderError(provider.name(), f"Unexpected error: {exc}")
                has_next = index + 1 < len(seat.providers)
                if not contribution.content and has_next:
                    retrying_with = seat.providers[index + 1].name()
                    logger.warning(
                        "Participant %s failed on %s, retrying with %s: %s",
                        participant.name,
                        provider.name(),
                        retrying_with,
                        exc,
                    )
                    self.events.publish(
                        ParticipantError(participant_id=participant.id, error=str(exc), retrying_with=retrying_with)
                    )
                    continue
                self._fail(contribution, str(exc))
                return

            self.events.publish(
                ParticipantComplete(
                    participant_id=participant.id,
                    content=contribution.content,
                    tokens=contribution.tokens,
                )
            )
            return

    def _fail(self, contribution: Contribution, message: str) -> None:
        contribution.error = message
        logger.warning("Participant %s failed: %s", contribution.participant_name, message)
        self.events.publish(ParticipantError(participant_id=contribution.participant_id, error=message))
        self.events.publish(Error(message=f"{contribution.participant_name}: {message}"))

    # -- full deliberation -------------------------------------------------

    def final_synthesis(self) -> str:
        """Synthesizer's text from the latest synthesis round, else the first successful one."""
        rnd = self.session.latest_round(RoundType.SYNTHESIS)
        if rnd is None:
            return ""
        successful = rnd.successful_contributions()
        if not successful:
            return ""
        synthesizers = {
            s.participant.id for s in self._seats if s.participant.role is ParticipantRole.SYNTHESIZER
        }
        for contribution in successful:
            if contribution.participant_id in synthesizers:
                return contribution.content
        return successful[0].content

    async def deliberate(self) -> DeliberationResult:
        """Run Draft, Critique, Synthesis, Convergence, then refine until converged.

        At most ``max_rounds`` refinement cycles run; reaching the cap ends
        the session without convergence.

        Raises:
            OrchestratorError: nothing to run, or every participant failed
                in a round (session marked FAILED).
        """
        max_refinements = self.session.config.max_rounds
        refinements = sum(1 for r in self.session.rounds if r.round_type is RoundType.REFINEMENT)

        try:
            while not self.cancelled:
                previous = self._previous_type()
                refine = previous is RoundType.CONVERGENCE and self.needs_refinement()
                if refine and refinements >= max_refinements:
                    logger.info("Refinement cap reached (%d), stopping without convergence", max_refinements)
                    break
                round_type = next_round_type(previous, refine)
                if round_type is None:
                    break

                rnd = await self.run_round(round_type)
                if rnd.status is RoundStatus.SKIPPED:
                    break
                if round_type is RoundType.REFINEMENT:
                    refinements += 1
                if not rnd.successful_contributions():
                    raise OrchestratorError(f"All participants failed in round {rnd.number}")
        except Exception as exc:
            if self.session.status is SessionStatus.ACTIVE:
                self.session.set_status(SessionStatus.FAILED)
                self.events.publish(Error(message=str(exc)))
            raise

        score = self.convergence()
        if self.cancelled:
            self.session.set_status(SessionStatus.STOPPED)
        elif score.is_converged:
            self.session.set_status(SessionStatus.CONVERGED)

        logger.info(
            "Deliberation finished: %d rounds, %d refinements, score %.2f, converged=%s",
            len(self.session.rounds),
            refinements,
            score.score,
            score.is_converged,
        )
        return DeliberationResult(
            rounds=list(self.session.rounds),
            convergence=score,
            refinement_rounds=refinements,
            final_synthesis=self.final_synthesis(),
            cancelled=self.cancelled,
        )
