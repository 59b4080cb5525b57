"""Divergence detection and convergence scoring over completed rounds."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from thinktank.models import (
    ConvergenceScore,
    Divergence,
    DivergentPosition,
    Round,
    RoundStatus,
    RoundType,
)

logger = logging.getLogger(__name__)

PRIMARY_TOPIC = "Primary approach"
NO_CONVERGENCE_ROUND = "No convergence round completed"
PARTIAL_WEIGHT = 0.5


def _position(contribution) -> DivergentPosition:
    opinion = contribution.opinion
    return DivergentPosition(
        participant_id=contribution.participant_id,
        participant_name=contribution.participant_name,
        position=opinion.reasoning,
        stance=opinion.stance,
    )


def detect_divergences(rnd: Round) -> list[Divergence]:
    """Two-bucket agree/disagree split over the round's parsed opinions.

    Returns one unresolved Divergence on the primary approach when both an
    agree-leaning and a disagree-leaning opinion exist, otherwise nothing.
    Partial stances take no side.
    """
    with_opinion = [c for c in rnd.contributions if c.opinion is not None and not c.failed]
    agreeing = [c for c in with_opinion if c.opinion.stance.is_agreeing]
    disagreeing = [c for c in with_opinion if c.opinion.stance.is_disagreeing]

    if not agreeing or not disagreeing:
        return []

    positions = [_position(c) for c in agreeing] + [_position(c) for c in disagreeing]
    logger.info(
        "Round %d divergence: %d agree vs %d disagree",
        rnd.number,
        len(agreeing),
        len(disagreeing),
    )
    return [Divergence(topic=PRIMARY_TOPIC, positions=positions, resolved=False)]


def latest_convergence_round(rounds: list[Round]) -> Round | None:
    for rnd in reversed(rounds):
        if rnd.round_type is RoundType.CONVERGENCE and rnd.status is RoundStatus.COMPLETE:
            return rnd
    return None


def calculate_convergence(
    rounds: list[Round],
    threshold: float,
    weights: dict[str, float] | None = None,
) -> ConvergenceScore:
    """Score the most recent completed convergence round.

    score = (agree + 0.5 * partial) / total votes, where each vote counts
    ``weights[participant_id]`` (default 1.0). The verdict requires
    ``score >= threshold`` and no disagreeing vote at all.
    """
    rnd = latest_convergence_round(rounds)
    if rnd is None:
        return ConvergenceScore(
            score=0.0,
            is_converged=False,
            blocking_concerns=[NO_CONVERGENCE_ROUND],
        )

    agree = disagree = partial = 0
    weighted_agree = weighted_partial = total_weight = 0.0
    blocking_concerns: list[str] = []

    for contribution in rnd.contributions:
        opinion = contribution.opinion
        if opinion is None or contribution.failed:
            continue
        weight = max(0.0, (weights or {}).get(contribution.participant_id, 1.0))
        total_weight += weight
        if opinion.stance.is_agreeing:
            agree += 1
            weighted_agree += weight
        elif opinion.stance.is_disagreeing:
            disagree += 1
            for concern in opinion.concerns:
                blocking_concerns.append(f"{contribution.participant_name}: {concern}")
        else:
            partial += 1
            weighted_partial += weight

    score = (weighted_agree + weighted_partial * PARTIAL_WEIGHT) / total_weight if total_weight > 0 else 0.0
    score = min(1.0, max(0.0, score))

    return ConvergenceScore(
        score=score,
        agreement_count=agree,
        disagreement_count=disagree,
        partial_count=partial,
        is_converged=score >= threshold and disagree == 0,
        blocking_concerns=blocking_concerns,
    )


def unresolved_divergences(rounds: list[Round]) -> list[Divergence]:
    for rnd in reversed(rounds):
        if rnd.status is RoundStatus.COMPLETE:
            return [d for d in rnd.divergences if not d.resolved]
    return []


def needs_refinement(
    rounds: list[Round],
    threshold: float,
    weights: dict[str, float] | None = None,
) -> bool:
    """True while the latest round carries an unresolved divergence or the latest vote failed."""
    if unresolved_divergences(rounds):
        return True
    return not calculate_convergence(rounds, threshold, weights).is_converged


@dataclass
class Dissent:
    id: str
    round_number: int
    topic: str
    description: str
    participants: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class DissentLog:
    """Tracks unresolved disagreements across rounds, one entry per (round, topic)."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.dissents: list[Dissent] = []

    def analyze_round(self, rnd: Round) -> list[str]:
        """Record the round's unresolved divergences. Returns ids of newly logged ones."""
        new_ids: list[str] = []
        for divergence in rnd.divergences:
            if divergence.resolved:
                continue
            dissent_id = f"round_{rnd.number}_topic_{divergence.topic.replace(' ', '_')}"
            if any(d.id == dissent_id for d in self.dissents):
                continue
            self.dissents.append(
                Dissent(
                    id=dissent_id,
                    round_number=rnd.number,
                    topic=divergence.topic,
                    description=(
                        f"Unresolved disagreement in round {rnd.number} on '{divergence.topic}': "
                        f"{len(divergence.positions)} participants with conflicting stances"
                    ),
                    participants=[p.participant_name for p in divergence.positions],
                )
            )
            new_ids.append(dissent_id)
        return new_ids

    def to_markdown(self) -> str:
        return "".join(f"- **{d.id}**: {d.description}\n" for d in self.dissents)
