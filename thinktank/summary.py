"""Consensus summary and transcript rendering for a finished session."""

import logging
from dataclasses import dataclass, field

from thinktank.convergence import calculate_convergence
from thinktank.models import ConvergenceScore, Round, RoundType, Session

logger = logging.getLogger(__name__)

WORD_LIMIT = 500
_TRUNCATION_NOTE = "*[Summary truncated to stay within word limit]*"
_DEFAULT_NEXT_STEPS = [
    "Implement the agreed solution",
    "Monitor for any implementation challenges",
]


def format_transcript(rounds: list[Round]) -> str:
    """Format all rounds into a single markdown transcript."""
    parts: list[str] = []
    for rnd in rounds:
        parts.append(f"### Round {rnd.number}: {rnd.round_type.value.title()} ({rnd.status.value})")
        for contribution in rnd.contributions:
            header = f"**{contribution.participant_name}**"
            if contribution.provider:
                header += f" ({contribution.provider})"
            if contribution.failed:
                parts.append(f"{header}\n_Failed: {contribution.error}_")
            else:
                parts.append(f"{header}\n{contribution.content}")
        parts.append("")  # blank line between rounds
    return "\n\n".join(parts)


def trim_to_word_limit(content: str, word_limit: int = WORD_LIMIT) -> str:
    """Cut ``content`` after ``word_limit`` words, keeping line structure."""
    if len(content.split()) <= word_limit:
        return content
    kept: list[str] = []
    remaining = word_limit
    for line in content.splitlines():
        words = line.split()
        if len(words) >= remaining:
            if remaining:
                kept.append(" ".join(words[:remaining]) + "...")
            break
        kept.append(line)
        remaining -= len(words)
    return "\n".join(kept) + "\n\n" + _TRUNCATION_NOTE


@dataclass
class DissentingView:
    participant: str
    concern: str


@dataclass
class ConsensusSummary:
    title: str
    goal: str
    decision: str
    rationale: str = ""
    convergence: ConvergenceScore | None = None
    dissenting_views: list[DissentingView] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    def to_markdown(self, word_limit: int = WORD_LIMIT) -> str:
        lines = [f"# {self.title}", "", f"**Goal:** {self.goal}", ""]
        if self.convergence is not None:
            verdict = "converged" if self.convergence.is_converged else "not converged"
            lines += [f"**Convergence:** {self.convergence.score:.0%} ({verdict})", ""]
        lines += ["## Decision", "", self.decision, ""]
        if self.rationale:
            lines += ["## Rationale", "", self.rationale, ""]
        if self.dissenting_views:
            lines += ["## Dissenting Views", ""]
            for view in self.dissenting_views:
                lines += [f"**{view.participant}:** {view.concern}", ""]
        if self.next_steps:
            lines += ["## Next Steps", ""]
            lines += [f"{i}. {step}" for i, step in enumerate(self.next_steps, 1)]
            lines.append("")
        return trim_to_word_limit("\n".join(lines), word_limit)


def _title_for(goal: str, max_len: int = 60) -> str:
    first_line = goal.strip().splitlines()[0] if goal.strip() else "Untitled"
    if len(first_line) > max_len:
        first_line = first_line[:max_len].rstrip() + "..."
    return f"Consensus: {first_line}"


def build_summary(
    session: Session,
    decision: str = "",
    score: ConvergenceScore | None = None,
) -> ConsensusSummary:
    """Summarise ``session``: final decision, agreeing rationale, dissent and next steps."""
    if not decision:
        latest = session.latest_round(RoundType.SYNTHESIS, RoundType.REFINEMENT, RoundType.DRAFT)
        successful = latest.successful_contributions() if latest else []
        decision = successful[0].content if successful else "No final decision reached."

    if score is None:
        score = calculate_convergence(session.rounds, session.config.convergence_threshold)
    vote = session.latest_round(RoundType.CONVERGENCE)

    rationale_parts: list[str] = []
    dissent: list[DissentingView] = []
    if vote is not None:
        for contribution in vote.successful_contributions():
            opinion = contribution.opinion
            if opinion is None or not opinion.reasoning:
                continue
            if opinion.stance.is_disagreeing:
                dissent.append(DissentingView(participant=contribution.participant_name, concern=opinion.reasoning))
            elif opinion.stance.is_agreeing:
                rationale_parts.append(f"{contribution.participant_name}: {opinion.reasoning}")

    if vote is not None:
        next_steps = [f"Address remaining concern: {c}" for c in score.blocking_concerns]
    else:
        next_steps = []
    if not next_steps:
        next_steps = list(_DEFAULT_NEXT_STEPS)

    logger.debug("Built summary with %d dissenting views", len(dissent))
    return ConsensusSummary(
        title=_title_for(session.goal),
        goal=session.goal,
        decision=decision,
        rationale="\n\n".join(rationale_parts),
        convergence=score,
        dissenting_views=dissent,
        next_steps=next_steps,
    )
