"""Dataclasses for the deliberation engine: participants, sessions, rounds, opinions."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from config.config_loader import ModelConfig


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RoundSealedError(RuntimeError):
    """Raised when a sealed round or contribution is mutated."""


class ParticipantRole(str, Enum):
    ARCHITECT = "architect"
    CRITIC = "critic"
    ADVOCATE = "advocate"
    SYNTHESIZER = "synthesizer"
    SPECIALIST = "specialist"
    CUSTOM = "custom"


class RoundType(str, Enum):
    DRAFT = "draft"
    CRITIQUE = "critique"
    RESPONSE = "response"
    SYNTHESIS = "synthesis"
    REFINEMENT = "refinement"
    CONVERGENCE = "convergence"


class RoundStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    CREATING = "creating"
    ACTIVE = "active"
    CONVERGED = "converged"
    STOPPED = "stopped"
    FAILED = "failed"


class Stance(str, Enum):
    STRONGLY_AGREE = "strongly_agree"
    AGREE = "agree"
    PARTIAL = "partial"
    DISAGREE = "disagree"
    STRONGLY_DISAGREE = "strongly_disagree"

    @property
    def is_agreeing(self) -> bool:
        return self in (Stance.AGREE, Stance.STRONGLY_AGREE)

    @property
    def is_disagreeing(self) -> bool:
        return self in (Stance.DISAGREE, Stance.STRONGLY_DISAGREE)


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass(frozen=True)
class Participant:
    name: str
    model_config: ModelConfig | None = None
    role: ParticipantRole = ParticipantRole.SPECIALIST
    custom_role: str = ""
    system_prompt: str = ""
    is_human: bool = False
    weight: float = 1.0
    id: str = field(default_factory=_new_id)

    @property
    def role_label(self) -> str:
        if self.role is ParticipantRole.CUSTOM and self.custom_role:
            return self.custom_role
        return self.role.value

    @classmethod
    def human(cls, name: str, role: ParticipantRole = ParticipantRole.SPECIALIST) -> "Participant":
        """Human participants contribute out-of-band and never get model calls."""
        return cls(name=name, role=role, is_human=True)


@dataclass
class Opinion:
    stance: Stance
    reasoning: str = ""
    concerns: list[str] = field(default_factory=list)
    strength: float = 0.5  # 0.0 to 1.0, how strongly held
    score: int | None = None  # critique score, 1 to 100


@dataclass
class Contribution:
    participant_id: str
    participant_name: str  # snapshot, history stays readable if the participant goes away
    content: str = ""
    opinion: Opinion | None = None
    error: str | None = None
    provider: str = ""
    tokens: TokenUsage = field(default_factory=TokenUsage)
    timestamp: str = field(default_factory=_now)
    id: str = field(default_factory=_new_id)
    sealed: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None

    def append(self, delta: str) -> None:
        if self.sealed:
            raise RoundSealedError(f"Contribution {self.id} is sealed")
        self.content += delta

    def seal(self) -> None:
        self.sealed = True


@dataclass
class DivergentPosition:
    participant_id: str
    participant_name: str
    position: str
    stance: Stance


@dataclass
class Divergence:
    topic: str
    positions: list[DivergentPosition] = field(default_factory=list)
    resolved: bool = False
    resolution: str | None = None
    id: str = field(default_factory=_new_id)


@dataclass
class Round:
    number: int
    round_type: RoundType
    status: RoundStatus = RoundStatus.PENDING
    contributions: list[Contribution] = field(default_factory=list)
    divergences: list[Divergence] = field(default_factory=list)
    id: str = field(default_factory=_new_id)

    @property
    def sealed(self) -> bool:
        return self.status in (RoundStatus.COMPLETE, RoundStatus.SKIPPED)

    def add_contribution(self, contribution: Contribution) -> None:
        if self.sealed:
            raise RoundSealedError(f"Round {self.number} is sealed")
        self.contributions.append(contribution)

    def successful_contributions(self) -> list[Contribution]:
        return [c for c in self.contributions if not c.failed]

    def seal(self, status: RoundStatus = RoundStatus.COMPLETE) -> None:
        if self.sealed:
            raise RoundSealedError(f"Round {self.number} is already sealed")
        for contribution in self.contributions:
            contribution.seal()
        self.status = status


@dataclass
class ConvergenceScore:
    score: float  # 0.0 to 1.0
    agreement_count: int = 0
    disagreement_count: int = 0
    partial_count: int = 0
    is_converged: bool = False
    blocking_concerns: list[str] = field(default_factory=list)


@dataclass
class SessionConfig:
    max_rounds: int = 3
    convergence_threshold: float = 0.8
    round_timeout_sec: float = 300.0


@dataclass
class Session:
    goal: str
    participants: list[Participant] = field(default_factory=list)
    rounds: list[Round] = field(default_factory=list)
    config: SessionConfig = field(default_factory=SessionConfig)
    status: SessionStatus = SessionStatus.CREATING
    total_tokens: TokenUsage = field(default_factory=TokenUsage)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    id: str = field(default_factory=_new_id)

    def add_round(self, rnd: Round) -> None:
        self.rounds.append(rnd)
        self.updated_at = _now()

    def set_status(self, status: SessionStatus) -> None:
        self.status = status
        self.updated_at = _now()

    def completed_rounds(self) -> list[Round]:
        return [r for r in self.rounds if r.status is RoundStatus.COMPLETE]

    def latest_round(self, *round_types: RoundType) -> Round | None:
        """Most recent completed round, optionally restricted to the given types."""
        for rnd in reversed(self.rounds):
            if rnd.status is not RoundStatus.COMPLETE:
                continue
            if not round_types or rnd.round_type in round_types:
                return rnd
        return None
