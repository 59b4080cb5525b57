"""Round-type state machine."""

from thinktank.models import RoundType


class OrchestratorError(RuntimeError):
    """Fatal orchestration failure, raised before a round starts."""


class InvalidTransitionError(OrchestratorError):
    """Raised for a round type that cannot follow the previous one."""

    def __init__(self, previous: RoundType | None, requested: RoundType) -> None:
        self.previous = previous
        self.requested = requested
        prev = previous.value if previous else "start"
        super().__init__(f"Illegal round transition: {prev} -> {requested.value}")


# None stands for "no round has completed yet".
TRANSITIONS: dict[RoundType | None, frozenset[RoundType]] = {
    None: frozenset({RoundType.DRAFT}),
    RoundType.DRAFT: frozenset({RoundType.CRITIQUE}),
    RoundType.CRITIQUE: frozenset({RoundType.RESPONSE, RoundType.SYNTHESIS}),
    RoundType.RESPONSE: frozenset({RoundType.SYNTHESIS}),
    RoundType.SYNTHESIS: frozenset({RoundType.CONVERGENCE}),
    RoundType.CONVERGENCE: frozenset({RoundType.REFINEMENT}),
    RoundType.REFINEMENT: frozenset({RoundType.SYNTHESIS}),
}

# Round types whose contributions carry a parsed Opinion.
OPINION_ROUNDS = frozenset({RoundType.CRITIQUE, RoundType.CONVERGENCE})


def can_transition(previous: RoundType | None, requested: RoundType) -> bool:
    return requested in TRANSITIONS.get(previous, frozenset())


def validate_transition(previous: RoundType | None, requested: RoundType) -> None:
    if not can_transition(previous, requested):
        raise InvalidTransitionError(previous, requested)


def next_round_type(previous: RoundType | None, needs_refinement: bool = False) -> RoundType | None:
    """Canonical successor of ``previous``; None once a convergence round needs nothing more."""
    if previous is None:
        return RoundType.DRAFT
    if previous is RoundType.CONVERGENCE:
        return RoundType.REFINEMENT if needs_refinement else None
    if previous is RoundType.CRITIQUE:
        return RoundType.SYNTHESIS
    (successor,) = TRANSITIONS[previous]
    return successor
