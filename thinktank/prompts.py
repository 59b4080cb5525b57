"""Round prompt construction from the templates in settings.yaml."""

from config.config_loader import PromptsConfig
from thinktank.models import Participant, Round, RoundType, Session

_SEPARATOR = "\n\n---\n\n"
TEMPLATE_FIELDS = ("participant", "role", "goal", "proposals", "critiques", "synthesis", "concerns")


def _format_contributions(rnd: Round | None) -> str:
    if rnd is None:
        return ""
    return _SEPARATOR.join(
        f"**{c.participant_name}**: {c.content}" for c in rnd.successful_contributions()
    )


def _template(round_type: RoundType, prompts: PromptsConfig) -> str:
    template = getattr(prompts, round_type.value)
    if not template:
        # Response rounds are optional in settings.yaml; critique wording is the closest fit.
        template = prompts.critique
    return template


def template_error(round_type: RoundType, prompts: PromptsConfig) -> str | None:
    """Why the ``round_type`` template cannot be rendered, or None when it can."""
    try:
        _template(round_type, prompts).format(**{name: "" for name in TEMPLATE_FIELDS})
    except (KeyError, IndexError, ValueError) as exc:
        return f"{type(exc).__name__}: {exc}"
    return None


def system_prompt_for(participant: Participant, prompts: PromptsConfig) -> str:
    """Participant's own system prompt, else the persona for its role."""
    if participant.system_prompt:
        return participant.system_prompt
    return prompts.personas.get(participant.role.value, "")


def build_prompt(
    round_type: RoundType,
    participant: Participant,
    session: Session,
    prompts: PromptsConfig,
    blocking_concerns: list[str] | None = None,
) -> str:
    """Render the user prompt ``participant`` receives for a ``round_type`` round.

    Only sealed rounds feed the context: proposals come from the latest Draft
    or Refinement round, critiques from the latest Critique round and the
    synthesis from the latest Synthesis round.
    """
    proposals = _format_contributions(session.latest_round(RoundType.DRAFT, RoundType.REFINEMENT))
    critiques = _format_contributions(session.latest_round(RoundType.CRITIQUE))
    synthesis = _format_contributions(session.latest_round(RoundType.SYNTHESIS))
    concerns = "\n".join(f"- {c}" for c in blocking_concerns or []) or "- none recorded"

    return _template(round_type, prompts).format(
        participant=participant.name,
        role=participant.role_label,
        goal=session.goal,
        proposals=proposals,
        critiques=critiques,
        synthesis=synthesis,
        concerns=concerns,
    )
