"""Parse a contribution's text into an Opinion (stance, reasoning, concerns)."""

import logging
import re

from thinktank.models import Opinion, RoundType, Stance

logger = logging.getLogger(__name__)

_STANCE_WORDS = r"strongly[\s_-]+agree|strongly[\s_-]+disagree|disagree|agree|partial(?:ly)?(?:[\s_-]+agree)?"

_VOTE_LINE = re.compile(
    rf"^[ \t*#>_-]*(?:vote|stance|verdict)[ \t*_]*:[ \t*_]*({_STANCE_WORDS})\b",
    re.IGNORECASE | re.MULTILINE,
)
# Bare upper-case vote anywhere in the text, e.g. "I AGREE with the synthesis".
_BARE_VOTE = re.compile(r"\b(STRONGLY AGREE|STRONGLY DISAGREE|DISAGREE|AGREE|PARTIAL)\b")
_SCORE_LINE = re.compile(r"^[ \t*#>_-]*score[ \t*_]*:[ \t*_]*(\d{1,3})", re.IGNORECASE | re.MULTILINE)
_REASONING_LINE = re.compile(r"^[ \t*#>_-]*reasoning[ \t*_]*:[ \t*_]*(.*)$", re.IGNORECASE | re.MULTILINE)
_CONCERNS_LINE = re.compile(r"^[ \t*#>_-]*concerns[ \t*_]*:[ \t*_]*(.*)$", re.IGNORECASE | re.MULTILINE)
_HEADER_LINE = re.compile(r"^[ \t*#>_-]*[A-Za-z][A-Za-z ]{0,30}[ \t*_]*:\s*")
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*)$")
_EMPTY_CONCERNS = {"none", "n/a", "na", "no concerns", "nothing", "-"}

_STRENGTH = {
    Stance.STRONGLY_AGREE: 1.0,
    Stance.AGREE: 0.75,
    Stance.PARTIAL: 0.5,
    Stance.DISAGREE: 0.75,
    Stance.STRONGLY_DISAGREE: 1.0,
}

_REASONING_FALLBACK_CHARS = 500


def stance_from_word(word: str) -> Stance:
    normalized = re.sub(r"[\s_-]+", " ", word.strip().lower())
    if normalized.startswith("partial"):
        return Stance.PARTIAL
    return {
        "strongly agree": Stance.STRONGLY_AGREE,
        "strongly disagree": Stance.STRONGLY_DISAGREE,
        "agree": Stance.AGREE,
        "disagree": Stance.DISAGREE,
    }[normalized]


def stance_from_score(score: int) -> Stance:
    """Map a 1-100 critique score onto a stance."""
    if score >= 85:
        return Stance.STRONGLY_AGREE
    if score >= 70:
        return Stance.AGREE
    if score >= 50:
        return Stance.PARTIAL
    if score >= 30:
        return Stance.DISAGREE
    return Stance.STRONGLY_DISAGREE


def extract_concerns(content: str) -> list[str]:
    """Bullet items (or inline text) under a CONCERNS: header."""
    match = _CONCERNS_LINE.search(content)
    if not match:
        return []
    concerns: list[str] = []
    inline = match.group(1).strip().strip("*_ ")
    if inline and inline.lower().rstrip(".") not in _EMPTY_CONCERNS:
        concerns.append(inline)
    for line in content[match.end():].splitlines():
        if not line.strip():
            if concerns:
                break
            continue
        bullet = _BULLET.match(line)
        if bullet:
            item = bullet.group(1).strip()
            if item and item.lower().rstrip(".") not in _EMPTY_CONCERNS:
                concerns.append(item)
            continue
        if _HEADER_LINE.match(line):
            break
    return concerns


def extract_reasoning(content: str) -> str:
    match = _REASONING_LINE.search(content)
    if not match:
        text = _VOTE_LINE.sub("", content).strip()
        return text[:_REASONING_FALLBACK_CHARS]
    lines = [match.group(1).strip()]
    for line in content[match.end():].splitlines():
        if _CONCERNS_LINE.match(line) or _VOTE_LINE.match(line) or _SCORE_LINE.match(line):
            break
        lines.append(line.strip())
    return "\n".join(lines).strip()


def parse_opinion(content: str, round_type: RoundType = RoundType.CONVERGENCE) -> Opinion | None:
    """Parse ``content`` into an Opinion, or None when no stance can be found.

    An explicit ``VOTE:``/``STANCE:`` line wins. Convergence rounds fall back
    to a bare upper-case vote word; critique rounds fall back to ``SCORE: n``.
    In critique rounds the clamped score is kept on ``Opinion.score`` either way.
    """
    if not content or not content.strip():
        return None

    stance: Stance | None = None
    strength: float | None = None
    score: int | None = None

    if round_type is RoundType.CRITIQUE:
        found = _SCORE_LINE.search(content)
        if found:
            score = max(1, min(100, int(found.group(1))))

    vote = _VOTE_LINE.search(content)
    if vote:
        stance = stance_from_word(vote.group(1))
    elif score is not None:
        stance = stance_from_score(score)
        strength = round(min(1.0, abs(score - 50) / 50), 2)
    elif round_type is not RoundType.CRITIQUE:
        bare = _BARE_VOTE.search(content)
        if bare:
            stance = stance_from_word(bare.group(1))

    if stance is None:
        logger.debug("No stance found in %s contribution", round_type.value)
        return None

    return Opinion(
        stance=stance,
        reasoning=extract_reasoning(content),
        concerns=extract_concerns(content),
        strength=_STRENGTH[stance] if strength is None else strength,
        score=score,
    )
