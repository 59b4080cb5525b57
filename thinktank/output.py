"""Rich console output and markdown file save for deliberation results."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from thinktank.convergence import DissentLog
from thinktank.models import Contribution, ConvergenceScore, Round, Session
from thinktank.orchestrator import DeliberationResult
from thinktank.quality import QualityTracker
from thinktank.summary import build_summary, format_transcript

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _contribution_preview(contribution: Contribution, words: int = 50) -> str:
    """Return first N words of a contribution."""
    if contribution.failed:
        return f"[red]Failed:[/red] {contribution.error}"
    all_words = contribution.content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def print_round_summary(rnd: Round) -> None:
    """Print a brief summary of a sealed round to the console."""
    title = f"Round {rnd.number}: {rnd.round_type.value.title()}"
    console.print(Rule(f"[bold cyan]{title}[/bold cyan] ({rnd.status.value})"))
    for contribution in rnd.contributions:
        subtitle = contribution.provider
        if contribution.opinion is not None:
            subtitle += f" | {contribution.opinion.stance.value}"
        console.print(
            Panel(
                _contribution_preview(contribution),
                title=f"[bold]{contribution.participant_name}[/bold]",
                subtitle=subtitle or None,
                border_style="red" if contribution.failed else "dim",
            )
        )
    for divergence in rnd.divergences:
        names = ", ".join(f"{p.participant_name} ({p.stance.value})" for p in divergence.positions)
        console.print(Text(f"Divergence on {divergence.topic}: {names}", style="yellow"))


def print_convergence(score: ConvergenceScore) -> None:
    style = "green" if score.is_converged else "yellow"
    verdict = "CONVERGED" if score.is_converged else "NOT CONVERGED"
    body = (
        f"Score: {score.score:.0%}\n"
        f"Agree: {score.agreement_count} | Partial: {score.partial_count} | "
        f"Disagree: {score.disagreement_count}"
    )
    if score.blocking_concerns:
        body += "\n\nBlocking concerns:\n" + "\n".join(f"- {c}" for c in score.blocking_concerns)
    console.print(Panel(body, title=f"[bold {style}]{verdict}[/bold {style}]", border_style=style))


def print_synthesis(result: DeliberationResult) -> None:
    """Print the final synthesis to the console using Rich markdown."""
    console.print(Rule("[bold green]Final Synthesis[/bold green]"))
    console.print(
        Text(
            f"Rounds: {len(result.rounds)} | "
            f"Refinements: {result.refinement_rounds} | "
            f"Score: {result.convergence.score:.0%}"
            + (" | cancelled" if result.cancelled else ""),
            style="dim",
        )
    )
    console.print(Markdown(result.final_synthesis or "_No synthesis produced._"))


def print_beads(commands: list[str]) -> None:
    console.print(Rule("[bold magenta]Tasks[/bold magenta]"))
    for cmd in commands:
        console.print(Text(cmd))


def save_to_file(
    session: Session,
    result: DeliberationResult,
    output_dir: Path,
    dissent_log: DissentLog | None = None,
    slug_override: str | None = None,
    quality: QualityTracker | None = None,
) -> Path:
    """Save the full deliberation transcript plus consensus summary as markdown.

    Args:
        session: The deliberated session.
        result: Outcome returned by ``Orchestrator.deliberate``.
        output_dir: Directory to save the file in.
        dissent_log: Optional dissent log to append.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the goal text.
        quality: Optional critique score tracker; its report is appended when
            it holds at least one snapshot.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(session.goal)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    panel = ", ".join(
        f"{p.name} ({p.role_label}{', ' + p.model_config.name if p.model_config else ''})"
        for p in session.participants
    )
    summary = build_summary(session, result.final_synthesis, result.convergence)

    lines: list[str] = [
        f"# Think-Tank Session: {session.goal.strip().splitlines()[0][:80] if session.goal.strip() else 'Untitled'}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Session:** {session.id}",
        f"**Status:** {session.status.value}",
        f"**Panel:** {panel}",
        f"**Rounds:** {len(result.rounds)} ({result.refinement_rounds} refinements)",
        f"**Tokens:** {session.total_tokens.total}",
        "",
        "---",
        "",
        format_transcript(result.rounds),
        "",
    ]
    if dissent_log is not None and dissent_log.dissents:
        lines += ["## Dissent Log", "", dissent_log.to_markdown(), ""]
    if quality is not None and quality.snapshots:
        lines += [quality.report().to_markdown(), ""]
    lines += ["---", "", summary.to_markdown(), ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Session saved to: %s", filepath)
    return filepath
