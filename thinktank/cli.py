"""Click CLI: config loading, panel assembly, deliberation, output and task extraction."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, ParticipantConfig, load_config
from thinktank.beadifier import Beadifier, BeadifyConfig, BeadifyTarget
from thinktank.events import (
    EventSubscription,
    ParticipantComplete,
    ParticipantError,
    RoundComplete,
    RoundStarted,
)
from thinktank.goals import parse_goal_file
from thinktank.healthcheck import run_health_checks
from thinktank.models import Participant, ParticipantRole, Session, SessionConfig
from thinktank.orchestrator import DeliberationResult, Orchestrator, OrchestratorError
from thinktank.output import (
    print_beads,
    print_convergence,
    print_round_summary,
    print_synthesis,
    save_to_file,
)
from thinktank.providers.base import AIProvider, ProviderError
from thinktank.providers.registry import build_all_providers, build_provider_chain

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_MIN_PANEL_SIZE = 2

# Roles handed out in order when the panel comes from --models.
_DEFAULT_ROLES = [
    ParticipantRole.ARCHITECT,
    ParticipantRole.CRITIC,
    ParticipantRole.ADVOCATE,
    ParticipantRole.SYNTHESIZER,
    ParticipantRole.SPECIALIST,
]


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _determine_panel(config: AppConfig, models: list[str]) -> list[ParticipantConfig]:
    """--models (or goal-file models) overrides the configured panel."""
    if not models:
        return list(config.defaults.panel)
    return [
        ParticipantConfig(name=name.title(), model=name, role=_DEFAULT_ROLES[i % len(_DEFAULT_ROLES)].value)
        for i, name in enumerate(models)
    ]


def _parse_role(value: str) -> tuple[ParticipantRole, str]:
    """Map a role string onto (role, custom_role)."""
    try:
        return ParticipantRole(value.lower()), ""
    except ValueError:
        return ParticipantRole.CUSTOM, value


def _check_and_filter_providers(providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask the user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(providers))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return providers

    working = {n: p for n, p in providers.items() if n not in failed_names}
    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}")
    console.print(f"Working providers: {', '.join(sorted(working))}")
    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _seat_participants(
    orchestrator: Orchestrator,
    config: AppConfig,
    panel: list[ParticipantConfig],
    working: set[str],
) -> list[Participant]:
    """Register every panel member whose primary model is working. Returns the seated participants."""
    fallbacks = [config.models[n] for n in config.defaults.fallback_order if n in working and n in config.models]
    seated: list[Participant] = []
    for entry in panel:
        if entry.model not in working:
            logger.warning("Skipping %s: model '%s' is not available", entry.name, entry.model)
            continue
        model_cfg = config.models[entry.model]
        role, custom_role = _parse_role(entry.role)
        participant = Participant(
            name=entry.name,
            model_config=model_cfg,
            role=role,
            custom_role=custom_role,
            system_prompt=entry.system_prompt,
            weight=entry.weight,
        )
        try:
            chain = build_provider_chain(model_cfg, fallbacks)
        except ProviderError as exc:
            logger.warning("Skipping %s: %s", entry.name, exc)
            continue
        orchestrator.add_participant(participant, chain)
        seated.append(participant)
    return seated


async def _consume_events(subscription: EventSubscription, progress: Progress, task_id, names: dict[str, str]) -> None:
    """Mirror orchestrator events onto the progress display until the subscription closes."""
    async for event in subscription:
        if isinstance(event, RoundStarted):
            progress.update(task_id, description=f"Round {event.round}: {event.round_type.value}...")
        elif isinstance(event, ParticipantComplete):
            progress.print(f"  [green]OK[/green] {names.get(event.participant_id, '?')} ({event.tokens.total} tokens)")
        elif isinstance(event, ParticipantError):
            name = names.get(event.participant_id, "?")
            if event.retrying_with:
                progress.print(f"  [yellow]RETRY[/yellow] {name} via {event.retrying_with}: {event.error}")
            else:
                progress.print(f"  [red]FAIL[/red] {name}: {event.error}")
        elif isinstance(event, RoundComplete):
            progress.print(f"[green]OK[/green] Round {event.round} {event.status.value}")
    if subscription.dropped:
        logger.debug("Progress display dropped %d events", subscription.dropped)


async def _deliberate_with_progress(orchestrator: Orchestrator, seated: list[Participant]) -> DeliberationResult:
    names = {p.id: p.name for p in seated}
    subscription = orchestrator.subscribe()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    except (NotImplementedError, RuntimeError):
        # Windows event loops do not support signal handlers.
        pass

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("Starting deliberation...", total=None)
        consumer = asyncio.create_task(_consume_events(subscription, progress, task_id, names))
        try:
            return await orchestrator.deliberate()
        finally:
            subscription.close()
            await consumer
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass


async def _beadify(
    decision: str,
    provider: AIProvider,
    epic: str | None,
    spec_dir: Path | None,
) -> None:
    target = BeadifyTarget.SPEC_FILES if spec_dir else BeadifyTarget.BEADS
    beadifier = Beadifier(BeadifyConfig(target=target, epic_id=epic))
    console.print(f"\n[bold]Extracting tasks via {provider.name()}...[/bold]")
    tasks = await beadifier.extract_tasks(decision, provider)
    if not tasks:
        console.print("[yellow]No tasks extracted.[/yellow]")
        return
    if spec_dir is not None:
        paths = beadifier.write_spec_files(tasks, spec_dir)
        console.print(f"[dim]Wrote {len(paths)} spec files to {spec_dir}[/dim]")
    else:
        print_beads(beadifier.to_beads(tasks))


async def _run_session(
    goal: str,
    config: AppConfig,
    panel: list[ParticipantConfig],
    working: dict[str, AIProvider],
    session_config: SessionConfig,
    output_dir: Path,
    beadify: bool,
    epic: str | None,
    spec_dir: Path | None,
    slug_override: str | None = None,
) -> Path:
    """Run one deliberation and return the saved output path."""
    session = Session(goal=goal, config=session_config)
    with Orchestrator(session, config.prompts, event_capacity=config.defaults.event_capacity) as orchestrator:
        seated = _seat_participants(orchestrator, config, panel, set(working))
        if len(seated) < _MIN_PANEL_SIZE:
            console.print(
                f"[bold red]Error:[/bold red] Need at least {_MIN_PANEL_SIZE} participants, got {len(seated)}. "
                "Check API keys in .env or adjust --models."
            )
            sys.exit(1)

        console.print(
            f"\n[bold cyan]Think Tank[/bold cyan]: {len(seated)} participants, "
            f"up to {session_config.max_rounds} refinements, threshold {session_config.convergence_threshold:.0%}"
        )
        console.print("Panel: " + ", ".join(f"{p.name} ({p.role_label})" for p in seated))
        console.print(f"Goal: [italic]{goal[:80]}{'...' if len(goal) > 80 else ''}[/italic]\n")

        result = await _deliberate_with_progress(orchestrator, seated)

        for rnd in result.rounds:
            print_round_summary(rnd)
        print_convergence(result.convergence)
        print_synthesis(result)

        saved_path = save_to_file(
            session, result, output_dir, orchestrator.dissent_log, slug_override, orchestrator.quality
        )
        console.print(f"\n[dim]Saved to: {saved_path}[/dim]")

    if beadify and result.final_synthesis:
        provider = working.get(config.defaults.beadifier_model) or next(iter(working.values()))
        await _beadify(result.final_synthesis, provider, epic, spec_dir)
    return saved_path


@click.command()
@click.argument("goal", required=False)
@click.option("--file", "goal_file", type=click.Path(exists=True), help="Read the goal from a .md file")
@click.option("--models", default=None, help="Comma-separated model list, overrides the configured panel")
@click.option("--max-rounds", default=None, type=int, help="Cap on refinement cycles (default: from config)")
@click.option("--threshold", default=None, type=float, help="Convergence threshold 0-1 (default: from config)")
@click.option("--timeout", default=None, type=float, help="Per-participant round timeout in seconds")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--beadify", is_flag=True, default=False, help="Extract atomic tasks from the final synthesis")
@click.option("--epic", default=None, help="Parent epic id for generated bd commands")
@click.option("--spec-dir", default=None, help="Write tasks as markdown spec files into this directory")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def main(
    goal: str | None,
    goal_file: str | None,
    models: str | None,
    max_rounds: int | None,
    threshold: float | None,
    timeout: float | None,
    output_path: str | None,
    beadify: bool,
    epic: str | None,
    spec_dir: str | None,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Think Tank -- multi-model deliberation until consensus.

    \b
    Examples:
      thinktank "Design a TODO API"
      thinktank "Event sourcing or CRUD?" --models claude,openai,llama
      thinktank --file goal.md --max-rounds 2 --threshold 0.9
      thinktank "Design a TODO API" --beadify --epic bd-a3f8
    """
    # Model output may contain characters the Windows console code page cannot encode.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    file_models: list[str] = []
    file_rounds: int | None = None
    file_threshold: float | None = None
    slug_override: str | None = None
    if goal_file:
        try:
            parsed = parse_goal_file(Path(goal_file))
        except ValueError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            sys.exit(1)
        goal_text = parsed.goal
        file_models, file_rounds, file_threshold = parsed.models, parsed.max_rounds, parsed.threshold
        slug_override = Path(goal_file).stem
    elif goal:
        goal_text = goal
    else:
        console.print("[bold red]Error:[/bold red] Provide a GOAL argument or --file.")
        sys.exit(1)

    # CLI flags win over frontmatter, frontmatter over config defaults.
    model_list = [m.strip() for m in models.split(",") if m.strip()] if models else file_models
    session_config = SessionConfig(
        max_rounds=(
            max_rounds if max_rounds is not None
            else file_rounds if file_rounds is not None
            else config.defaults.max_rounds
        ),
        convergence_threshold=(
            threshold if threshold is not None
            else file_threshold if file_threshold is not None
            else config.defaults.convergence_threshold
        ),
        round_timeout_sec=timeout if timeout is not None else float(config.defaults.round_timeout_sec),
    )
    output_dir = Path(output_path) if output_path else config.defaults.output_dir

    panel = _determine_panel(config, model_list)
    needed = {p.model for p in panel} | set(config.defaults.fallback_order)
    if beadify and config.defaults.beadifier_model:
        needed.add(config.defaults.beadifier_model)
    all_providers = build_all_providers(config.models, config.available_providers & needed)

    if not all_providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        all_providers = _check_and_filter_providers(all_providers)

    try:
        asyncio.run(
            _run_session(
                goal=goal_text,
                config=config,
                panel=panel,
                working=all_providers,
                session_config=session_config,
                output_dir=output_dir,
                beadify=beadify,
                epic=epic,
                spec_dir=Path(spec_dir) if spec_dir else None,
                slug_override=slug_override,
            )
        )
    except (OrchestratorError, ProviderError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
