"""
cli.py – Command-line entry point for the Competency Training Engine

Run:
    competency-training seed
    competency-training specialties [--all]
    competency-training agent add <agent_id> <name>
    competency-training start <agent_id> <specialty_id> <target_level> [--max-iterations N]
    competency-training iterate <session_id>
    competency-training progress <session_id>
    competency-training run-scheduler [--ticks N]

Configuration comes from the environment / .env (see config.py).
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import get_settings
from .errors import TrainingError
from .factory import build_training_service
from .models import SessionStatus, TrainingProgress
from .service import TrainingService

console = Console()

STATUS_STYLE = {
    SessionStatus.IN_PROGRESS: "bold cyan",
    SessionStatus.COMPLETED:   "bold green",
    SessionStatus.FAILED:      "bold red",
    SessionStatus.PAUSED:      "bold yellow",
    SessionStatus.RESET:       "dim",
}


# ─── Display helpers ─────────────────────────────────────────────────────────

def _bar(progress: int, width: int = 20) -> str:
    filled = round(progress / 100 * width)
    return "[" + "█" * filled + "░" * (width - filled) + f"] {progress}%"


def show_specialties(service: TrainingService, include_archived: bool) -> None:
    table = Table(box=box.ROUNDED, title="Specialties")
    table.add_column("ID",     style="bold cyan", no_wrap=True)
    table.add_column("Name",   style="white")
    table.add_column("Domain", style="magenta")
    table.add_column("Ladder", style="green")
    for s in service.list_specialties(include_archived=include_archived):
        name = f"{s.name} [dim](archived)[/dim]" if s.is_archived else s.name
        table.add_row(s.id, name, s.domain, " → ".join(s.competency_levels))
    console.print(table)


def show_progress(progress: TrainingProgress) -> None:
    s = progress.session
    summary = Table(box=box.ROUNDED, show_header=False, padding=(0, 1))
    summary.add_column("Key",   style="bold cyan", no_wrap=True)
    summary.add_column("Value", style="white")
    style = STATUS_STYLE.get(s.status, "white")
    summary.add_row("Status",    f"[{style}]{s.status.value}[/{style}]"
                    + (f" [dim]({s.completion_reason.value})[/dim]" if s.completion_reason else ""))
    summary.add_row("Level",     f"{s.current_competency_level} → target {s.target_competency_level}")
    summary.add_row("Progress",  _bar(s.progress))
    summary.add_row("Iteration", f"{s.current_iteration} / {s.max_iterations}")
    summary.add_row("Phase",     s.current_phase.value)
    summary.add_row("Attempts",  f"{progress.tests_passed} passed of {progress.total_attempts}")
    if progress.latest_attempt is not None:
        a = progress.latest_attempt
        verdict = "[green]passed[/green]" if a.passed else "[red]failed[/red]"
        summary.add_row("Latest", f"{a.score}% at {a.competency_level} ({verdict})")
    summary.add_row("Next steps", "\n".join(f"• {step}" for step in progress.next_steps))
    console.print(Panel(summary, title=f"[bold]Session {s.id}[/bold]", border_style="magenta"))


# ─── Argument parsing ────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="competency-training", description=__doc__.splitlines()[1])
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed", help="create the built-in specialties")

    sp = sub.add_parser("specialties", help="list specialties")
    sp.add_argument("--all", action="store_true", help="include archived specialties")

    agent = sub.add_parser("agent", help="manage agents")
    agent_sub = agent.add_subparsers(dest="agent_command", required=True)
    add = agent_sub.add_parser("add", help="register an agent")
    add.add_argument("agent_id")
    add.add_argument("name")
    add.add_argument("--description", default="")

    start = sub.add_parser("start", help="start a training session")
    start.add_argument("agent_id")
    start.add_argument("specialty_id")
    start.add_argument("target_level")
    start.add_argument("--max-iterations", type=int, default=None)

    it = sub.add_parser("iterate", help="run one unattended iteration")
    it.add_argument("session_id")

    pr = sub.add_parser("progress", help="show a progress summary")
    pr.add_argument("session_id")

    rs = sub.add_parser("run-scheduler", help="run the background scheduler in the foreground")
    rs.add_argument("--ticks", type=int, default=None, help="stop after N ticks")

    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _dispatch(args: argparse.Namespace, service: TrainingService) -> None:
    if args.command == "seed":
        created = service.seed_specialties()
        console.print(f"[bold green]✓ Seeded {len(created)} specialt{'y' if len(created) == 1 else 'ies'}.[/bold green]")
        show_specialties(service, include_archived=False)

    elif args.command == "specialties":
        show_specialties(service, include_archived=args.all)

    elif args.command == "agent":
        agent = service.register_agent(args.agent_id, args.name, args.description)
        console.print(f"[bold green]✓ Registered agent[/bold green] {agent.id} ({agent.name})")

    elif args.command == "start":
        session = service.start_training(
            args.agent_id, args.specialty_id, args.target_level, args.max_iterations
        )
        console.print(f"[bold green]✓ Started session[/bold green] {session.id}")
        show_progress(service.get_training_progress(session.id))

    elif args.command == "iterate":
        with console.status("[bold blue]Running training iteration…"):
            outcome = service.run_iteration(args.session_id)
        style = "yellow" if outcome.kind.is_noop else "green"
        console.print(f"[{style}]{outcome.kind.value}[/{style}] {outcome.message}")
        show_progress(service.get_training_progress(args.session_id))

    elif args.command == "progress":
        show_progress(service.get_training_progress(args.session_id))

    elif args.command == "run-scheduler":
        scheduler = service.scheduler
        console.print(Panel.fit(
            "\n".join(f"{k}: {v}" for k, v in scheduler.status().items()),
            title="Scheduler", border_style="cyan",
        ))
        try:
            reports = scheduler.run(ticks=args.ticks)
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted.[/yellow]")
            reports = []
        finally:
            scheduler.shutdown()
        iterations = sum(len(r.iterations) for r in reports)
        console.print(f"[bold green]✓ {len(reports)} tick(s), {iterations} iteration(s).[/bold green]")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(settings.app.log_level)

    service = build_training_service(settings)
    try:
        _dispatch(args, service)
    except TrainingError as exc:
        console.print(f"[bold red]✗ {exc.error_code}:[/bold red] {exc.message}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
