"""
SPECLOOP CLI: the operator surface

The loop itself runs inside the host's idle handler. These commands
are what a human (or the host plugin) uses around it:

  - specloop init [WORKDIR]          (bootstrap .opencode/ with a config)
  - specloop start --max-iterations  (arm the loop)
  - specloop stop                    (disarm it)
  - specloop idle --session <id>     (deliver one idle signal)
  - specloop status                  (state + backend readiness)
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from specloop.identity import __codename__, __tagline__, __version__, BANNER
from specloop.backend import BeadsBackend
from specloop.config_loader import REPO_CONFIG_NAME, ConfigError, SpecLoopConfig, load_config
from specloop.controller import LoopController, Outcome
from specloop.event_bus import SESSION_IDLE, EventBus
from specloop.host import ConsoleHost
from specloop.state import LoopState, StateStore

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".specloop" / ".env")

app = typer.Typer(
    name="specloop",
    help=f"{__codename__} — {__tagline__}\nAutonomous OpenSpec apply loop over Beads.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    workdir: Optional[Path] = typer.Argument(None, help="Working directory"),
):
    """Initialize the control-data directory with a commented config."""
    _configure_logging(False)
    _print_banner()

    workdir = (workdir or Path.cwd()).resolve()
    config = _load_config_or_exit(workdir)
    control_dir = workdir / config.workspace.control_dir
    control_dir.mkdir(parents=True, exist_ok=True)

    config_path = control_dir / REPO_CONFIG_NAME
    if not config_path.exists():
        config_path.write_text("""# SPECLOOP repo-level config overrides
# These merge with the built-in defaults.

# backend:
#   binary: bd
#   stats_lines: 10
#   timeout: 30

# workspace:
#   spec_root: openspec/changes

# loop:
#   default_max_iterations: 25
#   verify_commands:
#     - "npm test"
#     - "npm run lint"

# notifications:
#   enabled: false
""")

    console.print(f"[green]✅ Initialized SPECLOOP in {control_dir}[/]")
    console.print(f"  Config: {config_path}")
    console.print(f"  State:  {config.state_path(workdir)}")

    if not BeadsBackend(workdir, binary=config.backend.binary).is_available():
        console.print(
            f"\n[yellow]⚠ {config.backend.binary} not found on PATH. "
            "Install Beads: npm install -g @beads/bd[/]"
        )


@app.command()
def start(
    workdir: Path = typer.Option(Path("."), "--workdir", "-w", help="Working directory"),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", "-n", help="Stop after N dispatches (0 = unbounded)"
    ),
    verify: Optional[List[str]] = typer.Option(
        None, "--verify", "-V", help="Verification command (repeatable)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Arm the loop: write an active state, resetting the iteration count."""
    _configure_logging(verbose)

    workdir = workdir.resolve()
    config = _load_config_or_exit(workdir)
    store = StateStore.for_workdir(workdir, config)

    previous = store.load()
    state = LoopState(
        active=True,
        iteration=0,
        max_iterations=config.loop.default_max_iterations if max_iterations is None else max_iterations,
        stuck_count=previous.stuck_count if previous else 0,
        verify_commands=list(verify) if verify else list(config.loop.verify_commands),
    )
    store.save(state)

    limit = str(state.max_iterations) if state.max_iterations > 0 else "unbounded"
    console.print(f"[green]▶ Loop armed[/] in {workdir}  |  max iterations: {limit}")
    if state.verify_commands:
        console.print(f"  [dim]verify: {' && '.join(state.verify_commands)}[/]")


@app.command()
def stop(
    workdir: Path = typer.Option(Path("."), "--workdir", "-w", help="Working directory"),
):
    """Disarm the loop. Counters and reasons are kept for inspection."""
    _configure_logging(False)

    workdir = workdir.resolve()
    config = _load_config_or_exit(workdir)
    store = StateStore.for_workdir(workdir, config)

    state = store.load()
    if state is None:
        console.print("[dim]No loop state found. Nothing to stop.[/]")
        return
    if not state.active:
        console.print("[dim]Loop already stopped.[/]")
        return

    store.save(state.model_copy(update={"active": False}))
    console.print(f"[yellow]■ Loop stopped[/] after {state.iteration} iterations")


@app.command()
def idle(
    workdir: Path = typer.Option(Path("."), "--workdir", "-w", help="Working directory"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Originating session id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Deliver one idle signal to the loop."""
    _configure_logging(verbose)

    workdir = workdir.resolve()
    config = _load_config_or_exit(workdir)
    controller = LoopController.for_workdir(workdir, config=config, host=ConsoleHost(console))

    decisions = []
    bus = EventBus()
    bus.subscribe(lambda event: decisions.append(controller.handle_event(event)))
    bus.emit(SESSION_IDLE, session_id=session)

    decision = decisions[0]
    if decision.outcome is Outcome.INACTIVE:
        console.print("[dim]Loop not active. Nothing to do.[/]")
        return

    color = {
        Outcome.DISPATCHING: "green",
        Outcome.WAITING: "cyan",
        Outcome.STOPPED_COMPLETE: "green",
    }.get(decision.outcome, "yellow")
    console.print(f"[bold {color}]Outcome: {decision.outcome.value}[/]")


@app.command()
def status(
    workdir: Path = typer.Option(Path("."), "--workdir", "-w", help="Working directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Show loop state and backend readiness."""
    _configure_logging(verbose)
    _print_banner()

    workdir = workdir.resolve()
    config = _load_config_or_exit(workdir)
    store = StateStore.for_workdir(workdir, config)
    state = store.load()

    if state is None:
        console.print(f"[dim]No loop state at {store.state_file}[/]")
    else:
        table = Table(title="Loop State", border_style="cyan")
        table.add_column("Field")
        table.add_column("Value")

        table.add_row("Active", "[green]✓ yes[/]" if state.active else "[red]✗ no[/]")
        limit = str(state.max_iterations) if state.max_iterations > 0 else "∞"
        table.add_row("Iteration", f"{state.iteration} / {limit}")
        table.add_row("Current task", state.current_task or "-")
        table.add_row("Verify", " && ".join(state.verify_commands) or "-")
        if state.blocked_reason:
            table.add_row("Blocked reason", f"[red]{state.blocked_reason}[/]")
        if state.stuck_reason:
            table.add_row("Stuck reason", f"[yellow]{state.stuck_reason}[/]")

        console.print(table)

    backend = BeadsBackend(
        workdir,
        binary=config.backend.binary,
        stats_lines=config.backend.stats_lines,
        timeout=config.backend.timeout,
    )
    if backend.is_available():
        console.print(Panel(backend.stats_summary(), title=f"{config.backend.binary} stats", border_style="magenta"))
    else:
        console.print(f"[red]✗ {config.backend.binary} not found on PATH[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_config_or_exit(workdir: Path) -> SpecLoopConfig:
    if not workdir.exists():
        console.print(f"[red]Working directory not found: {workdir}[/]")
        raise typer.Exit(1)
    try:
        return load_config(workdir)
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg, highlight=False, markup=False, end=""),
            level="INFO",
            format="{level:<7} | {message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
