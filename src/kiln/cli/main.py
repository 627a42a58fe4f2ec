"""Kiln CLI: main entry point and shared utilities."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console

from kiln.core.models import TargetState

console = Console()

# Color per target state
STATE_STYLES = {
    TargetState.DONE: "green",
    TargetState.UP_TO_DATE: "cyan",
    TargetState.FAILED: "red",
    TargetState.BLOCKED: "magenta",
    TargetState.STALE: "yellow",
    TargetState.PENDING: "dim",
    TargetState.RUNNING: "yellow",
}


def get_state_style(state: TargetState) -> str:
    """Return Rich style string for a target state."""
    return STATE_STYLES.get(state, "white")


def _resolve_plan_path(
    ctx: click.Context, param: click.Parameter, value: str | None,
) -> str:
    """Click callback: default to ./plan.py when no argument is given."""
    if value is not None:
        return value
    default = str(Path.cwd() / "plan.py")
    if not Path(default).exists():
        console.print(
            "[red]Error:[/red] No plan file specified and "
            "[bold]plan.py[/bold] not found in the current directory."
        )
        sys.exit(1)
    return default


def plan_argument(fn):
    """Shared Click argument decorator for PLAN_PATH with ./plan.py default."""
    return click.argument(
        "plan_path",
        required=False,
        default=None,
        callback=_resolve_plan_path,
        is_eager=False,
    )(fn)


def cache_options(fn):
    """Shared --backend / --cache-dir options; unset values fall back to settings."""
    from kiln.storage import available_backends

    fn = click.option(
        "--cache-dir", default=None, type=click.Path(file_okay=False),
        help="Cache directory (default: $KILN_CACHE_DIR or .kiln)",
    )(fn)
    fn = click.option(
        "--backend", default=None, type=click.Choice(available_backends()),
        help="Cache backend (default: $KILN_BACKEND or directory)",
    )(fn)
    return fn


def resolve_settings(backend: str | None = None, cache_dir: str | None = None, **overrides):
    """Settings from the environment with CLI overrides applied."""
    from kiln.config import get_settings

    updates = {k: v for k, v in overrides.items() if v is not None}
    if backend is not None:
        updates["backend"] = backend
    if cache_dir is not None:
        updates["cache_dir"] = Path(cache_dir)
    settings = get_settings()
    return settings.model_copy(update=updates) if updates else settings


def setup_logging(verbose: int) -> None:
    """Route library debug logging to stderr at -vv."""
    if verbose >= 2:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )


@click.group()
@click.version_option(package_name="kiln")
def main():
    """Kiln: incremental builds for computational pipelines."""
    pass


def cli():
    """Entrypoint that loads .env before running the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    main()


# Import subcommand modules to register commands
from kiln.cli.build_commands import make, outdated  # noqa: E402, F401
from kiln.cli.cache_commands import clean, list_entries, show_entry  # noqa: E402, F401

main.add_command(make)
main.add_command(outdated)
main.add_command(list_entries)
main.add_command(show_entry)
main.add_command(clean)
