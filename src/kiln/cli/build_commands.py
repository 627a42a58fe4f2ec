"""Build commands: kiln make, kiln outdated."""

from __future__ import annotations

import sys

import click
from rich import box
from rich.panel import Panel
from rich.table import Table

from kiln.cli.main import cache_options, console, get_state_style, plan_argument, resolve_settings, setup_logging
from kiln.core.errors import KilnError


def _load(plan_path: str):
    from kiln.plan.loader import load_plan

    try:
        return load_plan(plan_path)
    except Exception as e:
        console.print(f"[red]Error loading plan:[/red] {e}")
        sys.exit(1)


@click.command()
@plan_argument
@cache_options
@click.option("--jobs", "-j", default=None, type=int, help="Targets built at once (default: $KILN_WORKERS or 1)")
@click.option("--executor", type=click.Choice(["thread", "process"]), default=None, help="Worker pool kind")
@click.option("--target", "-t", "targets", multiple=True, help="Build only this target and its dependencies")
@click.option("--force", is_flag=True, default=False, help="Rebuild regardless of the cache")
@click.option("--verbose", "-v", count=True, help="Verbosity level: -v per-target, -vv reasons and debug logging")
def make(
    plan_path: str,
    backend: str | None,
    cache_dir: str | None,
    jobs: int | None,
    executor: str | None,
    targets: tuple[str, ...],
    force: bool,
    verbose: int,
):
    """Bring every target of a plan up to date.

    PLAN_PATH defaults to plan.py in the current directory.
    """
    from kiln.build.runner import run

    setup_logging(verbose)
    plan = _load(plan_path)
    settings = resolve_settings(backend, cache_dir, workers=jobs, executor=executor)
    workers = settings.workers

    console.print(
        Panel(
            f"[bold]Plan:[/bold] {plan.name}\n"
            f"[bold]Cache:[/bold] {settings.backend} ({settings.storage_path})\n"
            f"[bold]Workers:[/bold] {f'{workers} {settings.executor}s' if workers > 1 else 'sequential'}",
            title="[bold cyan]Kiln[/bold cyan]",
            border_style="cyan",
        )
    )

    storage = settings.open_storage()
    try:
        result = run(
            plan,
            storage,
            workers,
            targets=list(targets) or None,
            executor=settings.executor,
            hash_algorithm=settings.hash_algorithm,
            force=force,
            verbosity=max(verbose, 1),
            log_dir=settings.log_dir,
        )
    except KilnError as e:
        console.print(f"[red]Plan failed:[/red] {e}")
        sys.exit(1)
    finally:
        storage.close()

    table = Table(title="Build Summary", box=box.ROUNDED)
    table.add_column("Target", style="bold", no_wrap=True)
    table.add_column("State")
    table.add_column("Time", justify="right")
    table.add_column("Detail", max_width=60)
    for name, target in result.targets.items():
        style = get_state_style(target.state)
        detail = target.error or ", ".join(target.reasons)
        seconds = f"{target.seconds:.2f}s" if target.seconds else ""
        table.add_row(name, f"[{style}]{target.state.value}[/{style}]", seconds, detail)

    console.print()
    console.print(table)
    console.print(
        f"\n[bold]Total:[/bold] {len(result.built)} built, {len(result.skipped)} up to date, "
        f"{len(result.failed)} failed, {len(result.blocked)} blocked"
    )
    console.print(f"[bold]Time:[/bold] {result.total_time:.1f}s")

    if not result.success:
        sys.exit(1)


@click.command()
@plan_argument
@cache_options
@click.option("--target", "-t", "targets", multiple=True, help="Restrict to this target and its dependencies")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output the build plan as JSON")
def outdated(
    plan_path: str,
    backend: str | None,
    cache_dir: str | None,
    targets: tuple[str, ...],
    as_json: bool,
):
    """Show which targets the next make would build, and why.

    PLAN_PATH defaults to plan.py in the current directory.
    """
    from kiln.build.plan import plan_build

    plan = _load(plan_path)
    settings = resolve_settings(backend, cache_dir)

    storage = settings.open_storage()
    try:
        build_plan = plan_build(
            plan, storage, targets=list(targets) or None, hash_algorithm=settings.hash_algorithm,
        )
    except KilnError as e:
        console.print(f"[red]Plan failed:[/red] {e}")
        sys.exit(1)
    finally:
        storage.close()

    if as_json:
        click.echo(build_plan.to_json())
        return

    if not build_plan.outdated:
        console.print(f"[green]All {len(build_plan.targets)} targets are up to date.[/green]")
        return

    table = Table(title=f"Outdated: {build_plan.plan_name}", box=box.ROUNDED)
    table.add_column("Target", style="bold", no_wrap=True)
    table.add_column("Status")
    table.add_column("Reasons", max_width=70)
    for target in build_plan.targets:
        if target.status == "cached":
            continue
        style = "yellow" if target.status == "rebuild" else "blue"
        table.add_row(target.name, f"[{style}]{target.status}[/{style}]", "; ".join(target.reasons))
    console.print(table)
    console.print(
        f"\n[bold]Total:[/bold] {build_plan.total_new} new, {build_plan.total_rebuild} rebuild, "
        f"{build_plan.total_cached} cached"
    )
