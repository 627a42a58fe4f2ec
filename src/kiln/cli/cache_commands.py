"""Cache browsing commands: kiln list, kiln show, kiln clean."""

from __future__ import annotations

import json
import sys

import click
from rich import box
from rich.pretty import Pretty
from rich.table import Table

from kiln.cli.main import cache_options, console, resolve_settings
from kiln.core.errors import StorageError


@click.command("list")
@cache_options
def list_entries(backend: str | None, cache_dir: str | None):
    """List cached targets with their build time and fingerprint."""
    settings = resolve_settings(backend, cache_dir)
    with settings.open_storage() as storage:
        keys = storage.list_keys()
        if not keys:
            console.print("[dim]No cache entries found.[/dim] Run [bold]kiln make[/bold] first.")
            return

        table = Table(
            title=f"{storage.describe()}: {len(keys)} entries",
            box=box.ROUNDED,
        )
        table.add_column("Target", style="bold", no_wrap=True)
        table.add_column("Fingerprint", style="dim", no_wrap=True)
        table.add_column("Format")
        table.add_column("Built", no_wrap=True)
        table.add_column("Time", justify="right")

        for key in keys:
            try:
                entry = storage.stat(key)
            except StorageError:
                table.add_row(key, "-", "-", "-", "[red]<unreadable>[/red]")
                continue
            if entry is None:
                continue
            # Short digest (7 chars like git)
            digest = entry.fingerprint.get("digest", "")[:7] or "-"
            table.add_row(
                key,
                digest,
                entry.format,
                entry.built_at.strftime("%Y-%m-%d %H:%M:%S"),
                f"{entry.seconds:.2f}s",
            )
    console.print(table)


@click.command("show")
@click.argument("key")
@cache_options
@click.option("--raw", is_flag=True, default=False, help="Show entry metadata as JSON")
def show_entry(key: str, backend: str | None, cache_dir: str | None, raw: bool):
    """Display a cached target's value.

    KEY is the target name.
    """
    settings = resolve_settings(backend, cache_dir)
    with settings.open_storage() as storage:
        try:
            entry = storage.get_entry(key)
        except StorageError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)

    if entry is None:
        console.print(f"[red]Not cached:[/red] {key}")
        sys.exit(1)

    if raw:
        click.echo(json.dumps({
            "key": entry.key,
            "format": entry.format,
            "built_at": entry.built_at.isoformat(),
            "seconds": entry.seconds,
            "fingerprint": entry.fingerprint,
            "metadata": entry.metadata,
        }, indent=2))
        return

    console.print(f"[bold]{entry.key}[/bold] [dim]({entry.format}, {entry.seconds:.2f}s)[/dim]")
    console.print(Pretty(entry.value))
    files_out = entry.metadata.get("files_out", {})
    for path in files_out:
        console.print(f"  [dim]file:[/dim] {path}")


@click.command()
@click.argument("keys", nargs=-1)
@cache_options
@click.option("--all", "all_", is_flag=True, default=False, help="Remove every cache entry")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt")
def clean(keys: tuple[str, ...], backend: str | None, cache_dir: str | None, all_: bool, yes: bool):
    """Remove cache entries so their targets rebuild.

    KEYS are target names. Use --all to destroy the whole cache.
    """
    from kiln.build.runner import clean as clean_entries

    if not keys and not all_:
        console.print("[red]Error:[/red] Name targets to remove, or pass --all.")
        sys.exit(1)

    settings = resolve_settings(backend, cache_dir)
    with settings.open_storage() as storage:
        if all_:
            if not yes:
                console.print(f"This will delete [bold]{storage.describe()}[/bold] and all its entries.")
                if not click.confirm("Continue?"):
                    console.print("[dim]Aborted.[/dim]")
                    return
            storage.destroy()
            console.print(f"[green]Cleaned:[/green] {storage.describe()}")
            return

        removed = clean_entries(storage, *keys)

    for key in keys:
        if key in removed:
            console.print(f"[green]Removed:[/green] {key}")
        else:
            console.print(f"[dim]Not cached:[/dim] {key}")
