"""manifest command — display entities recorded in the audit manifest."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from safeout_core.errors import SafeOutputError
from safeout_cli.runtime import format_error, get_config

console = Console()


@click.command("manifest")
@click.option("--type", "item_type", default=None, help="Only show entries of this type (e.g. create_issue).")
@click.option("--limit", default=20, show_default=True, help="Maximum number of entries to show.")
@click.pass_context
def manifest_cmd(ctx, item_type: str | None, limit: int):
    """Show what previous dispatch runs created.

    Reads the JSONL manifest at manifest_path (default
    /tmp/safe-output-items.jsonl).
    """
    from safeout_cli.cli import _build_manifest

    try:
        config = get_config(ctx)
        manifest = _build_manifest({**config, "staged": False})
    except SafeOutputError as exc:
        raise click.ClickException(format_error(exc)) from exc

    try:
        entries = manifest.list_entries(item_type=item_type.replace("-", "_") if item_type else None)
    finally:
        manifest.close()

    if not entries:
        console.print("[yellow]No manifest entries found.[/yellow]")
        return

    # Show most recent first, capped at --limit.
    entries = list(reversed(entries))[:limit]

    table = Table(title="Created items", show_header=True, header_style="bold cyan")
    table.add_column("Type", style="bold")
    table.add_column("Repo", max_width=30)
    table.add_column("Number", justify="right", width=8)
    table.add_column("Temporary ID", width=14)
    table.add_column("URL", max_width=60)
    table.add_column("Created At", width=20)

    for e in entries:
        table.add_row(
            e.type,
            e.repo or "",
            f"#{e.number}" if e.number is not None else "",
            e.temporary_id or "",
            e.url,
            e.timestamp[:19].replace("T", " "),
        )

    console.print(table)
