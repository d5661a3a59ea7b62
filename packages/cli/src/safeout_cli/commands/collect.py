"""collect command — validate an agent output file into {items, errors}."""

from __future__ import annotations

import json

import click
from rich.console import Console
from rich.table import Table

from safeout_core.collector import CollectedOutput, collect_file
from safeout_core.errors import SafeOutputError
from safeout_core.mentions import MentionResolver
from safeout_core.repos import RepoResolver
from safeout_cli.runtime import build_client, format_error, get_config

console = Console()


def _write_outputs(output_path: str | None, payload: dict) -> None:
    text = json.dumps(payload, indent=2)
    if output_path:
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        click.echo(text)


def _print_summary(result: CollectedOutput) -> None:
    table = Table(title="Collected safe outputs", show_header=True, header_style="bold cyan")
    table.add_column("Type", style="bold")
    table.add_column("Items", justify="right", width=8)
    for item_type in result.output_types:
        table.add_row(item_type, str(result.counts[item_type]))
    console.print(table)

    if result.errors:
        console.print(f"[yellow]{len(result.errors)} line(s) rejected:[/yellow]")
        for error in result.errors:
            console.print(f"  • {error}", markup=False)
    console.print(f"has_patch: [bold]{str(result.has_patch).lower()}[/bold]")


@click.command("collect")
@click.argument("input_path", type=click.Path(dir_okay=False))
@click.option(
    "--output",
    "output_path",
    default=None,
    help="File to write the {items, errors} JSON to. Defaults to stdout.",
)
@click.pass_context
def collect_cmd(ctx, input_path: str, output_path: str | None):
    """Parse, sanitize and validate an agent's NDJSON output file.

    Bad lines are reported with their line number and dropped; every other
    line is still processed. A missing input file is an empty batch.
    """
    from safeout_core.config import load_event_context, load_allowed_repos, load_mentions_config, load_schemas

    try:
        config = get_config(ctx)
        schemas = load_schemas(config)
        event = load_event_context()
        default_repo = config.get("target_repo") or event.repo
        client = build_client(config)

        resolver = MentionResolver(
            load_mentions_config(config),
            lookup_issue_author=client.lookup_issue_author if client else None,
            repo_resolver=RepoResolver(default_repo, load_allowed_repos(config)) if default_repo else None,
        )
        resolver.add_context_participants(event)

        result = collect_file(input_path, schemas, mention_resolver=resolver, patch_dir=config.get("patch_dir"))
    except (SafeOutputError, OSError) as exc:
        message = format_error(exc)
        _write_outputs(output_path, {"items": [], "errors": [message], "has_patch": False})
        raise click.ClickException(message) from exc

    _write_outputs(output_path, {**result.to_dict(), "has_patch": result.has_patch})
    if output_path:
        _print_summary(result)
