"""dispatch command — perform the privileged calls for validated records."""

from __future__ import annotations

import json

import click
from rich.console import Console
from rich.table import Table

from safeout_core.dispatcher import CreatedItem, DispatchContext, DispatchSummary, dispatch_items
from safeout_core.errors import SafeOutputError
from safeout_core.review_buffer import create_review_buffer
from safeout_store.models import ManifestEntry
from safeout_cli.patches import GitPatchPusher
from safeout_cli.runtime import build_client, format_error, get_config

console = Console()


def _created_to_entry(created: CreatedItem) -> ManifestEntry:
    """Map a CreatedItem from the dispatcher to a ManifestEntry for the store.

    The CLI owns this mapping; safeout_core has no store knowledge.
    """
    return ManifestEntry(
        type=created.type,
        url=created.url,
        timestamp=created.timestamp,
        number=created.number,
        repo=created.repo,
        temporary_id=created.temporary_id,
    )


def _write_results(output_path: str | None, summary: DispatchSummary) -> None:
    if output_path:
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(summary.to_dict(), f, indent=2)


def _load_items(path: str) -> list[dict]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Could not read {path}: {format_error(exc)}") from exc
    items = data.get("items") if isinstance(data, dict) else data
    if not isinstance(items, list) or not all(isinstance(item, dict) and "type" in item for item in items):
        raise click.ClickException(f"{path} must contain {{\"items\": [...]}} as written by `safeout collect`")
    return items


def _print_results(summary: DispatchSummary) -> None:
    table = Table(title="Dispatch results", show_header=True, header_style="bold cyan")
    table.add_column("Type", style="bold")
    table.add_column("Status", width=10)
    table.add_column("Target", max_width=50)
    table.add_column("Error", max_width=60)

    for r in summary.results:
        if not r.success:
            status = "[red]failed[/red]"
        elif r.skipped:
            status = "[yellow]skipped[/yellow]"
        elif r.staged:
            status = "[cyan]staged[/cyan]"
        else:
            status = "[green]ok[/green]"
        target = r.url or (f"{r.repo}#{r.number}" if r.repo and r.number else "")
        table.add_row(r.type, status, target, r.error or "")

    if summary.review is not None and not summary.review.skipped:
        status = "[green]ok[/green]" if summary.review.success else "[red]failed[/red]"
        table.add_row("pull request review", status, summary.review.review_url or "", summary.review.error or "")

    console.print(table)


@click.command("dispatch")
@click.argument("validated_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--staged", is_flag=True, help="Preview only: make no privileged calls and write no manifest.")
@click.option("--output", "output_path", default=None, help="File to write the dispatch results JSON to.")
@click.pass_context
def dispatch_cmd(ctx, validated_path: str, staged: bool, output_path: str | None):
    """Dispatch records produced by `safeout collect` to GitHub.

    Records run in order; a failing record does not stop the others.
    Every created issue, comment, pull request or project is appended to the
    audit manifest as soon as it exists. When the batch cannot run at all,
    --output still receives an empty result set.

    \b
    Required environment variables (unless --staged):
      GITHUB_TOKEN         GitHub token with write access (or use gh CLI)
      GITHUB_REPOSITORY    Default target repository (or set target_repo)
    """
    from safeout_core.config import get_default_target_repo, load_allowed_repos, load_event_context, load_schemas
    from safeout_cli.cli import _build_manifest

    try:
        config = get_config(ctx)
        staged = staged or bool(config.get("staged"))
        schemas = load_schemas(config)
        event = load_event_context()
        default_repo = get_default_target_repo(config, event)
    except SafeOutputError as exc:
        _write_results(output_path, DispatchSummary())
        raise click.ClickException(format_error(exc)) from exc

    client = build_client(config)
    if client is None and not staged:
        _write_results(output_path, DispatchSummary())
        raise click.UsageError("No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.")

    try:
        items = _load_items(validated_path)
        manifest = _build_manifest({**config, "staged": staged})
    except click.ClickException:
        _write_results(output_path, DispatchSummary())
        raise
    except SafeOutputError as exc:
        _write_results(output_path, DispatchSummary())
        raise click.ClickException(format_error(exc)) from exc

    dispatch_ctx = DispatchContext(
        client=client,
        schemas=schemas,
        event=event,
        default_repo=default_repo,
        allowed_repos=load_allowed_repos(config),
        staged=staged,
        review_buffer=create_review_buffer(client, include_footer=config.get("footer", True) is not False),
        push_patch=GitPatchPusher(config.get("patch_dir") or "/tmp"),
        on_created=lambda created: manifest.log_created_item(_created_to_entry(created)),
        workflow_name=config.get("workflow_name") or event.workflow,
    )

    try:
        summary = dispatch_items(items, dispatch_ctx)
    except SafeOutputError as exc:
        _write_results(output_path, DispatchSummary())
        raise click.ClickException(format_error(exc)) from exc
    finally:
        manifest.close()

    _write_results(output_path, summary)

    _print_results(summary)
    if summary.failed:
        console.print(f"[red]{len(summary.failed)} record(s) failed.[/red]")
        ctx.exit(1)
