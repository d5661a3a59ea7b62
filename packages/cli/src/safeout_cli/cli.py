"""CLI entry point for safeout.

Commands:
  collect   — validate an agent's output file into records + errors
  dispatch  — perform the privileged GitHub calls for validated records
  manifest  — display entities recorded in the audit manifest
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from safeout_cli.commands.collect import collect_cmd
from safeout_cli.commands.dispatch import dispatch_cmd
from safeout_cli.commands.manifest import manifest_cmd

console = Console()


def _build_manifest(config: dict):
    """Instantiate the audit manifest for a dispatch run.

    staged: true → NoOpManifest (nothing is created, so nothing is logged)
    (default)    → JsonlManifest at manifest_path

    This factory lives in cli.py so neither safeout_core nor safeout_store
    know about the CLI config format.
    """
    from safeout_store.noop import NoOpManifest

    if config.get("staged"):
        return NoOpManifest()

    from safeout_store.jsonl import JsonlManifest

    return JsonlManifest(path=config["manifest_path"])


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # PyGithub logs every request at DEBUG.
    logging.getLogger("github").setLevel(logging.WARNING)


@click.group()
@click.version_option(
    version=importlib.metadata.version("safeout"),
    prog_name="safeout",
)
@click.option(
    "--config",
    "config_path",
    default=".safeout.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="SAFEOUT_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Validate and dispatch an AI agent's safe outputs to GitHub."""
    from safeout_core.config import load_config
    from safeout_core.errors import ConfigError
    from safeout_cli.auth import resolve_github_token

    _configure_logging(verbose)
    ctx.ensure_object(dict)

    # A broken config is batch-fatal; subcommands report it so that
    # `collect` can still write its empty outputs.
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        ctx.obj["config_error"] = exc
        return

    # Resolve token early so all subcommands share the same resolution.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    ctx.obj["config"] = config


main.add_command(collect_cmd)
main.add_command(dispatch_cmd)
main.add_command(manifest_cmd)
