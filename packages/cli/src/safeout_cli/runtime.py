"""Shared helpers for building per-run collaborators from the CLI config."""

from __future__ import annotations

import click

from safeout_core.errors import SafeOutputError


def get_config(ctx: click.Context) -> dict:
    """Return the loaded config, re-raising the load error stored by the group."""
    obj = ctx.obj or {}
    if obj.get("config_error") is not None:
        raise obj["config_error"]
    return obj["config"]


def build_client(config: dict):
    """Return a GitHubClient when a token is configured, else None."""
    from safeout_core.gh.client import GitHubClient

    token = config.get("github_token")
    return GitHubClient(token=token) if token else None


def format_error(exc: Exception) -> str:
    if isinstance(exc, SafeOutputError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"
