import json
import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from safeout_core.errors import ConfigError
from safeout_core.mentions import MentionsConfig
from safeout_core.repos import parse_allowed_repos
from safeout_core.schema import TypeSchema, load_type_schemas
from safeout_core.targets import EventContext

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict = {
    "target_repo": None,  # None = the repository the workflow runs in
    "allowed_repos": [],  # extra repositories records may target ("owner/repo", "owner/*", "*")
    "staged": False,  # preview only: no privileged calls, no manifest entries
    "manifest_path": "/tmp/safe-output-items.jsonl",
    "patch_dir": "/tmp",
    "workflow_name": None,
    "mentions": {},
    "footer": True,
    "safe_outputs": {},
}

_TRUTHY = ("1", "true", "yes", "on")


def load_config(config_path: str = ".safeout.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .safeout.yml in the current directory (YAML, so JSON works too)
      3. CLI argument overrides
      4. Environment variables
    """
    config = {**DEFAULT_CONFIG, "allowed_repos": [], "mentions": {}, "safe_outputs": {}}

    path = Path(config_path)
    if path.exists():
        try:
            with open(path) as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Could not parse {config_path}: {exc}") from exc
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials and workflow settings from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    if os.environ.get("SAFEOUT_TARGET_REPO"):
        config["target_repo"] = os.environ["SAFEOUT_TARGET_REPO"]
    if os.environ.get("SAFEOUT_STAGED"):
        config["staged"] = os.environ["SAFEOUT_STAGED"].strip().lower() in _TRUTHY

    return config


def load_schemas(config: dict) -> dict[str, TypeSchema]:
    """Build the per-type schemas from the ``safe_outputs`` section. Raises ConfigError."""
    return load_type_schemas(config.get("safe_outputs"))


def load_mentions_config(config: dict) -> MentionsConfig:
    return MentionsConfig.from_dict(config.get("mentions"))


def load_allowed_repos(config: dict) -> set[str]:
    return parse_allowed_repos(config.get("allowed_repos"))


def load_event_context(environ: Optional[dict] = None) -> EventContext:
    """
    Build the triggering event context from the GitHub Actions environment.

    A missing or unreadable ``GITHUB_EVENT_PATH`` yields an empty payload, so
    ``triggering`` targets resolve to a skip rather than an error.
    """
    env = os.environ if environ is None else environ
    payload: dict = {}
    event_path = env.get("GITHUB_EVENT_PATH")
    if event_path and Path(event_path).exists():
        try:
            payload = json.loads(Path(event_path).read_text(encoding="utf-8")) or {}
        except (OSError, ValueError) as exc:
            logger.warning("Could not read event payload %s: %s", event_path, exc)
            payload = {}

    return EventContext(
        event_name=env.get("GITHUB_EVENT_NAME", ""),
        repo=env.get("GITHUB_REPOSITORY", ""),
        payload=payload if isinstance(payload, dict) else {},
        run_id=env.get("GITHUB_RUN_ID", ""),
        actor=env.get("GITHUB_ACTOR", ""),
        server_url=env.get("GITHUB_SERVER_URL") or "https://github.com",
        workflow=env.get("GITHUB_WORKFLOW", ""),
    )


def get_default_target_repo(config: dict, context: EventContext) -> str:
    """Return the repository records target when they don't name one."""
    repo = config.get("target_repo") or context.repo
    if not repo:
        raise ConfigError("No target repository: set target_repo or GITHUB_REPOSITORY")
    return repo
