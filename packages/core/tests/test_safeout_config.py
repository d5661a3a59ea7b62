"""Tests for configuration loading."""

import json

import pytest

from safeout_core.config import (
    get_default_target_repo,
    load_allowed_repos,
    load_config,
    load_event_context,
    load_mentions_config,
    load_schemas,
)
from safeout_core.errors import ConfigError
from safeout_core.targets import EventContext


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("GITHUB_TOKEN", "SAFEOUT_TARGET_REPO", "SAFEOUT_STAGED"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_applied_when_no_config_file(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"))
    assert config["target_repo"] is None
    assert config["allowed_repos"] == []
    assert config["staged"] is False
    assert config["manifest_path"] == "/tmp/safe-output-items.jsonl"
    assert config["safe_outputs"] == {}
    assert config["github_token"] is None


def test_config_file_overrides_defaults(tmp_path):
    cfg = tmp_path / ".safeout.yml"
    cfg.write_text("target_repo: acme/tracker\nallowed_repos:\n  - acme/*\nsafe_outputs:\n  create-issue:\n    max: 3\n")
    config = load_config(config_path=str(cfg))
    assert config["target_repo"] == "acme/tracker"
    assert config["allowed_repos"] == ["acme/*"]
    assert load_schemas(config)["create_issue"].max == 3


def test_json_config_accepted(tmp_path):
    cfg = tmp_path / "config.json"
    cfg.write_text(json.dumps({"staged": True, "safe_outputs": {"noop": {}}}))
    config = load_config(config_path=str(cfg))
    assert config["staged"] is True
    assert "noop" in load_schemas(config)


def test_cli_overrides_config_file(tmp_path):
    cfg = tmp_path / ".safeout.yml"
    cfg.write_text("staged: false\n")
    config = load_config(config_path=str(cfg), cli_overrides={"staged": True})
    assert config["staged"] is True


def test_none_cli_overrides_ignored(tmp_path):
    cfg = tmp_path / ".safeout.yml"
    cfg.write_text("target_repo: acme/tracker\n")
    config = load_config(config_path=str(cfg), cli_overrides={"target_repo": None})
    assert config["target_repo"] == "acme/tracker"


def test_defaults_not_shared_between_loads(tmp_path):
    first = load_config(config_path=str(tmp_path / "none.yml"))
    first["allowed_repos"].append("acme/*")
    second = load_config(config_path=str(tmp_path / "none.yml"))
    assert second["allowed_repos"] == []


def test_env_vars_loaded(monkeypatch, tmp_path):
    monkeypatch.setenv("GITHUB_TOKEN", "gh-token")
    monkeypatch.setenv("SAFEOUT_TARGET_REPO", "acme/other")
    monkeypatch.setenv("SAFEOUT_STAGED", "Yes")
    config = load_config(config_path=str(tmp_path / "none.yml"))
    assert config["github_token"] == "gh-token"
    assert config["target_repo"] == "acme/other"
    assert config["staged"] is True


def test_staged_env_falsey(monkeypatch, tmp_path):
    monkeypatch.setenv("SAFEOUT_STAGED", "0")
    cfg = tmp_path / ".safeout.yml"
    cfg.write_text("staged: true\n")
    assert load_config(config_path=str(cfg))["staged"] is False


def test_invalid_yaml_raises(tmp_path):
    cfg = tmp_path / ".safeout.yml"
    cfg.write_text("safe_outputs: [unclosed\n")
    with pytest.raises(ConfigError, match="Could not parse"):
        load_config(config_path=str(cfg))


def test_non_mapping_config_raises(tmp_path):
    cfg = tmp_path / ".safeout.yml"
    cfg.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping at the top level"):
        load_config(config_path=str(cfg))


def test_malformed_safe_outputs_raises():
    with pytest.raises(ConfigError):
        load_schemas({"safe_outputs": {"create_issue": {"min": 3, "max": 1}}})


def test_mentions_and_allowed_repos_helpers():
    config = {"mentions": {"allowed": ["alice"]}, "allowed_repos": "acme/a, acme/b"}
    assert load_mentions_config(config).allowed == ["alice"]
    assert load_allowed_repos(config) == {"acme/a", "acme/b"}


# ---------------------------------------------------------------------------
# Event context
# ---------------------------------------------------------------------------


def test_event_context_from_environment(tmp_path):
    event_file = tmp_path / "event.json"
    event_file.write_text(json.dumps({"issue": {"number": 7}}))
    ctx = load_event_context(
        {
            "GITHUB_EVENT_PATH": str(event_file),
            "GITHUB_EVENT_NAME": "issues",
            "GITHUB_REPOSITORY": "acme/widgets",
            "GITHUB_RUN_ID": "99",
            "GITHUB_ACTOR": "octocat",
            "GITHUB_WORKFLOW": "Triage",
        }
    )
    assert ctx.issue_number == 7
    assert ctx.repo == "acme/widgets"
    assert ctx.actor == "octocat"
    assert ctx.workflow == "Triage"
    assert ctx.run_url == "https://github.com/acme/widgets/actions/runs/99"


def test_event_context_unreadable_payload(tmp_path):
    event_file = tmp_path / "event.json"
    event_file.write_text("{not json")
    ctx = load_event_context({"GITHUB_EVENT_PATH": str(event_file), "GITHUB_EVENT_NAME": "issues"})
    assert ctx.payload == {}
    assert ctx.issue_number is None


def test_event_context_missing_payload():
    ctx = load_event_context({})
    assert ctx.payload == {}
    assert ctx.server_url == "https://github.com"


def test_default_target_repo():
    ctx = EventContext(repo="acme/widgets")
    assert get_default_target_repo({"target_repo": None}, ctx) == "acme/widgets"
    assert get_default_target_repo({"target_repo": "acme/tracker"}, ctx) == "acme/tracker"


def test_default_target_repo_missing():
    with pytest.raises(ConfigError, match="No target repository"):
        get_default_target_repo({}, EventContext())
