"""Tests for dispatching validated records."""

from unittest.mock import MagicMock

import pytest
from github import GithubException

from safeout_core.dispatcher import (
    DispatchContext,
    DispatchResult,
    dispatch_item,
    dispatch_items,
    extract_created_item,
)
from safeout_core.errors import ManifestError
from safeout_core.review_buffer import create_review_buffer
from safeout_core.schema import load_type_schemas
from safeout_core.targets import EventContext

ISSUE_EVENT = EventContext(
    event_name="issues",
    repo="acme/widgets",
    payload={"issue": {"number": 7}},
    run_id="42",
    workflow="Triage",
)
PR_EVENT = EventContext(
    event_name="pull_request",
    repo="acme/widgets",
    payload={"pull_request": {"number": 9, "head": {"sha": "deadbeef"}}},
    run_id="42",
    workflow="Review",
)
PUSH_EVENT = EventContext(event_name="push", repo="acme/widgets", run_id="42")


def make_client():
    client = MagicMock()
    client.create_issue.return_value = {"id": 1, "number": 101, "url": "https://github.com/acme/widgets/issues/101"}
    client.create_comment.return_value = {"id": 2, "url": "https://github.com/acme/widgets/issues/7#issuecomment-2"}
    client.update_issue.return_value = {"number": 7, "url": "https://github.com/acme/widgets/issues/7"}
    client.close_issue.return_value = {"number": 7, "url": "https://github.com/acme/widgets/issues/7"}
    client.create_pull_request.return_value = {"number": 55, "url": "https://github.com/acme/widgets/pull/55"}
    client.create_review.return_value = {"id": 3, "url": "https://github.com/acme/widgets/pull/9#pullrequestreview-3"}
    client.add_sub_issue.return_value = {"number": 101, "url": "https://github.com/acme/widgets/issues/101"}
    client.update_release.return_value = {"id": 4, "url": "https://github.com/acme/widgets/releases/v1", "tag": "v1"}
    client.create_project.return_value = {"id": "PVT_1", "number": 3, "url": "https://github.com/orgs/acme/projects/3"}
    return client


def make_ctx(client=None, safe_outputs=None, event=ISSUE_EVENT, **kwargs):
    return DispatchContext(
        client=client,
        schemas=load_type_schemas(safe_outputs or {}),
        event=event,
        default_repo="acme/widgets",
        **kwargs,
    )


# ---------------------------------------------------------------------------
# create_issue
# ---------------------------------------------------------------------------


class TestCreateIssue:
    ITEM = {"type": "create_issue", "title": "Flaky test", "body": "It fails sometimes", "temporary_id": "aw_abc123"}

    def test_creates_issue_and_reports_created_item(self):
        client = make_client()
        created = []
        ctx = make_ctx(client, {"create_issue": {}}, on_created=created.append)

        result = dispatch_item(dict(self.ITEM), ctx)

        client.create_issue.assert_called_once_with(
            "acme/widgets", "Flaky test", "It fails sometimes", labels=[], assignees=None
        )
        assert result.success
        assert result.number == 101
        assert result.url == "https://github.com/acme/widgets/issues/101"
        assert [(c.type, c.url, c.number, c.temporary_id) for c in created] == [
            ("create_issue", "https://github.com/acme/widgets/issues/101", 101, "aw_abc123")
        ]
        assert "aw_abc123" in ctx.temporary_ids

    def test_staged_makes_no_calls_and_records_nothing(self):
        client = make_client()
        created = []
        ctx = make_ctx(client, {"create_issue": {}}, staged=True, on_created=created.append)

        result = dispatch_item(dict(self.ITEM), ctx)

        assert result.success
        assert result.staged
        assert result.details["title"] == "Flaky test"
        client.create_issue.assert_not_called()
        assert created == []

    def test_title_prefix_and_labels_from_config(self):
        client = make_client()
        ctx = make_ctx(client, {"create_issue": {"title-prefix": "[bot] ", "labels": ["automation"]}})
        dispatch_item({**self.ITEM, "labels": ["bug", "automation"]}, ctx)
        args, kwargs = client.create_issue.call_args
        assert args[1] == "[bot] Flaky test"
        assert kwargs["labels"] == ["automation", "bug"]

    def test_parent_linked_after_creation(self):
        client = make_client()
        ctx = make_ctx(client, {"create_issue": {}})
        result = dispatch_item({**self.ITEM, "parent": 12}, ctx)
        client.add_sub_issue.assert_called_once_with("acme/widgets", 12, 101)
        assert result.details == {"parent": 12}

    def test_failed_parent_link_does_not_fail_record(self):
        client = make_client()
        client.add_sub_issue.side_effect = GithubException(404, {"message": "Not Found"}, None)
        ctx = make_ctx(client, {"create_issue": {}})
        result = dispatch_item({**self.ITEM, "parent": 12}, ctx)
        assert result.success
        assert "parent_error" in result.details

    def test_cross_repo_not_allowed_while_siblings_continue(self):
        client = make_client()
        ctx = make_ctx(client, {"create_issue": {"max": 2}})
        summary = dispatch_items(
            [
                {**self.ITEM, "repo": "evil/repo"},
                {"type": "create_issue", "title": "Second", "body": "ok"},
            ],
            ctx,
        )
        first, second = summary.results
        assert not first.success
        assert first.error.startswith("E_REPO_NOT_ALLOWED: Repository 'evil/repo'")
        assert second.success
        client.create_issue.assert_called_once()

    def test_per_type_target_repo(self):
        client = make_client()
        ctx = make_ctx(client, {"create_issue": {"target-repo": "acme/tracker"}})
        result = dispatch_item(dict(self.ITEM), ctx)
        assert client.create_issue.call_args.args[0] == "acme/tracker"
        assert result.repo == "acme/tracker"

    def test_api_error_reported_with_status(self):
        client = make_client()
        client.create_issue.side_effect = GithubException(403, {"message": "Resource not accessible by integration"}, None)
        result = dispatch_item(dict(self.ITEM), make_ctx(client, {"create_issue": {}}))
        assert not result.success
        assert result.error == "E_API: Resource not accessible by integration (status 403)"

    def test_manifest_failure_propagates(self):
        client = make_client()
        on_created = MagicMock(side_effect=ManifestError("Failed to write to manifest file: disk full"))
        ctx = make_ctx(client, {"create_issue": {}}, on_created=on_created)
        with pytest.raises(ManifestError):
            dispatch_item(dict(self.ITEM), ctx)


# ---------------------------------------------------------------------------
# Temporary IDs across records
# ---------------------------------------------------------------------------


class TestTemporaryIds:
    def test_comment_on_issue_created_earlier_in_batch(self):
        client = make_client()
        ctx = make_ctx(client, {"create_issue": {}, "add_comment": {"target": "*"}})
        summary = dispatch_items(
            [
                {"type": "create_issue", "title": "Parent", "body": "x", "temporary_id": "aw_abc123"},
                {"type": "add_comment", "item_number": "#aw_abc123", "body": "Tracked in #aw_abc123"},
            ],
            ctx,
        )
        assert all(r.success for r in summary.results)
        client.create_comment.assert_called_once_with("acme/widgets", 101, "Tracked in #101")
        assert summary.temporary_ids == {"aw_abc123": {"repo": "acme/widgets", "number": 101}}

    def test_forward_reference_is_deferred(self):
        client = make_client()
        calls = MagicMock()
        calls.attach_mock(client.create_project, "create_project")
        calls.attach_mock(client.create_project_status_update, "create_project_status_update")
        ctx = make_ctx(client, {"create_project": {}, "create_project_status_update": {}})

        summary = dispatch_items(
            [
                {"type": "create_project_status_update", "project": "#aw_proj01", "body": "On track", "status": "ON_TRACK"},
                {"type": "create_project", "title": "Roadmap", "temporary_id": "aw_proj01"},
            ],
            ctx,
        )

        assert [r.type for r in summary.results] == ["create_project_status_update", "create_project"]
        assert all(r.success for r in summary.results)
        assert [c[0] for c in calls.mock_calls] == ["create_project", "create_project_status_update"]
        client.create_project_status_update.assert_called_once_with(
            "https://github.com/orgs/acme/projects/3", "On track", status="ON_TRACK", start_date=None, target_date=None
        )

    def test_chained_forward_references_resolve(self):
        client = make_client()
        client.create_issue.side_effect = [
            {"id": 1, "number": 101, "url": "https://github.com/acme/widgets/issues/101"},
            {"id": 2, "number": 102, "url": "https://github.com/acme/widgets/issues/102"},
        ]
        ctx = make_ctx(client, {"create_issue": {"max": 2}, "add_comment": {"target": "*"}})

        summary = dispatch_items(
            [
                {"type": "add_comment", "item_number": "#aw_bbb111", "body": "Follow-up"},
                {"type": "create_issue", "title": "Outer", "body": "see #aw_ccc111", "temporary_id": "aw_bbb111"},
                {"type": "create_issue", "title": "Inner", "body": "root cause", "temporary_id": "aw_ccc111"},
            ],
            ctx,
        )

        assert all(r.success for r in summary.results), [r.error for r in summary.results]
        assert [c.args[1] for c in client.create_issue.call_args_list] == ["Inner", "Outer"]
        assert client.create_issue.call_args_list[1].args[2] == "see #102"
        client.create_comment.assert_called_once_with("acme/widgets", 102, "Follow-up")
        assert summary.temporary_ids == {
            "aw_ccc111": {"repo": "acme/widgets", "number": 101},
            "aw_bbb111": {"repo": "acme/widgets", "number": 102},
        }

    def test_reference_cycle_fails_instead_of_looping(self):
        client = make_client()
        ctx = make_ctx(client, {"create_issue": {"max": 2}})

        summary = dispatch_items(
            [
                {"type": "create_issue", "title": "A", "body": "see #aw_bbb222", "temporary_id": "aw_aaa222"},
                {"type": "create_issue", "title": "B", "body": "see #aw_aaa222", "temporary_id": "aw_bbb222"},
            ],
            ctx,
        )

        assert len(summary.results) == 2
        assert client.create_issue.call_count == 2

    def test_project_without_temporary_id_is_minted_one(self, mocker):
        mocker.patch("safeout_core.dispatcher.generate_temporary_id", return_value="aw_gen001")
        client = make_client()
        created = []
        ctx = make_ctx(client, {"create_project": {}}, on_created=created.append, workflow_name="Planner")

        (result,) = dispatch_items([{"type": "create_project"}], ctx).results

        client.create_project.assert_called_once_with("acme", "org", "Planner project")
        assert result.temporary_id == "aw_gen001"
        assert created[0].temporary_id == "aw_gen001"

    def test_project_item_url_resolved_from_issue_temporary_id(self):
        client = make_client()
        ctx = make_ctx(client, {"create_issue": {}, "create_project": {}})
        dispatch_items(
            [
                {"type": "create_project", "title": "Roadmap", "item_url": "https://github.com/acme/widgets/issues/#aw_abc123"},
                {"type": "create_issue", "title": "Task", "body": "x", "temporary_id": "aw_abc123"},
            ],
            ctx,
        )
        client.add_project_item.assert_called_once_with(
            "https://github.com/orgs/acme/projects/3", "https://github.com/acme/widgets/issues/101"
        )

    def test_unknown_temporary_id_fails_record(self):
        ctx = make_ctx(make_client(), {"add_comment": {"target": "*"}})
        (result,) = dispatch_items([{"type": "add_comment", "item_number": "aw_zzz999", "body": "x"}], ctx).results
        assert not result.success
        assert result.error.startswith("E_TEMPORARY_ID: Temporary ID 'aw_zzz999' not found in map")

    def test_link_sub_issue_with_temporary_parent(self):
        client = make_client()
        client.create_issue.side_effect = [
            {"id": 1, "number": 101, "url": "https://github.com/acme/widgets/issues/101"},
            {"id": 2, "number": 102, "url": "https://github.com/acme/widgets/issues/102"},
        ]
        ctx = make_ctx(client, {"create_issue": {"max": 2}, "link_sub_issue": {}})
        summary = dispatch_items(
            [
                {"type": "create_issue", "title": "Epic", "body": "x", "temporary_id": "aw_epic01"},
                {"type": "create_issue", "title": "Task", "body": "y", "temporary_id": "aw_task01"},
                {"type": "link_sub_issue", "parent_issue_number": "aw_epic01", "sub_issue_number": "aw_task01"},
            ],
            ctx,
        )
        assert all(r.success for r in summary.results)
        client.add_sub_issue.assert_called_once_with("acme/widgets", 101, 102)


# ---------------------------------------------------------------------------
# Issue and comment types
# ---------------------------------------------------------------------------


class TestIssueTypes:
    def test_add_comment_on_triggering_issue(self):
        client = make_client()
        result = dispatch_item({"type": "add_comment", "body": "Thanks!"}, make_ctx(client, {"add_comment": {}}))
        client.create_comment.assert_called_once_with("acme/widgets", 7, "Thanks!")
        assert result.number == 7

    def test_triggering_outside_context_is_skipped(self):
        client = make_client()
        result = dispatch_item(
            {"type": "add_comment", "body": "Thanks!"}, make_ctx(client, {"add_comment": {}}, event=PUSH_EVENT)
        )
        assert result.success
        assert result.skipped
        client.create_comment.assert_not_called()

    def test_add_labels(self):
        client = make_client()
        result = dispatch_item({"type": "add_labels", "labels": ["bug"]}, make_ctx(client, {"add_labels": {}}))
        client.add_labels.assert_called_once_with("acme/widgets", 7, ["bug"])
        assert result.details == {"labels": ["bug"]}

    def test_update_issue(self):
        client = make_client()
        dispatch_item({"type": "update_issue", "title": "New title", "status": "open"}, make_ctx(client, {"update_issue": {}}))
        client.update_issue.assert_called_once_with("acme/widgets", 7, title="New title", body=None, state="open")

    def test_update_issue_skips_in_pull_request_context(self):
        result = dispatch_item(
            {"type": "update_issue", "title": "x"}, make_ctx(make_client(), {"update_issue": {}}, event=PR_EVENT)
        )
        assert result.skipped

    def test_close_issue_with_explicit_target(self):
        client = make_client()
        dispatch_item({"type": "close_issue", "body": "Done"}, make_ctx(client, {"close_issue": {"target": 7}}, event=PUSH_EVENT))
        client.close_issue.assert_called_once_with("acme/widgets", 7, "Done")

    def test_update_release(self):
        client = make_client()
        result = dispatch_item(
            {"type": "update_release", "tag": "v1", "operation": "append", "body": "Notes"},
            make_ctx(client, {"update_release": {}}),
        )
        client.update_release.assert_called_once_with("acme/widgets", "Notes", operation="append", tag="v1")
        assert result.details == {"tag": "v1"}


# ---------------------------------------------------------------------------
# Pull requests and reviews
# ---------------------------------------------------------------------------


class TestPullRequests:
    ITEM = {"type": "create_pull_request", "title": "Fix", "body": "Fixes it", "branch": "fix-it"}

    def test_pushes_patch_then_opens_pull_request(self):
        client = make_client()
        push_patch = MagicMock(return_value="fix-it")
        ctx = make_ctx(client, {"create_pull_request": {"base": "main", "labels": ["automation"]}}, push_patch=push_patch)

        result = dispatch_item(dict(self.ITEM), ctx)

        assert push_patch.call_args.args[1].slug == "acme/widgets"
        client.create_pull_request.assert_called_once_with(
            "acme/widgets", "Fix", "Fixes it", head="fix-it", base="main", draft=False
        )
        client.add_labels.assert_called_once_with("acme/widgets", 55, ["automation"])
        assert result.url == "https://github.com/acme/widgets/pull/55"

    def test_without_patch_capability_fails(self):
        client = make_client()
        result = dispatch_item(dict(self.ITEM), make_ctx(client, {"create_pull_request": {}}))
        assert not result.success
        assert "No patch capability configured" in result.error
        client.create_pull_request.assert_not_called()


class TestReviews:
    def comment(self, line, **extra):
        return {"type": "create_pull_request_review_comment", "path": "app.py", "line": line, "body": f"Nit {line}", **extra}

    def test_comments_submitted_as_one_review(self):
        client = make_client()
        ctx = make_ctx(
            client,
            {"create_pull_request_review_comment": {"max": 10}, "submit_pull_request_review": {}},
            event=PR_EVENT,
            review_buffer=create_review_buffer(client),
        )

        summary = dispatch_items(
            [self.comment(1), self.comment(2), {"type": "submit_pull_request_review", "body": "LGTM", "event": "APPROVE"}],
            ctx,
        )

        client.create_review.assert_called_once()
        args, kwargs = client.create_review.call_args
        assert args == ("acme/widgets", 9)
        assert kwargs["commit_id"] == "deadbeef"
        assert kwargs["event"] == "APPROVE"
        assert kwargs["body"].startswith("LGTM\n\n> AI generated by [Review](https://github.com/acme/widgets/actions/runs/42) for #9")
        assert len(kwargs["comments"]) == 2
        assert summary.review.success
        assert summary.failed == []
        client.get_pull_head_sha.assert_not_called()

    def test_comment_on_other_pull_request_rejected(self):
        client = make_client()
        client.get_pull_head_sha.return_value = "cafe"
        ctx = make_ctx(
            client,
            {"create_pull_request_review_comment": {"max": 10, "target": "*"}},
            event=PR_EVENT,
            review_buffer=create_review_buffer(client),
        )
        summary = dispatch_items(
            [self.comment(1, pull_request_number=9), self.comment(2, pull_request_number=10)], ctx
        )
        assert summary.results[0].success
        assert summary.results[1].error.startswith("E_REVIEW: Review comments must target the same PR")
        assert len(client.create_review.call_args.kwargs["comments"]) == 1

    def test_footer_disabled_by_config(self):
        client = make_client()
        ctx = make_ctx(
            client,
            {"create_pull_request_review_comment": {"footer": False}, "submit_pull_request_review": {}},
            event=PR_EVENT,
            review_buffer=create_review_buffer(client),
        )
        dispatch_items([self.comment(1), {"type": "submit_pull_request_review", "body": "LGTM"}], ctx)
        assert client.create_review.call_args.kwargs["body"] == "LGTM"

    def test_staged_review_never_submitted(self):
        client = make_client()
        buffer = create_review_buffer(client)
        ctx = make_ctx(client, {"create_pull_request_review_comment": {}}, event=PR_EVENT, staged=True, review_buffer=buffer)
        summary = dispatch_items([self.comment(1)], ctx)
        assert summary.results[0].staged
        assert summary.review is None
        assert buffer.buffered_count == 0
        client.create_review.assert_not_called()


# ---------------------------------------------------------------------------
# Reports and unsupported types
# ---------------------------------------------------------------------------


class TestOtherTypes:
    def test_noop_and_missing_tool_make_no_calls(self):
        client = make_client()
        summary = dispatch_items(
            [{"type": "noop", "message": "Nothing to do"}, {"type": "missing_tool", "tool": "docker", "reason": "needed"}],
            make_ctx(client, {"noop": {}, "missing_tool": {}}),
        )
        assert all(r.success for r in summary.results)
        assert summary.results[1].details["tool"] == "docker"
        assert client.mock_calls == []

    @pytest.mark.parametrize("item_type", ["create_discussion", "deploy"])
    def test_types_without_handler_fail(self, item_type):
        result = dispatch_item({"type": item_type, "title": "x", "body": "y"}, make_ctx(make_client()))
        assert not result.success
        assert f"No handler loaded for type '{item_type}'" in result.error


# ---------------------------------------------------------------------------
# extract_created_item / summary
# ---------------------------------------------------------------------------


class TestCreatedItems:
    def test_only_real_create_results_count(self):
        ok = DispatchResult(type="create_issue", success=True, url="u", number=1)
        assert extract_created_item("create_issue", ok).url == "u"
        assert extract_created_item("add_labels", ok) is None
        assert extract_created_item("create_issue", DispatchResult(type="create_issue", success=True, staged=True, url="u")) is None
        assert extract_created_item("create_issue", DispatchResult(type="create_issue", success=False, url="u")) is None
        assert extract_created_item("create_issue", DispatchResult(type="create_issue", success=True)) is None
        assert extract_created_item("create_issue", None) is None

    def test_summary_to_dict(self):
        ctx = make_ctx(make_client(), {"noop": {}})
        data = dispatch_items([{"type": "noop", "message": "hi"}], ctx).to_dict()
        assert data["results"][0]["type"] == "noop"
        assert data["review"] is None
        assert data["temporary_ids"] == {}
