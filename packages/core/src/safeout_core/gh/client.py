"""Thin PyGithub wrapper for the privileged calls made during dispatch.

Every method returns a plain dict with at least ``url`` (and ``number``
where the entity has one). PyGithub's ``GithubException`` propagates to the
caller.
"""

from __future__ import annotations

import logging
import re

from github import Auth, Github

from safeout_core.errors import GitHubApiError

logger = logging.getLogger(__name__)

_PROJECT_URL_RE = re.compile(r"^https://[^/]+/(orgs|users)/([^/]+)/projects/(\d+)")
_ISSUE_URL_RE = re.compile(r"^https://[^/]+/([^/]+/[^/]+)/(?:issues|pull)/(\d+)")

_OWNER_ID_QUERY = {
    "org": "query($login: String!) { organization(login: $login) { id } }",
    "user": "query($login: String!) { user(login: $login) { id } }",
}
_PROJECT_ID_QUERY = {
    "orgs": "query($login: String!, $number: Int!) { organization(login: $login) { projectV2(number: $number) { id } } }",
    "users": "query($login: String!, $number: Int!) { user(login: $login) { projectV2(number: $number) { id } } }",
}
_CREATE_PROJECT_MUTATION = """
mutation($ownerId: ID!, $title: String!) {
  createProjectV2(input: {ownerId: $ownerId, title: $title}) {
    projectV2 { id number url title }
  }
}
"""
_ADD_PROJECT_ITEM_MUTATION = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) { item { id } }
}
"""
_CREATE_STATUS_UPDATE_MUTATION = """
mutation($projectId: ID!, $body: String!, $status: ProjectV2StatusUpdateStatus, $startDate: Date, $targetDate: Date) {
  createProjectV2StatusUpdate(
    input: {projectId: $projectId, body: $body, status: $status, startDate: $startDate, targetDate: $targetDate}
  ) { statusUpdate { id } }
}
"""


def parse_project_url(url: str) -> tuple[str, str, int] | None:
    """Split a project URL into ``(scope, owner, number)`` where scope is ``orgs`` or ``users``."""
    match = _PROJECT_URL_RE.match(url or "")
    if not match:
        return None
    return match.group(1), match.group(2), int(match.group(3))


class GitHubClient:
    def __init__(self, token: str | None = None, github: Github | None = None):
        if github is None:
            github = Github(auth=Auth.Token(token)) if token else Github()
        self._gh = github
        self._repos: dict = {}

    def get_repo(self, slug: str):
        if slug not in self._repos:
            self._repos[slug] = self._gh.get_repo(slug)
        return self._repos[slug]

    def graphql(self, query: str, variables: dict) -> dict:
        _, data = self._gh.requester.graphql_query(query, variables)
        return data["data"]

    # ------------------------------------------------------------------
    # Issues and comments
    # ------------------------------------------------------------------

    def lookup_issue_author(self, repo: str, number: int) -> str | None:
        """Return the login of the issue's author, or None for bots and ghost users."""
        issue = self.get_repo(repo).get_issue(number)
        user = issue.user
        if user is None or user.type == "Bot":
            return None
        return user.login

    def create_issue(self, repo: str, title: str, body: str, labels=None, assignees=None) -> dict:
        issue = self.get_repo(repo).create_issue(
            title=title,
            body=body,
            labels=labels or [],
            assignees=assignees or [],
        )
        return {"id": issue.id, "number": issue.number, "url": issue.html_url}

    def create_comment(self, repo: str, number: int, body: str) -> dict:
        comment = self.get_repo(repo).get_issue(number).create_comment(body)
        return {"id": comment.id, "url": comment.html_url}

    def add_labels(self, repo: str, number: int, labels: list[str]) -> dict:
        issue = self.get_repo(repo).get_issue(number)
        issue.add_to_labels(*labels)
        return {"number": number, "labels": list(labels)}

    def update_issue(self, repo: str, number: int, title=None, body=None, state=None) -> dict:
        issue = self.get_repo(repo).get_issue(number)
        changes = {key: value for key, value in (("title", title), ("body", body), ("state", state)) if value is not None}
        issue.edit(**changes)
        return {"number": number, "url": issue.html_url}

    def close_issue(self, repo: str, number: int, body: str | None = None) -> dict:
        issue = self.get_repo(repo).get_issue(number)
        comment_url = None
        if body:
            comment_url = issue.create_comment(body).html_url
        issue.edit(state="closed")
        return {"number": number, "url": issue.html_url, "comment_url": comment_url}

    def add_sub_issue(self, repo: str, parent_number: int, sub_number: int) -> dict:
        gh_repo = self.get_repo(repo)
        parent = gh_repo.get_issue(parent_number)
        sub = gh_repo.get_issue(sub_number)
        self._gh.requester.requestJsonAndCheck("POST", f"{parent.url}/sub_issues", input={"sub_issue_id": sub.id})
        return {"number": parent_number, "url": parent.html_url, "sub_issue_number": sub_number}

    # ------------------------------------------------------------------
    # Pull requests and reviews
    # ------------------------------------------------------------------

    def get_pull_head_sha(self, repo: str, number: int) -> str | None:
        pr = self.get_repo(repo).get_pull(number)
        return pr.head.sha if pr.head else None

    def create_pull_request(self, repo: str, title: str, body: str, head: str, base: str | None = None, draft: bool = False) -> dict:
        gh_repo = self.get_repo(repo)
        pr = gh_repo.create_pull(title=title, body=body, head=head, base=base or gh_repo.default_branch, draft=draft)
        return {"number": pr.number, "url": pr.html_url}

    def create_review(self, repo: str, pr_number: int, commit_id: str, event: str, body=None, comments=None) -> dict:
        gh_repo = self.get_repo(repo)
        pr = gh_repo.get_pull(pr_number)
        kwargs: dict = {"commit": gh_repo.get_commit(commit_id), "event": event}
        if body:
            kwargs["body"] = body
        if comments:
            kwargs["comments"] = comments
        review = pr.create_review(**kwargs)
        return {"id": review.id, "url": review.html_url}

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    def update_release(self, repo: str, body: str, operation: str = "replace", tag: str | None = None) -> dict:
        gh_repo = self.get_repo(repo)
        release = gh_repo.get_release(tag) if tag else gh_repo.get_latest_release()
        current = release.body or ""
        if operation == "append" and current:
            new_body = f"{current}\n\n{body}"
        elif operation == "prepend" and current:
            new_body = f"{body}\n\n{current}"
        else:
            new_body = body
        release.update_release(name=release.title or release.tag_name, message=new_body)
        return {"id": release.id, "url": release.html_url, "tag": release.tag_name}

    # ------------------------------------------------------------------
    # Projects (GraphQL only)
    # ------------------------------------------------------------------

    def create_project(self, owner: str, owner_type: str, title: str) -> dict:
        data = self.graphql(_OWNER_ID_QUERY[owner_type], {"login": owner})
        owner_node = data.get("organization" if owner_type == "org" else "user") or {}
        if not owner_node.get("id"):
            raise GitHubApiError(f"Could not find {owner_type} '{owner}'")
        data = self.graphql(_CREATE_PROJECT_MUTATION, {"ownerId": owner_node["id"], "title": title})
        project = data["createProjectV2"]["projectV2"]
        return {"id": project["id"], "number": project["number"], "url": project["url"]}

    def _project_id(self, project_url: str) -> str:
        parts = parse_project_url(project_url)
        if parts is None:
            raise GitHubApiError(f"Invalid project URL: {project_url}")
        scope, owner, number = parts
        data = self.graphql(_PROJECT_ID_QUERY[scope], {"login": owner, "number": number})
        owner_node = data.get("organization" if scope == "orgs" else "user") or {}
        project = owner_node.get("projectV2") or {}
        if not project.get("id"):
            raise GitHubApiError(f"Project not found: {project_url}")
        return project["id"]

    def add_project_item(self, project_url: str, item_url: str) -> dict:
        match = _ISSUE_URL_RE.match(item_url or "")
        if not match:
            raise GitHubApiError(f"Unsupported project item URL: {item_url}")
        content = self.get_repo(match.group(1)).get_issue(int(match.group(2)))
        data = self.graphql(_ADD_PROJECT_ITEM_MUTATION, {"projectId": self._project_id(project_url), "contentId": content.node_id})
        return {"id": data["addProjectV2ItemById"]["item"]["id"], "url": project_url}

    def create_project_status_update(
        self,
        project_url: str,
        body: str,
        status: str | None = None,
        start_date: str | None = None,
        target_date: str | None = None,
    ) -> dict:
        variables = {
            "projectId": self._project_id(project_url),
            "body": body,
            "status": status,
            "startDate": start_date,
            "targetDate": target_date,
        }
        data = self.graphql(_CREATE_STATUS_UPDATE_MUTATION, variables)
        return {"id": data["createProjectV2StatusUpdate"]["statusUpdate"]["id"], "url": project_url}
