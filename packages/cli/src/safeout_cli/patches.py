"""Branch pushing for create_pull_request.

The agent leaves its changes as ``aw-*.patch`` files (``git format-patch``
output). Before the pull request is opened, the patch is applied on a new
branch of the checked-out repository and pushed.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from safeout_core.collector import PATCH_GLOB
from safeout_core.errors import SafeOutputError
from safeout_core.repos import RepoTarget

logger = logging.getLogger(__name__)


class GitPatchPusher:
    """Callable handed to the dispatcher as its patch capability."""

    def __init__(self, patch_dir: str, workdir: str = ".", remote: str = "origin"):
        self.patch_dir = Path(patch_dir)
        self.workdir = workdir
        self.remote = remote

    def _git(self, *args: str) -> str:
        logger.debug("git %s", " ".join(args))
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.workdir,
                capture_output=True,
                text=True,
                check=True,
            )
        except FileNotFoundError as exc:
            raise SafeOutputError("git is not installed; cannot push the pull request branch") from exc
        except subprocess.CalledProcessError as exc:
            raise SafeOutputError(f"git {args[0]} failed: {(exc.stderr or exc.stdout).strip()}") from exc
        return result.stdout

    def find_patch(self) -> Path | None:
        patches = sorted(self.patch_dir.glob(PATCH_GLOB))
        return patches[0] if patches else None

    def check_branch_name(self, branch) -> None:
        """Reject names git would read as an option or refuse as a branch.

        Raises:
            SafeOutputError: the name is empty, starts with ``-`` or fails
                ``git check-ref-format --branch``.
        """
        if not isinstance(branch, str) or not branch.strip() or branch.startswith("-"):
            raise SafeOutputError(f"Invalid branch name {branch!r}")
        try:
            self._git("check-ref-format", "--branch", branch)
        except SafeOutputError as exc:
            raise SafeOutputError(f"Invalid branch name {branch!r}") from exc

    def __call__(self, item: dict, repo: RepoTarget) -> str:
        """Apply the patch on ``item['branch']``, push it and return the branch name."""
        branch = item["branch"]
        self.check_branch_name(branch)
        patch = self.find_patch()

        self._git("checkout", "-b", branch)
        if patch is not None:
            self._git("am", "--3way", str(patch.resolve()))
        else:
            logger.info("No patch in %s; pushing %s without changes", self.patch_dir, branch)
        self._git("push", self.remote, "--", branch)
        logger.info("Pushed %s to %s for %s", branch, self.remote, repo.slug)
        return branch
