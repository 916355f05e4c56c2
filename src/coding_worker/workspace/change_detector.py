"""Detect which task worktrees the agent modified."""

import logging
from pathlib import Path
from typing import List

from ..core.task import Repository, Workspace
from ..utils.subprocess_utils import SubprocessError, get_git_output

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Inspects worktrees for uncommitted changes and new commits."""

    def has_uncommitted_changes(self, repo_path: Path) -> bool:
        """True if the working tree has staged, unstaged or untracked changes."""
        status = get_git_output(["status", "--porcelain"], cwd=repo_path)
        return bool(status)

    def count_new_commits(self, repo_path: Path, base_branch: str) -> int:
        """Commits on HEAD that are not on ``origin/{base_branch}``."""
        output = get_git_output(
            ["rev-list", "--count", f"origin/{base_branch}..HEAD"],
            cwd=repo_path,
        )
        return int(output or 0)

    def has_new_commits(self, repo_path: Path, base_branch: str) -> bool:
        return self.count_new_commits(repo_path, base_branch) > 0

    def is_modified(self, repo_path: Path, base_branch: str) -> bool:
        return self.has_uncommitted_changes(repo_path) or self.has_new_commits(repo_path, base_branch)

    def list_modified_repositories(self, workspace: Workspace, repositories: List[Repository]) -> List[str]:
        """
        Names of modified repositories, in task order.

        A repository whose state cannot be read is logged and left out, so
        one broken worktree does not stop the others from being published.
        """
        modified = []
        for repo in repositories:
            repo_path = workspace.repositories.get(repo.name)
            if repo_path is None:
                continue
            try:
                if self.is_modified(repo_path, repo.branch):
                    modified.append(repo.name)
                else:
                    logger.debug(f"No changes in {repo.name}")
            except (SubprocessError, OSError, ValueError) as e:
                logger.warning(f"Could not inspect {repo.name} for changes, skipping: {e}")

        logger.info(
            f"Modified repositories: {', '.join(modified) if modified else 'none'} "
            f"({len(modified)}/{len(workspace.repositories)})"
        )
        return modified

    def changed_files(self, repo_path: Path, base_branch: str) -> List[str]:
        """Files changed by the task branch relative to its merge base with origin."""
        output = get_git_output(
            ["diff", "--name-only", f"origin/{base_branch}...HEAD"],
            cwd=repo_path,
        )
        return [line for line in output.splitlines() if line]
