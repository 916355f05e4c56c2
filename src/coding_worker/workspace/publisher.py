"""Commit, push and open pull requests for modified task worktrees.

Every step checks before it acts, so re-running a partially published
repository never commits, pushes or opens a PR twice.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from github import GithubException

from ..core.task import CommitInfo, Repository, RepositoryPublication
from ..errors import PublishFailed
from ..integrations.github import GitHubClient
from ..utils.subprocess_utils import SubprocessError, get_git_output, run_git_command
from .change_detector import ChangeDetector
from .repo_cache import RepositoryCache

logger = logging.getLogger(__name__)

MAX_COMMIT_MESSAGE_LENGTH = 5000

GitHubClientFactory = Callable[[str, str, str], GitHubClient]


def _sanitize_commit_message(message: str) -> str:
    """Drop control characters other than newlines and cap the length."""
    if not message or not message.strip():
        raise ValueError("Commit message cannot be empty")
    sanitized = "".join(
        c for c in message
        if c == "\n" or (32 <= ord(c) < 127) or ord(c) >= 128
    )
    return sanitized[:MAX_COMMIT_MESSAGE_LENGTH]


class Publisher:
    """Per-repository commit/push/PR sequence."""

    def __init__(
        self,
        repo_cache: RepositoryCache,
        change_detector: Optional[ChangeDetector] = None,
        github_client_factory: Optional[GitHubClientFactory] = None,
        github_api_base_url: str = "https://api.github.com",
        push_timeout: int = 300,
    ):
        self.repo_cache = repo_cache
        self.change_detector = change_detector or ChangeDetector()
        self.github_api_base_url = github_api_base_url
        self.github_client_factory = github_client_factory or self._default_client
        self.push_timeout = push_timeout

    def _default_client(self, token: str, owner: str, repo: str) -> GitHubClient:
        return GitHubClient(token, owner, repo, api_base_url=self.github_api_base_url)

    def has_commits(self, repo_path: Path, base_branch: str) -> bool:
        """True if the current branch is ahead of ``origin/{base_branch}``."""
        return self.change_detector.has_new_commits(repo_path, base_branch)

    def create_fallback_commit(self, repo_path: Path, message: str) -> Optional[CommitInfo]:
        """
        Stage everything and commit it as a single commit.

        Returns:
            CommitInfo, or None if there was nothing to commit
        """
        message = _sanitize_commit_message(message)

        run_git_command(["add", "-A"], cwd=repo_path)
        staged = get_git_output(["diff", "--cached", "--name-only"], cwd=repo_path)
        files = [line for line in staged.splitlines() if line]
        if not files:
            logger.info(f"Nothing staged in {repo_path}, skipping fallback commit")
            return None

        run_git_command(["commit", "-m", message], cwd=repo_path)
        sha = get_git_output(["rev-parse", "HEAD"], cwd=repo_path)

        logger.info(f"Created fallback commit {sha[:8]} with {len(files)} files")
        return CommitInfo(sha=sha, message=message, files_changed=files)

    def remote_branch_exists(self, repo_path: Path, branch_name: str) -> bool:
        """Check the mirror's remote-tracking refs for ``branch_name``."""
        result = run_git_command(
            ["rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{branch_name}"],
            cwd=repo_path,
            check=False,
        )
        return result.returncode == 0

    def push_branch(self, repo: Repository, repo_path: Path, branch_name: str, token: str) -> None:
        """Push the task branch with upstream tracking, authenticating with ``token``."""
        with self.repo_cache.authenticated_remote(repo.owner, repo.name, token):
            run_git_command(
                ["push", "--set-upstream", "origin", branch_name],
                cwd=repo_path,
                timeout=self.push_timeout,
            )
        logger.info(f"Pushed {branch_name} to {repo.full_name}")

    def create_pull_request(
        self,
        repo: Repository,
        token: str,
        branch_name: str,
        title: str,
        body: str,
    ) -> str:
        """Open a PR from ``branch_name`` into the base branch, or reuse an open one."""
        client = self.github_client_factory(token, repo.owner, repo.name)

        existing = client.get_pr_by_branch(branch_name)
        if existing is not None:
            logger.info(f"PR already open for {repo.full_name}:{branch_name}: {existing.html_url}")
            return existing.html_url

        pr = client.create_pull_request(
            title=title,
            body=body,
            head_branch=branch_name,
            base_branch=repo.branch,
        )
        logger.info(f"Created PR for {repo.full_name}: {pr.html_url}")
        return pr.html_url

    def publish(
        self,
        repo: Repository,
        repo_path: Path,
        branch_name: str,
        token: str,
        commit_message: str,
        pr_title: str,
        pr_body: str,
    ) -> RepositoryPublication:
        """
        Commit (if needed), push (if needed) and open a PR for one repository.

        Raises:
            PublishFailed: Naming the step that failed
        """
        publication = RepositoryPublication(repo_name=repo.name)

        try:
            if not self.has_commits(repo_path, repo.branch):
                publication.commit = self.create_fallback_commit(repo_path, commit_message)
                if publication.commit is None:
                    raise PublishFailed(repo.name, "commit", "no changes to commit")
            else:
                logger.debug(f"{repo.name} already has commits ahead of origin/{repo.branch}")
        except (SubprocessError, ValueError) as e:
            logger.error(f"Commit failed for {repo.full_name}: {e}")
            raise PublishFailed(repo.name, "commit", str(e)) from e

        try:
            publication.files_changed = self._files_changed(repo_path, repo.branch, publication.commit)
        except SubprocessError as e:
            logger.warning(f"Could not list changed files for {repo.full_name}: {e}")

        try:
            if self.remote_branch_exists(repo_path, branch_name):
                logger.info(f"Remote branch {branch_name} already exists for {repo.full_name}, not pushing")
            else:
                self.push_branch(repo, repo_path, branch_name, token)
                publication.pushed = True
        except SubprocessError as e:
            logger.error(f"Push failed for {repo.full_name}: {e}")
            raise PublishFailed(repo.name, "push", str(e)) from e

        try:
            publication.pr_url = self.create_pull_request(repo, token, branch_name, pr_title, pr_body)
        except GithubException as e:
            logger.error(f"PR creation failed for {repo.full_name}: {e.status} {e.data}")
            raise PublishFailed(repo.name, "pull request", str(e)) from e

        return publication

    def _files_changed(self, repo_path: Path, base_branch: str, commit: Optional[CommitInfo]) -> List[str]:
        if commit is not None:
            return list(commit.files_changed)
        return self.change_detector.changed_files(repo_path, base_branch)
