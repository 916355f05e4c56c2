"""Per-task multi-repository workspaces built from git worktrees.

Each task gets ``{worktrees_root}/{org_id}/{task_id}/{repo_name}`` worktrees,
one per repository, all on the task branch and all checked out from the
shared mirrors in the repository cache.
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional

from ..core.task import Repository, Workspace
from ..errors import CleanupFailed, MirrorUnavailable, WorktreeCreateFailed
from ..utils.subprocess_utils import SubprocessError, redact_token, run_git_command
from ..utils.validators import validate_branch_name, validate_identifier
from .repo_cache import RepositoryCache

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Creates and tears down isolated task workspaces."""

    def __init__(
        self,
        worktrees_root: Path,
        repo_cache: RepositoryCache,
        bot_name: str = "Code Crew AI",
        bot_email: str = "bot@codecrew.ai",
        drop_unavailable_repositories: bool = False,
    ):
        """
        Initialize workspace manager.

        Args:
            worktrees_root: Root directory for task workspaces
            repo_cache: Shared mirror cache worktrees are created from
            bot_name: user.name configured in every worktree
            bot_email: user.email configured in every worktree
            drop_unavailable_repositories: Skip repositories whose mirror
                cannot be fetched instead of failing the whole setup
        """
        self.worktrees_root = Path(worktrees_root).expanduser()
        self.repo_cache = repo_cache
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.drop_unavailable_repositories = drop_unavailable_repositories

    def workspace_path(self, org_id: str, task_id: str) -> Path:
        """Deterministic workspace location, usable before setup has run."""
        org_id = validate_identifier(org_id, "org_id")
        task_id = validate_identifier(task_id, "task_id")
        return self.worktrees_root / org_id / task_id

    def setup_workspace(
        self,
        org_id: str,
        task_id: str,
        repositories: List[Repository],
        token: str,
        branch_name: Optional[str] = None,
    ) -> Workspace:
        """
        Build one worktree per repository on the task branch.

        Args:
            org_id: Organization identifier
            task_id: Task identifier
            repositories: Repositories in task order
            token: Installation token for mirror clone/fetch
            branch_name: Task branch (defaults to ``task/{task_id}``)

        Returns:
            Workspace mapping every (non-dropped) repository name to its worktree

        Raises:
            MirrorUnavailable: If a mirror cannot be fetched and dropping is
                disabled, or if every repository was dropped
            WorktreeCreateFailed: If any worktree cannot be created
        """
        path = self.workspace_path(org_id, task_id)
        branch = validate_branch_name(branch_name or f"task/{task_id}")

        logger.info(f"Setting up workspace at {path}")
        path.mkdir(parents=True, exist_ok=True)

        workspace = Workspace(path=path, branch_name=branch)
        last_mirror_error: Optional[MirrorUnavailable] = None

        for repo in repositories:
            try:
                mirror = self.repo_cache.ensure_mirror(repo.owner, repo.name, token)
            except MirrorUnavailable as e:
                if not self.drop_unavailable_repositories:
                    raise
                logger.warning(f"Dropping {repo.full_name} from task {task_id}: mirror unavailable")
                workspace.dropped.append(repo.name)
                last_mirror_error = e
                continue

            worktree = path / repo.name
            self.create_worktree(repo, mirror, worktree, branch)
            self.configure_git_identity(repo, worktree)

            workspace.repositories[repo.name] = worktree
            workspace.mirrors[repo.name] = mirror

        if not workspace.repositories and last_mirror_error is not None:
            raise last_mirror_error

        logger.info(
            f"Workspace ready with {len(workspace.repositories)} repositories "
            f"(branch: {branch})"
        )
        return workspace

    def create_worktree(self, repo: Repository, mirror: Path, worktree: Path, branch_name: str) -> None:
        """
        Create ``worktree`` on a new branch based on ``origin/{repo.branch}``.

        An existing local branch with the same name is a hard failure; the
        branch is never renamed automatically.

        Raises:
            WorktreeCreateFailed: If git refuses to create the worktree
        """
        logger.debug(f"Creating worktree at {worktree} from origin/{repo.branch}")

        # Worktree metadata lives in the shared mirror
        with self.repo_cache.lock(repo.owner, repo.name):
            try:
                run_git_command(
                    ["worktree", "add", "-b", branch_name, str(worktree), f"origin/{repo.branch}"],
                    cwd=mirror,
                    timeout=120,
                )
            except SubprocessError as e:
                stderr = redact_token(e.stderr.strip())
                logger.error(f"Failed to create worktree for {repo.full_name}: {stderr}")
                raise WorktreeCreateFailed(repo.name, branch_name, stderr) from e

        logger.debug(f"Created worktree {worktree} (branch: {branch_name})")

    def configure_git_identity(self, repo: Repository, worktree: Path) -> None:
        """Configure the bot identity so commits in the worktree attribute correctly."""
        # Worktrees share the mirror's config file, so serialize the writes
        with self.repo_cache.lock(repo.owner, repo.name):
            try:
                run_git_command(["config", "user.name", self.bot_name], cwd=worktree)
                run_git_command(["config", "user.email", self.bot_email], cwd=worktree)
            except SubprocessError as e:
                raise WorktreeCreateFailed(repo.name, "", f"git identity: {e.stderr.strip()}") from e

    def teardown_workspace(self, path: Path, workspace: Optional[Workspace] = None, repositories: Optional[List[Repository]] = None) -> bool:
        """
        Recursively delete a task workspace. Never raises.

        Args:
            path: Workspace directory
            workspace: Workspace object, when setup got far enough to build one
            repositories: Task repositories whose mirrors should forget the
                deleted worktrees

        Returns:
            True if the directory is gone afterwards
        """
        path = Path(path)
        existed = path.exists()
        removed = True
        try:
            if existed:
                logger.info(f"Cleaning up workspace at {path}")
                shutil.rmtree(path)
            else:
                logger.debug(f"Workspace {path} does not exist, nothing to remove")
        except OSError as e:
            error = CleanupFailed(path, str(e))
            logger.error(f"{error.user_message}: {e}")
            removed = False

        # Nothing was ever created, so no mirror has stale worktree entries
        if not existed and workspace is None:
            return removed

        for repo in repositories or []:
            if workspace is not None and repo.name not in workspace.mirrors:
                continue
            try:
                self.repo_cache.prune_worktrees(repo.owner, repo.name)
            except (SubprocessError, OSError, ValueError) as e:
                logger.warning(f"Failed to prune worktrees for {repo.full_name}: {e}")

        return removed
