"""Error taxonomy for the coding task pipeline.

Every exception carries a ``user_message`` suitable for the Result's
``error`` field. Technical detail (stderr, HTTP bodies) stays in the
exception chain and the logs.
"""

from pathlib import Path
from typing import Optional


class CodingWorkerError(Exception):
    """Base class for all pipeline errors."""

    user_message = "Task execution failed"

    def __init__(self, detail: str = "", user_message: Optional[str] = None):
        self.detail = detail
        if user_message is not None:
            self.user_message = user_message
        super().__init__(detail or self.user_message)


class CredentialUnavailable(CodingWorkerError):
    """The token-issuing service did not provide an installation token."""

    user_message = (
        "GitHub repository access is not configured. "
        "Please connect GitHub in settings."
    )


class MirrorUnavailable(CodingWorkerError):
    """Cloning or fetching a repository mirror failed."""

    def __init__(self, owner: str, name: str, detail: str = ""):
        self.owner = owner
        self.name = name
        super().__init__(
            detail,
            user_message=f"Failed to fetch repository {owner}/{name}",
        )


class WorktreeCreateFailed(CodingWorkerError):
    """A task worktree could not be created (including branch collisions)."""

    def __init__(self, repo_name: str, branch_name: str, detail: str = ""):
        self.repo_name = repo_name
        self.branch_name = branch_name
        super().__init__(
            detail,
            user_message=f"Failed to create git worktree for {repo_name} on branch {branch_name}",
        )


class AgentExecutionFailed(CodingWorkerError):
    """The agent engine reported failure or exceeded its deadline."""

    def __init__(self, detail: str = "", timed_out: bool = False, timeout: Optional[float] = None):
        self.timed_out = timed_out
        self.timeout = timeout
        if timed_out:
            message = f"Agent execution timed out after {timeout:g} seconds"
        else:
            message = "Agent execution failed"
        super().__init__(detail, user_message=message)


class NoChanges(CodingWorkerError):
    """Expected outcome: the agent left every repository untouched."""

    user_message = "No changes were made"


class PublishFailed(CodingWorkerError):
    """Commit, push or PR creation failed for one repository."""

    def __init__(self, repo_name: str, step: str, detail: str = ""):
        self.repo_name = repo_name
        self.step = step
        super().__init__(
            detail,
            user_message=f"{repo_name}: {step} failed",
        )


class CleanupFailed(CodingWorkerError):
    """Workspace teardown failed. Logged only, never surfaced on a Result."""

    def __init__(self, path: Path, detail: str = ""):
        self.path = path
        super().__init__(detail, user_message=f"Failed to clean up {path}")
