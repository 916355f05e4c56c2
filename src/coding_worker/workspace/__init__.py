"""Repository mirrors, task worktrees, change detection and publishing."""

from .change_detector import ChangeDetector
from .publisher import Publisher
from .repo_cache import RepositoryCache
from .worktree_manager import WorkspaceManager

__all__ = ["ChangeDetector", "Publisher", "RepositoryCache", "WorkspaceManager"]
