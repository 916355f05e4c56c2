"""Shared utilities."""

from .subprocess_utils import SubprocessError, redact_token, run_command, run_git_command
from .validators import (
    validate_branch_name,
    validate_identifier,
    validate_repo_name,
)

__all__ = [
    "SubprocessError",
    "redact_token",
    "run_command",
    "run_git_command",
    "validate_branch_name",
    "validate_identifier",
    "validate_repo_name",
]
