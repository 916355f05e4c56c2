"""Validation utilities for repository names, branch names, and identifiers."""

import re


def validate_branch_name(branch_name: str) -> str:
    """
    Validate and sanitize git branch name.

    Args:
        branch_name: Branch name to validate

    Returns:
        Validated branch name

    Raises:
        ValueError: If branch name is invalid
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")

    # Strict whitelist
    if not re.match(r'^[a-zA-Z0-9._/-]+$', branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if branch_name.startswith('/') or branch_name.endswith('/'):
        raise ValueError("Branch name cannot start or end with /")

    if branch_name.startswith('-') or branch_name.startswith('.'):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if '..' in branch_name or '@{' in branch_name or '//' in branch_name:
        raise ValueError("Branch name contains invalid sequence")

    if branch_name.endswith('.lock'):
        raise ValueError("Branch name cannot end with .lock")

    if len(branch_name) > 255:
        raise ValueError("Branch name too long")

    return branch_name


def validate_identifier(value: str, name: str = "identifier") -> str:
    """
    Validate an identifier used as a path segment (org id, task id, owner).

    Args:
        value: Identifier value to validate
        name: Name of the identifier (for error messages)

    Returns:
        Validated identifier

    Raises:
        ValueError: If identifier is invalid
    """
    if not value:
        raise ValueError(f"{name} cannot be empty")

    # Only allow alphanumeric, dash, underscore
    if not re.match(r'^[a-zA-Z0-9_-]+$', value):
        raise ValueError(f"Invalid {name}: {value}")

    if len(value) > 128:
        raise ValueError(f"{name} too long")

    return value


def validate_repo_name(name: str) -> str:
    """
    Validate a repository name (the part after ``owner/``).

    Raises:
        ValueError: If the name could escape its parent directory or is malformed
    """
    if not name:
        raise ValueError("Repository name cannot be empty")

    if not re.match(r'^[a-zA-Z0-9_.-]+$', name):
        raise ValueError(f"Invalid repository name: {name}")

    if name in (".", "..") or '..' in name:
        raise ValueError(f"Invalid repository name: {name}")

    if len(name) > 100:
        raise ValueError("Repository name too long")

    return name
