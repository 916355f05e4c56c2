"""Git helpers shared by tests that run against real local repositories."""

import subprocess
from pathlib import Path

SEED_IDENTITY = ["-c", "user.name=Seed", "-c", "user.email=seed@example.com"]


def git(args, cwd):
    """Run git in a test and return stripped stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def commit_file(repo_path: Path, name: str, content: str, message: str = "update") -> str:
    """Write, stage and commit one file with the seed identity. Returns the sha."""
    (repo_path / name).parent.mkdir(parents=True, exist_ok=True)
    (repo_path / name).write_text(content)
    git(["add", name], repo_path)
    git([*SEED_IDENTITY, "commit", "-m", message], repo_path)
    return git(["rev-parse", "HEAD"], repo_path)
