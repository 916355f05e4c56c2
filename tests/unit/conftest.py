"""Shared fixtures: local bare "remotes" standing in for the hosting provider."""

import pytest

from coding_worker.core.task import Repository
from coding_worker.workspace.change_detector import ChangeDetector
from coding_worker.workspace.repo_cache import RepositoryCache
from coding_worker.workspace.worktree_manager import WorkspaceManager
from tests.unit.git_fixtures import SEED_IDENTITY, git


@pytest.fixture
def remotes_root(tmp_path):
    root = tmp_path / "remotes"
    root.mkdir()
    return root


@pytest.fixture
def make_remote(tmp_path, remotes_root):
    """Create a bare repository at remotes/{owner}/{name}.git with one commit on main."""

    def _make(owner="acme", name="api", files=None):
        seed = tmp_path / "seed" / owner / name
        seed.mkdir(parents=True)
        git(["init", "--initial-branch=main"], seed)
        for file_name, content in (files or {"README.md": f"# {name}\n"}).items():
            (seed / file_name).parent.mkdir(parents=True, exist_ok=True)
            (seed / file_name).write_text(content)
        git(["add", "-A"], seed)
        git([*SEED_IDENTITY, "commit", "-m", "initial"], seed)

        bare = remotes_root / owner / f"{name}.git"
        bare.parent.mkdir(parents=True, exist_ok=True)
        git(["clone", "--bare", str(seed), str(bare)], tmp_path)
        return bare

    return _make


@pytest.fixture
def repo_cache(tmp_path, remotes_root):
    """Cache whose remotes are the local bare repositories (no token in the URL)."""
    template = str(remotes_root) + "/{owner}/{name}.git"
    return RepositoryCache(
        root=tmp_path / "base-repos",
        remote_url_template=template,
        public_url_template=template,
    )


@pytest.fixture
def workspace_manager(tmp_path, repo_cache):
    return WorkspaceManager(
        tmp_path / "worktrees",
        repo_cache,
        bot_name="Code Crew AI",
        bot_email="bot@codecrew.ai",
    )


@pytest.fixture
def change_detector():
    return ChangeDetector()


@pytest.fixture
def api_repo():
    return Repository(owner="acme", name="api", branch="main")


@pytest.fixture
def web_repo():
    return Repository(owner="acme", name="web", branch="main")
