"""GitHub client for PR management."""

from typing import Optional

from github import Auth, Github
from github.PullRequest import PullRequest
from github.Repository import Repository


class GitHubClient:
    """GitHub API client for PR operations on one repository."""

    def __init__(self, token: str, owner: str, repo: str, api_base_url: str = "https://api.github.com"):
        self.owner = owner
        self.repo_name = repo
        self.gh = Github(auth=Auth.Token(token), base_url=api_base_url)
        self.repo: Repository = self.gh.get_repo(f"{owner}/{repo}")

    def create_pull_request(
        self,
        title: str,
        body: str,
        head_branch: str,
        base_branch: str = "main",
        draft: bool = False,
    ) -> PullRequest:
        """Create a pull request."""
        return self.repo.create_pull(
            title=title,
            body=body,
            head=head_branch,
            base=base_branch,
            draft=draft,
        )

    def get_pr_by_branch(self, branch_name: str) -> Optional[PullRequest]:
        """Get the open PR for a given branch."""
        pulls = self.repo.get_pulls(state="open", head=f"{self.owner}:{branch_name}")
        for pr in pulls:
            return pr
        return None
