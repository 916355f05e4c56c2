"""Task, result and workspace models for the coding pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..utils.validators import (
    validate_branch_name,
    validate_identifier,
    validate_repo_name,
)


class _MessageModel(BaseModel):
    """Base for transport messages: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Repository(_MessageModel):
    """One remote repository and the branch new work is based on."""

    owner: str
    name: str
    branch: str

    @field_validator("owner")
    @classmethod
    def validate_owner(cls, v: str) -> str:
        return validate_identifier(v, "owner")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_repo_name(v)

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        return validate_branch_name(v)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class CodingTask(_MessageModel):
    """Inbound coding task. Immutable once accepted."""

    task_id: str
    org_id: str
    user_id: str
    repositories: List[Repository]
    prompt: str
    auth_token: str = Field(default="", repr=False)
    model: Optional[str] = None
    files: List[str] = Field(default_factory=list)
    system_prompt: Optional[str] = None
    agent_name: Optional[str] = None
    pr_title: Optional[str] = None
    branch_name: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_jwt(cls, data: Any) -> Any:
        # Older producers send the bearer credential as "jwt"
        if isinstance(data, dict) and "jwt" in data and "authToken" not in data and "auth_token" not in data:
            data = dict(data)
            data["authToken"] = data.pop("jwt")
        return data

    @field_validator("task_id", "org_id")
    @classmethod
    def validate_path_segment(cls, v: str, info) -> str:
        return validate_identifier(v, info.field_name)

    @field_validator("repositories")
    @classmethod
    def validate_repositories(cls, v: List[Repository]) -> List[Repository]:
        if not v:
            raise ValueError("at least one repository is required")
        names = [r.name for r in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"repository names must be unique: {', '.join(duplicates)}")
        return v

    @field_validator("branch_name")
    @classmethod
    def validate_branch_override(cls, v: Optional[str]) -> Optional[str]:
        return validate_branch_name(v) if v else None

    @property
    def task_branch(self) -> str:
        """Branch created in every worktree for this task."""
        return self.branch_name or f"task/{self.task_id}"

    @property
    def default_owner(self) -> str:
        """Owner used when resolving a shared installation token."""
        return self.repositories[0].owner

    @property
    def effective_pr_title(self) -> str:
        return self.pr_title or f"Task {self.task_id}"

    def get_repository(self, name: str) -> Repository:
        for repo in self.repositories:
            if repo.name == name:
                return repo
        raise KeyError(name)


class CodingResult(_MessageModel):
    """Outbound result. Exactly one is produced per task."""

    task_id: str
    success: bool
    files_changed: Optional[List[str]] = None
    commit_message: Optional[str] = None
    commit_sha: Optional[str] = None
    pr_url: Optional[str] = None
    pr_urls: Optional[List[str]] = None
    error: Optional[str] = None
    execution_time: int = 0  # milliseconds

    def to_message(self) -> Dict[str, Any]:
        """Serialize to the camelCase wire format, omitting absent fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class CommitInfo:
    """A fallback commit created by the pipeline."""
    sha: str
    message: str
    files_changed: List[str] = field(default_factory=list)


@dataclass
class Workspace:
    """Per-task workspace: one worktree per repository, keyed by repo name.

    ``repositories`` preserves the task's repository order.
    """
    path: Path
    branch_name: str
    repositories: Dict[str, Path] = field(default_factory=dict)
    mirrors: Dict[str, Path] = field(default_factory=dict)
    dropped: List[str] = field(default_factory=list)

    def repo_path(self, name: str) -> Path:
        return self.repositories[name]


class PipelineState(str, Enum):
    """Linear pipeline states. No state is ever revisited."""
    RECEIVED = "received"
    TOKEN_ACQUIRED = "token_acquired"
    WORKSPACE_READY = "workspace_ready"
    AGENT_EXECUTED = "agent_executed"
    CHANGES_DETECTED = "changes_detected"
    PUBLISHED = "published"
    CLEANED_UP = "cleaned_up"
    DONE = "done"


@dataclass
class RepositoryPublication:
    """Outcome of publishing one modified repository."""
    repo_name: str
    pr_url: Optional[str] = None
    commit: Optional[CommitInfo] = None
    files_changed: List[str] = field(default_factory=list)
    pushed: bool = False
