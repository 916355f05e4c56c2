"""Base agent engine interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple


@dataclass
class AgentRequest:
    """Request to an agent engine."""
    task_id: str
    workspace_path: Path
    repositories: List[Tuple[str, Path]]  # (repo name, worktree path) in task order
    prompt: str
    system_prompt: Optional[str] = None
    files: List[str] = field(default_factory=list)  # File hints relative to the workspace
    model: Optional[str] = None  # None = engine default
    timeout: float = 900
    log_file: Optional[Path] = None  # Where engine output is teed


@dataclass
class AgentResponse:
    """Response from an agent engine."""
    success: bool
    output: str = ""
    error: Optional[str] = None
    files_changed: List[str] = field(default_factory=list)
    latency_ms: float = 0.0
    exit_code: Optional[int] = None


class AgentEngine(ABC):
    """Opaque capability: given a workspace and a prompt, it may alter files
    and create commits inside the provided worktrees."""

    @abstractmethod
    async def execute(self, request: AgentRequest) -> AgentResponse:
        """
        Run the agent against the workspace.

        Implementations must stop any external process they started when the
        calling coroutine is cancelled, before the cancellation propagates.
        """
        pass
