from .base import AgentEngine, AgentRequest, AgentResponse
from .claude_cli_backend import ClaudeCLIEngine

__all__ = ["AgentEngine", "AgentRequest", "AgentResponse", "ClaudeCLIEngine"]
