"""Prompt text handed to the agent engine and to pull requests."""

from typing import List, Optional, Sequence

DEFAULT_SYSTEM_PROMPT = """You are an expert software engineer working on a coding task.

Your goal is to:
1. Understand the requirements from the task description
2. Navigate the codebase to find relevant files
3. Make necessary changes following best practices
4. Ensure code quality (linting, type-checking, testing)
5. Commit your changes with clear, descriptive messages

Always prioritize:
- Code quality and maintainability
- Following existing patterns and conventions
- Writing clear, self-documenting code
- Including proper error handling
- Adding comments where logic is complex
"""

# Appended to every system prompt, including caller-supplied ones
GIT_WORKFLOW_ADDENDUM = """

IMPORTANT GIT WORKFLOW INSTRUCTIONS:
- You are working in a multi-repository workspace
- Each organization repository is available in the workspace
- Navigate between repositories using relative paths
- When your work is complete, create git commits for ALL modified files
- Use conventional commit format (feat:, fix:, refactor:, etc.)
- Run quality checks before committing (lint, type-check, tests if applicable)
- Ensure commit messages are descriptive and explain WHY changes were made

Multi-Repository Context:
- You have access to multiple repositories for context and cross-repo understanding
- Read from any repo to understand patterns, conventions, and existing code
- You can modify files in any repository as needed
- Changes in each repository will result in separate pull requests

Quality Standards:
- Run linters and fix issues before committing
- Run type checkers and resolve type errors
- Run tests if they exist and are fast enough
- Follow existing code style and conventions in the repository
"""


def build_system_prompt(system_prompt: Optional[str] = None) -> str:
    """Caller's system prompt (or the default) followed by the git workflow addendum."""
    base = system_prompt if system_prompt and system_prompt.strip() else DEFAULT_SYSTEM_PROMPT
    return base + GIT_WORKFLOW_ADDENDUM


def build_agent_prompt(prompt: str, files: Sequence[str] = ()) -> str:
    """Task prompt, with file hints listed after it when present."""
    if not files:
        return prompt
    hints = "\n".join(f"- {f}" for f in files)
    return f"{prompt}\n\nRelevant files:\n{hints}\n"


def build_pr_body(prompt: str, agent_name: Optional[str] = None, repositories: List[str] = ()) -> str:
    """Pull request description for one repository of a task."""
    sections = []
    if agent_name:
        sections.append(f"Automated changes by {agent_name}")
    sections.append(f"## Task\n\n{prompt.strip()}")
    if len(repositories) > 1:
        sections.append(
            "## Related repositories\n\n" + "\n".join(f"- {name}" for name in repositories)
        )
    return "\n\n".join(sections)
