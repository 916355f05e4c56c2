"""Task execution pipeline.

Received -> TokenAcquired -> WorkspaceReady -> AgentExecuted ->
ChangesDetected -> Published -> CleanedUp -> Done

The pipeline is the only component that knows the whole sequence. Every run
produces exactly one CodingResult and tears the workspace down exactly once,
whichever step fails.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..errors import (
    AgentExecutionFailed,
    CodingWorkerError,
    ErrorTranslator,
    NoChanges,
    PublishFailed,
)
from ..integrations.credentials import CredentialGateway
from ..llm.base import AgentEngine, AgentRequest
from ..utils.rich_logging import TaskLogger, task_context
from ..workspace import ChangeDetector, Publisher, RepositoryCache, WorkspaceManager
from .config import WorkerConfig
from .prompts import build_pr_body, build_system_prompt
from .task import (
    CodingResult,
    CodingTask,
    PipelineState,
    Repository,
    RepositoryPublication,
    Workspace,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineRun:
    """Observable record of one pipeline execution."""
    task_id: str
    states: List[PipelineState] = field(default_factory=list)
    workspace: Optional[Workspace] = None
    modified: List[str] = field(default_factory=list)
    publications: List[RepositoryPublication] = field(default_factory=list)
    publish_failures: List[PublishFailed] = field(default_factory=list)
    result: Optional[CodingResult] = None


class TaskPipeline:
    """Runs coding tasks end to end."""

    def __init__(
        self,
        credentials: CredentialGateway,
        workspace_manager: WorkspaceManager,
        change_detector: ChangeDetector,
        publisher: Publisher,
        engine: AgentEngine,
        agent_timeout: float = 900,
        default_model: str = "claude-sonnet-4-5-20250929",
        logs_dir: Optional[Path] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            credentials: Token-issuing service client
            workspace_manager: Builds and tears down task workspaces
            change_detector: Finds modified worktrees
            publisher: Commit/push/PR engine
            engine: Agent engine run against the workspace
            agent_timeout: Hard deadline for the agent run, in seconds
            default_model: Model used when the task does not name one
            logs_dir: Agent log directory (defaults to {worktrees}/{org_id}/logs)
        """
        self.credentials = credentials
        self.workspace_manager = workspace_manager
        self.change_detector = change_detector
        self.publisher = publisher
        self.engine = engine
        self.agent_timeout = agent_timeout
        self.default_model = default_model
        self.logs_dir = logs_dir
        self.translator = ErrorTranslator()

    @classmethod
    def from_config(cls, config: WorkerConfig, engine: Optional[AgentEngine] = None) -> "TaskPipeline":
        """Wire up the default components from configuration."""
        from ..llm.claude_cli_backend import ClaudeCLIEngine

        repo_cache = RepositoryCache(
            root=config.git.base_repos_path,
            remote_url_template=config.git.remote_url_template,
            public_url_template=config.git.public_url_template,
            clone_timeout=config.git.clone_timeout,
            fetch_timeout=config.git.fetch_timeout,
        )
        change_detector = ChangeDetector()
        return cls(
            credentials=CredentialGateway(
                config.external_api.base_url,
                timeout=config.external_api.request_timeout,
            ),
            workspace_manager=WorkspaceManager(
                config.git.worktrees_path,
                repo_cache,
                bot_name=config.git.bot_name,
                bot_email=config.git.bot_email,
                drop_unavailable_repositories=config.git.drop_unavailable_repositories,
            ),
            change_detector=change_detector,
            publisher=Publisher(
                repo_cache,
                change_detector=change_detector,
                github_api_base_url=config.github.api_base_url,
                push_timeout=config.git.push_timeout,
            ),
            engine=engine or ClaudeCLIEngine(
                executable=config.coding.claude_cli_executable,
                max_turns=config.coding.max_turns,
                default_model=config.coding.model,
            ),
            agent_timeout=config.coding.timeout,
            default_model=config.coding.model,
            logs_dir=config.coding.logs_dir,
        )

    async def execute_message(self, message: Dict[str, Any]) -> CodingResult:
        """Validate an inbound task message and run it.

        Invalid messages are answered with a failure result and never executed.
        """
        started = time.monotonic()
        try:
            task = CodingTask.model_validate(message)
        except (ValidationError, ValueError) as e:
            task_id = message.get("taskId") if isinstance(message, dict) else None
            logger.error(f"Rejected invalid task message {task_id or '<unknown>'}: {e}")
            return CodingResult(
                task_id=str(task_id or "unknown"),
                success=False,
                error=self.translator.to_user_message(e),
                execution_time=int((time.monotonic() - started) * 1000),
            )
        return await self.execute(task)

    async def execute(self, task: CodingTask) -> CodingResult:
        """Run one task and return its single result."""
        run = await self.run(task)
        return run.result

    async def run(self, task: CodingTask) -> PipelineRun:
        """Run one task, returning the full record of the run."""
        # Component loggers (cache, worktrees, publisher) pick the task id up from here
        with task_context(task.task_id, task.org_id):
            return await self._run(task)

    async def _run(self, task: CodingTask) -> PipelineRun:
        started = time.monotonic()
        run = PipelineRun(task_id=task.task_id)
        log = TaskLogger(logger, task.task_id, task.org_id)
        self._transition(run, log, PipelineState.RECEIVED)

        # Known before anything is created, so cleanup never depends on setup succeeding
        workspace_path = self.workspace_manager.workspace_path(task.org_id, task.task_id)

        try:
            result = await self._execute(task, run, log)
        except Exception as e:
            if isinstance(e, CodingWorkerError):
                log.error(f"Task failed: {e.user_message} ({e})")
            else:
                log.exception(f"Task failed with unexpected error: {e}")
            result = CodingResult(
                task_id=task.task_id,
                success=False,
                error=self.translator.to_user_message(e),
            )
        finally:
            await self._cleanup(task, run, workspace_path, log)

        run.result = result.model_copy(
            update={"execution_time": int((time.monotonic() - started) * 1000)}
        )
        self._transition(run, log, PipelineState.DONE)
        log.info(
            f"Task finished: success={run.result.success} "
            f"prs={len(run.result.pr_urls or [])} in {run.result.execution_time}ms"
        )
        return run

    async def _execute(self, task: CodingTask, run: PipelineRun, log: TaskLogger) -> CodingResult:
        token = await asyncio.to_thread(
            self.credentials.fetch_token,
            task.org_id,
            task.user_id,
            task.task_id,
            task.default_owner,
            [r.name for r in task.repositories],
            task.auth_token,
        )
        self._transition(run, log, PipelineState.TOKEN_ACQUIRED)

        workspace = await asyncio.to_thread(
            self.workspace_manager.setup_workspace,
            task.org_id,
            task.task_id,
            list(task.repositories),
            token,
            task.task_branch,
        )
        run.workspace = workspace
        self._transition(run, log, PipelineState.WORKSPACE_READY)

        active = [r for r in task.repositories if r.name in workspace.repositories]

        await self._run_agent(task, workspace, active, log)
        self._transition(run, log, PipelineState.AGENT_EXECUTED)

        run.modified = await asyncio.to_thread(
            self.change_detector.list_modified_repositories, workspace, active
        )
        self._transition(run, log, PipelineState.CHANGES_DETECTED)

        if not run.modified:
            log.warning("No changes detected in any repository")
            return CodingResult(
                task_id=task.task_id,
                success=False,
                error=NoChanges().user_message,
            )

        await self._publish(task, workspace, token, run, log)
        self._transition(run, log, PipelineState.PUBLISHED)

        return self._build_result(task, workspace, run)

    async def _run_agent(
        self,
        task: CodingTask,
        workspace: Workspace,
        repositories: List[Repository],
        log: TaskLogger,
    ) -> None:
        request = AgentRequest(
            task_id=task.task_id,
            workspace_path=workspace.path,
            repositories=[(r.name, workspace.repo_path(r.name)) for r in repositories],
            prompt=task.prompt,
            system_prompt=build_system_prompt(task.system_prompt),
            files=list(task.files),
            model=task.model or self.default_model,
            timeout=self.agent_timeout,
            log_file=self._agent_log_file(task),
        )

        log.info(f"Running agent (model: {request.model}, timeout: {self.agent_timeout:g}s)")
        try:
            # Cancelling the engine kills its process before wait_for returns
            response = await asyncio.wait_for(self.engine.execute(request), timeout=self.agent_timeout)
        except asyncio.TimeoutError as e:
            raise AgentExecutionFailed(
                f"agent did not finish within {self.agent_timeout:g}s",
                timed_out=True,
                timeout=self.agent_timeout,
            ) from e

        if not response.success:
            raise AgentExecutionFailed(response.error or "agent reported failure")

        log.info(f"Agent finished in {response.latency_ms / 1000:.1f}s")

    def _agent_log_file(self, task: CodingTask) -> Path:
        logs_dir = self.logs_dir or (self.workspace_manager.worktrees_root / task.org_id / "logs")
        return Path(logs_dir) / f"{task.task_id}.log"

    async def _publish(
        self,
        task: CodingTask,
        workspace: Workspace,
        token: str,
        run: PipelineRun,
        log: TaskLogger,
    ) -> None:
        """Publish every modified repository independently, keeping task order."""
        repos = [task.get_repository(name) for name in run.modified]
        pr_body = build_pr_body(task.prompt, task.agent_name, [r.name for r in task.repositories])

        outcomes = await asyncio.gather(
            *(
                asyncio.to_thread(
                    self.publisher.publish,
                    repo,
                    workspace.repo_path(repo.name),
                    workspace.branch_name,
                    token,
                    task.effective_pr_title,
                    task.effective_pr_title,
                    pr_body,
                )
                for repo in repos
            ),
            return_exceptions=True,
        )

        for repo, outcome in zip(repos, outcomes):
            if isinstance(outcome, PublishFailed):
                log.error(f"Publishing {repo.full_name} failed at {outcome.step}: {outcome.detail}")
                run.publish_failures.append(outcome)
            elif isinstance(outcome, Exception):
                log.error(f"Publishing {repo.full_name} failed: {outcome!r}")
                run.publish_failures.append(PublishFailed(repo.name, "publish", repr(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                run.publications.append(outcome)

    def _build_result(self, task: CodingTask, workspace: Workspace, run: PipelineRun) -> CodingResult:
        multi_repo = len(task.repositories) > 1

        files_changed: List[str] = []
        for publication in run.publications:
            for path in publication.files_changed:
                files_changed.append(f"{publication.repo_name}/{path}" if multi_repo else path)

        pr_urls = [p.pr_url for p in run.publications if p.pr_url]

        # First fallback commit in repository order is the primary commit
        primary = next((p.commit for p in run.publications if p.commit is not None), None)

        errors = []
        if run.publish_failures:
            errors.append(self.translator.summarize_publish_failures(run.publish_failures))
        if workspace.dropped:
            errors.append(f"Skipped unavailable repositories: {', '.join(workspace.dropped)}")

        return CodingResult(
            task_id=task.task_id,
            success=bool(pr_urls),
            files_changed=files_changed,
            commit_message=primary.message if primary else None,
            commit_sha=primary.sha if primary else None,
            pr_url=pr_urls[0] if pr_urls else None,
            pr_urls=pr_urls,
            error="; ".join(errors) if errors else None,
        )

    async def _cleanup(self, task: CodingTask, run: PipelineRun, workspace_path: Path, log: TaskLogger) -> None:
        try:
            await asyncio.to_thread(
                self.workspace_manager.teardown_workspace,
                run.workspace.path if run.workspace else workspace_path,
                run.workspace,
                list(task.repositories),
            )
        except Exception as e:
            # Must not replace the result already computed
            log.error(f"Workspace cleanup failed: {e}")
        self._transition(run, log, PipelineState.CLEANED_UP)

    def _transition(self, run: PipelineRun, log: TaskLogger, state: PipelineState) -> None:
        run.states.append(state)
        log.phase_change(state.value)
