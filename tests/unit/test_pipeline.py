"""Tests for the task pipeline: ordering, failure mapping and cleanup guarantees."""

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from coding_worker.core.pipeline import TaskPipeline
from coding_worker.core.task import (
    CodingTask,
    CommitInfo,
    PipelineState,
    RepositoryPublication,
    Workspace,
)
from coding_worker.errors import (
    CredentialUnavailable,
    MirrorUnavailable,
    PublishFailed,
)
from coding_worker.llm.base import AgentEngine, AgentResponse
from coding_worker.utils.rich_logging import TaskContextFilter
from coding_worker.workspace.publisher import Publisher
from tests.unit.git_fixtures import git


def _message(repos=("api",), **overrides):
    message = {
        "taskId": "task-1",
        "orgId": "org-1",
        "userId": "user-1",
        "authToken": "jwt-abc",
        "prompt": "Add a health endpoint",
        "agentName": "Coder",
        "repositories": [{"owner": "acme", "name": name, "branch": "main"} for name in repos],
    }
    message.update(overrides)
    return message


def _task(repos=("api",), **overrides):
    return CodingTask.model_validate(_message(repos, **overrides))


def _publication(name, sha=None):
    commit = CommitInfo(sha=sha, message="Task task-1", files_changed=["app.py"]) if sha else None
    return RepositoryPublication(
        repo_name=name,
        pr_url=f"https://github.com/acme/{name}/pull/1",
        commit=commit,
        files_changed=["app.py"],
        pushed=True,
    )


@pytest.fixture
def workspace_root(tmp_path):
    return tmp_path / "worktrees" / "org-1" / "task-1"


@pytest.fixture
def components(tmp_path, workspace_root):
    """Mocked collaborators wired for a two-repository happy path."""
    credentials = MagicMock()
    credentials.fetch_token.return_value = "ghs_installation"

    workspace = Workspace(
        path=workspace_root,
        branch_name="task/task-1",
        repositories={"api": workspace_root / "api", "web": workspace_root / "web"},
        mirrors={"api": tmp_path / "m" / "api", "web": tmp_path / "m" / "web"},
    )
    workspace_manager = MagicMock()
    workspace_manager.worktrees_root = tmp_path / "worktrees"
    workspace_manager.workspace_path.return_value = workspace_root
    workspace_manager.setup_workspace.return_value = workspace
    workspace_manager.teardown_workspace.return_value = True

    change_detector = MagicMock()
    change_detector.list_modified_repositories.return_value = ["api", "web"]

    publisher = MagicMock()
    publisher.publish.side_effect = lambda repo, *args: _publication(repo.name, sha=f"sha-{repo.name}")

    engine = MagicMock(spec=AgentEngine)
    engine.execute = AsyncMock(return_value=AgentResponse(success=True, output="done"))

    return MagicMock(
        credentials=credentials,
        workspace_manager=workspace_manager,
        change_detector=change_detector,
        publisher=publisher,
        engine=engine,
        workspace=workspace,
    )


@pytest.fixture
def pipeline(components):
    return TaskPipeline(
        credentials=components.credentials,
        workspace_manager=components.workspace_manager,
        change_detector=components.change_detector,
        publisher=components.publisher,
        engine=components.engine,
        agent_timeout=5,
        default_model="claude-default",
    )


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_multi_repo_success(self, pipeline, components):
        run = await pipeline.run(_task(("api", "web")))
        result = run.result

        assert result.success is True
        assert result.pr_urls == [
            "https://github.com/acme/api/pull/1",
            "https://github.com/acme/web/pull/1",
        ]
        assert result.pr_url == result.pr_urls[0]
        assert result.files_changed == ["api/app.py", "web/app.py"]
        assert result.commit_sha == "sha-api"
        assert result.commit_message == "Task task-1"
        assert result.error is None
        assert result.execution_time >= 0

    @pytest.mark.asyncio
    async def test_states_visited_in_order(self, pipeline):
        run = await pipeline.run(_task(("api", "web")))

        assert run.states == [
            PipelineState.RECEIVED,
            PipelineState.TOKEN_ACQUIRED,
            PipelineState.WORKSPACE_READY,
            PipelineState.AGENT_EXECUTED,
            PipelineState.CHANGES_DETECTED,
            PipelineState.PUBLISHED,
            PipelineState.CLEANED_UP,
            PipelineState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_single_repo_files_are_not_prefixed(self, pipeline, components):
        components.change_detector.list_modified_repositories.return_value = ["api"]

        result = await pipeline.execute(_task(("api",)))

        assert result.files_changed == ["app.py"]

    @pytest.mark.asyncio
    async def test_components_receive_task_details(self, pipeline, components, workspace_root):
        task = _task(("api", "web"), model="claude-custom", files=["api/app.py"])

        await pipeline.execute(task)

        components.credentials.fetch_token.assert_called_once_with(
            "org-1", "user-1", "task-1", "acme", ["api", "web"], "jwt-abc"
        )
        setup_args = components.workspace_manager.setup_workspace.call_args.args
        assert setup_args[0:2] == ("org-1", "task-1")
        assert setup_args[3:] == ("ghs_installation", "task/task-1")

        request = components.engine.execute.call_args.args[0]
        assert request.workspace_path == workspace_root
        assert request.repositories == [("api", workspace_root / "api"), ("web", workspace_root / "web")]
        assert request.model == "claude-custom"
        assert request.files == ["api/app.py"]
        assert request.log_file == workspace_root.parent / "logs" / "task-1.log"

    @pytest.mark.asyncio
    async def test_only_modified_repositories_are_published(self, pipeline, components):
        components.change_detector.list_modified_repositories.return_value = ["web"]

        result = await pipeline.execute(_task(("api", "web")))

        published = [c.args[0].name for c in components.publisher.publish.call_args_list]
        assert published == ["web"]
        assert result.pr_urls == ["https://github.com/acme/web/pull/1"]

    @pytest.mark.asyncio
    async def test_commit_fields_absent_when_agent_committed(self, pipeline, components):
        components.publisher.publish.side_effect = lambda repo, *args: _publication(repo.name)

        result = await pipeline.execute(_task(("api", "web")))

        assert result.success is True
        assert result.commit_sha is None
        assert "commitSha" not in result.to_message()


class TestCleanupGuarantee:
    """Teardown runs exactly once, whichever step fails."""

    @pytest.mark.asyncio
    async def test_credential_failure(self, pipeline, components, workspace_root):
        components.credentials.fetch_token.side_effect = CredentialUnavailable("HTTP 401")

        run = await pipeline.run(_task())

        assert run.result.success is False
        assert run.result.error == CredentialUnavailable.user_message
        components.workspace_manager.setup_workspace.assert_not_called()
        components.engine.execute.assert_not_called()
        components.workspace_manager.teardown_workspace.assert_called_once()
        assert components.workspace_manager.teardown_workspace.call_args.args[0] == workspace_root
        assert run.states == [PipelineState.RECEIVED, PipelineState.CLEANED_UP, PipelineState.DONE]

    @pytest.mark.asyncio
    async def test_workspace_setup_failure(self, pipeline, components):
        components.workspace_manager.setup_workspace.side_effect = MirrorUnavailable("acme", "api", "not found")

        result = await pipeline.execute(_task())

        assert result.success is False
        assert result.error == "Failed to fetch repository acme/api"
        components.engine.execute.assert_not_called()
        components.workspace_manager.teardown_workspace.assert_called_once()

    @pytest.mark.asyncio
    async def test_agent_timeout(self, pipeline, components):
        async def hang(request):
            await asyncio.sleep(30)

        components.engine.execute = hang
        pipeline.agent_timeout = 0.05

        run = await pipeline.run(_task())

        assert run.result.success is False
        assert run.result.error == "Agent execution timed out after 0.05 seconds"
        components.publisher.publish.assert_not_called()
        components.workspace_manager.teardown_workspace.assert_called_once()
        assert PipelineState.AGENT_EXECUTED not in run.states
        assert run.states[-2:] == [PipelineState.CLEANED_UP, PipelineState.DONE]

    @pytest.mark.asyncio
    async def test_agent_failure(self, pipeline, components):
        components.engine.execute.return_value = AgentResponse(success=False, error="Exit code 1")

        result = await pipeline.execute(_task())

        assert result.success is False
        assert result.error == "Agent execution failed"
        components.change_detector.list_modified_repositories.assert_not_called()
        components.workspace_manager.teardown_workspace.assert_called_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_gets_generic_message(self, pipeline, components):
        components.change_detector.list_modified_repositories.side_effect = RuntimeError("boom")

        result = await pipeline.execute(_task())

        assert result.success is False
        assert result.error == "Internal error while executing task (RuntimeError)"
        components.workspace_manager.teardown_workspace.assert_called_once()

    @pytest.mark.asyncio
    async def test_cleanup_error_does_not_replace_result(self, pipeline, components):
        components.workspace_manager.teardown_workspace.side_effect = RuntimeError("disk gone")

        run = await pipeline.run(_task(("api", "web")))

        assert run.result.success is True
        assert PipelineState.CLEANED_UP in run.states

    @pytest.mark.asyncio
    async def test_teardown_receives_workspace_and_repositories(self, pipeline, components):
        task = _task(("api", "web"))

        await pipeline.execute(task)

        path, workspace, repositories = components.workspace_manager.teardown_workspace.call_args.args
        assert path == components.workspace.path
        assert workspace is components.workspace
        assert [r.name for r in repositories] == ["api", "web"]


class TestNoChanges:
    @pytest.mark.asyncio
    async def test_no_push_and_no_pr(self, pipeline, components):
        components.change_detector.list_modified_repositories.return_value = []

        run = await pipeline.run(_task(("api", "web")))

        assert run.result.success is False
        assert run.result.error == "No changes were made"
        assert run.result.pr_url is None
        components.publisher.publish.assert_not_called()
        assert PipelineState.CHANGES_DETECTED in run.states
        assert PipelineState.PUBLISHED not in run.states
        components.workspace_manager.teardown_workspace.assert_called_once()


class TestPartialPublish:
    @pytest.mark.asyncio
    async def test_one_repository_fails(self, pipeline, components):
        def publish(repo, *args):
            if repo.name == "web":
                raise PublishFailed("web", "push", "rejected")
            return _publication(repo.name, sha="sha-api")

        components.publisher.publish.side_effect = publish

        run = await pipeline.run(_task(("api", "web")))

        assert run.result.success is True
        assert run.result.pr_urls == ["https://github.com/acme/api/pull/1"]
        assert run.result.error == "Publishing failed for web: push failed"
        assert [f.repo_name for f in run.publish_failures] == ["web"]

    @pytest.mark.asyncio
    async def test_every_repository_fails(self, pipeline, components):
        def publish(repo, *args):
            raise PublishFailed(repo.name, "pull request", "403")

        components.publisher.publish.side_effect = publish

        result = await pipeline.execute(_task(("api", "web")))

        assert result.success is False
        assert result.pr_urls == []
        assert result.error == "Publishing failed for api: pull request failed; web: pull request failed"

    @pytest.mark.asyncio
    async def test_unexpected_publish_error_is_isolated(self, pipeline, components):
        def publish(repo, *args):
            if repo.name == "api":
                raise OSError("disk full")
            return _publication(repo.name, sha="sha-web")

        components.publisher.publish.side_effect = publish

        result = await pipeline.execute(_task(("api", "web")))

        assert result.success is True
        assert result.commit_sha == "sha-web"
        assert result.error == "Publishing failed for api: publish failed"


class TestDroppedRepositories:
    @pytest.mark.asyncio
    async def test_dropped_repository_noted(self, pipeline, components, workspace_root):
        components.workspace.repositories.pop("web")
        components.workspace.mirrors.pop("web")
        components.workspace.dropped.append("web")
        components.change_detector.list_modified_repositories.return_value = ["api"]

        result = await pipeline.execute(_task(("api", "web")))

        assert result.success is True
        assert result.error == "Skipped unavailable repositories: web"
        request = components.engine.execute.call_args.args[0]
        assert request.repositories == [("api", workspace_root / "api")]


class TestExecuteMessage:
    @pytest.mark.asyncio
    async def test_invalid_message_rejected_without_side_effects(self, pipeline, components):
        result = await pipeline.execute_message(_message(repositories=[]))

        assert result.success is False
        assert result.task_id == "task-1"
        assert result.error.startswith("Invalid task message")
        components.credentials.fetch_token.assert_not_called()
        components.workspace_manager.teardown_workspace.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_task_id(self, pipeline):
        message = _message()
        del message["taskId"]

        result = await pipeline.execute_message(message)

        assert result.task_id == "unknown"
        assert result.success is False

    @pytest.mark.asyncio
    async def test_valid_message_runs(self, pipeline):
        result = await pipeline.execute_message(_message(("api", "web")))
        assert result.success is True


class _WritingEngine(AgentEngine):
    """Stands in for the agent: writes files into the named worktrees."""

    def __init__(self, edits, commit_in=()):
        self.edits = edits
        self.commit_in = commit_in
        self.requests = []

    async def execute(self, request):
        self.requests.append(request)
        worktrees = dict(request.repositories)
        for repo_name, rel_path, content in self.edits:
            (worktrees[repo_name] / rel_path).write_text(content)
        for repo_name in self.commit_in:
            git(["add", "-A"], worktrees[repo_name])
            git(["commit", "-m", "feat: agent commit"], worktrees[repo_name])
        return AgentResponse(success=True, output="done")


class TestEndToEnd:
    """Real mirrors, worktrees and pushes against local bare remotes."""

    @pytest.fixture
    def github_client(self):
        client = MagicMock()
        client.get_pr_by_branch.return_value = None
        client.create_pull_request.side_effect = lambda **kw: MagicMock(
            html_url=f"https://github.com/acme/pr-for-{kw['head_branch']}"
        )
        return client

    def _pipeline(self, tmp_path, repo_cache, workspace_manager, change_detector, github_client, engine):
        credentials = MagicMock()
        credentials.fetch_token.return_value = "ghs_installation"
        return TaskPipeline(
            credentials=credentials,
            workspace_manager=workspace_manager,
            change_detector=change_detector,
            publisher=Publisher(
                repo_cache,
                change_detector=change_detector,
                github_client_factory=MagicMock(return_value=github_client),
            ),
            engine=engine,
            logs_dir=tmp_path / "logs",
        )

    @pytest.mark.asyncio
    async def test_single_repository_fallback_commit(
        self, tmp_path, make_remote, repo_cache, workspace_manager, change_detector, github_client
    ):
        bare = make_remote("acme", "api")
        engine = _WritingEngine([("api", "health.py", "def health():\n    return 'ok'\n")])
        pipeline = self._pipeline(tmp_path, repo_cache, workspace_manager, change_detector, github_client, engine)

        run = await pipeline.run(_task(("api",)))
        result = run.result

        assert result.success is True, result.error
        assert result.files_changed == ["health.py"]
        assert result.commit_message == "Task task-1"
        assert git(["rev-parse", "refs/heads/task/task-1"], bare) == result.commit_sha
        assert not workspace_manager.workspace_path("org-1", "task-1").exists()
        github_client.create_pull_request.assert_called_once()
        assert github_client.create_pull_request.call_args.kwargs["base_branch"] == "main"

    @pytest.mark.asyncio
    async def test_multi_repository_only_modified_published(
        self, tmp_path, make_remote, repo_cache, workspace_manager, change_detector, github_client
    ):
        make_remote("acme", "api")
        web_bare = make_remote("acme", "web")
        engine = _WritingEngine([("web", "index.ts", "export {}\n")], commit_in=("web",))
        pipeline = self._pipeline(tmp_path, repo_cache, workspace_manager, change_detector, github_client, engine)

        result = await pipeline.execute(_task(("api", "web")))

        assert result.success is True, result.error
        assert result.files_changed == ["web/index.ts"]
        assert len(result.pr_urls) == 1
        # The agent committed, so no fallback commit is reported
        assert result.commit_sha is None
        assert git(["log", "-1", "--format=%s", "refs/heads/task/task-1"], web_bare) == "feat: agent commit"
        assert [name for name, _ in engine.requests[0].repositories] == ["api", "web"]
        assert not workspace_manager.workspace_path("org-1", "task-1").exists()

    @pytest.mark.asyncio
    async def test_no_changes_leaves_remote_untouched(
        self, tmp_path, make_remote, repo_cache, workspace_manager, change_detector, github_client
    ):
        bare = make_remote("acme", "api")
        engine = _WritingEngine([])
        pipeline = self._pipeline(tmp_path, repo_cache, workspace_manager, change_detector, github_client, engine)

        result = await pipeline.execute(_task(("api",)))

        assert result.success is False
        assert result.error == "No changes were made"
        assert "task/task-1" not in git(["branch", "--list"], bare)
        github_client.create_pull_request.assert_not_called()
        assert not workspace_manager.workspace_path("org-1", "task-1").exists()

    @pytest.mark.asyncio
    async def test_component_logs_carry_task_id(
        self, tmp_path, make_remote, repo_cache, workspace_manager, change_detector, github_client
    ):
        make_remote("acme", "api")
        engine = _WritingEngine([("api", "health.py", "x = 1\n")])
        pipeline = self._pipeline(tmp_path, repo_cache, workspace_manager, change_detector, github_client, engine)

        records = []
        handler = logging.Handler()
        handler.emit = records.append
        handler.addFilter(TaskContextFilter())
        component_logger = logging.getLogger("coding_worker.workspace")
        old_level = component_logger.level
        component_logger.addHandler(handler)
        component_logger.setLevel(logging.INFO)
        try:
            result = await pipeline.execute(_task(("api",)))
        finally:
            component_logger.removeHandler(handler)
            component_logger.setLevel(old_level)

        assert result.success is True, result.error
        names = {r.name for r in records}
        assert "coding_worker.workspace.worktree_manager" in names
        assert "coding_worker.workspace.publisher" in names
        assert all(getattr(r, "task_id", None) == "task-1" for r in records)
