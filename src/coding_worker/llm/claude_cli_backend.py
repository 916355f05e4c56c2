"""Claude CLI agent engine."""

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import List, Optional

from ..core.prompts import build_agent_prompt
from ..utils.process_utils import kill_process_group
from .base import AgentEngine, AgentRequest, AgentResponse

logger = logging.getLogger(__name__)

# Never hand worker credentials to the agent process
_SENSITIVE_ENV_VARS = frozenset({"GITHUB_TOKEN", "GH_TOKEN", "CODING_WORKER_EXTERNAL_API__TOKEN"})

_MAX_ERROR_LENGTH = 2000


class ClaudeCLIEngine(AgentEngine):
    """
    Agent engine that runs the Claude CLI inside the task workspace.

    Spawns: claude --print --model M --dangerously-skip-permissions --max-turns N
            --append-system-prompt S --add-dir <repo>...   (prompt on stdin)

    Output is teed to a per-task log file as it arrives. The engine imposes no
    deadline of its own: the caller cancels it, and cancellation kills the
    process before propagating.
    """

    def __init__(
        self,
        executable: str = "claude",
        max_turns: int = 200,
        default_model: str = "claude-sonnet-4-5-20250929",
    ):
        self.executable = executable
        self.max_turns = max_turns
        self.default_model = default_model

    def build_command(self, request: AgentRequest) -> List[str]:
        model = request.model or self.default_model
        cmd = [
            self.executable,
            "--print",  # Non-interactive mode - write to stdout and exit
            "--model", model,
            "--dangerously-skip-permissions",
            "--max-turns", str(self.max_turns),
        ]

        if request.system_prompt:
            cmd.extend(["--append-system-prompt", request.system_prompt])

        for _, repo_path in request.repositories:
            cmd.extend(["--add-dir", str(repo_path)])

        return cmd

    async def execute(self, request: AgentRequest) -> AgentResponse:
        start_time = time.time()
        cmd = self.build_command(request)
        prompt = build_agent_prompt(request.prompt, request.files)

        env = os.environ.copy()
        for key in _SENSITIVE_ENV_VARS:
            env.pop(key, None)
        env["AGENT_TASK_ID"] = request.task_id

        log_file = None
        process: Optional[asyncio.subprocess.Process] = None
        try:
            if request.log_file:
                Path(request.log_file).parent.mkdir(parents=True, exist_ok=True)
                log_file = open(request.log_file, "a")
                log_file.write(f"=== Claude CLI Task: {request.task_id} ===\n")
                log_file.write(f"Model: {request.model or self.default_model}\n")
                log_file.write(f"Working Directory: {request.workspace_path}\n")
                log_file.write(f"Repositories: {', '.join(name for name, _ in request.repositories)}\n")
                log_file.write(f"Started: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                log_file.write("=" * 50 + "\n\n")
                log_file.flush()
                logger.info(f"Streaming Claude CLI output to {request.log_file}")

            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(request.workspace_path),
                # Own process group, so the deadline reaches everything the CLI spawns
                start_new_session=True,
            )

            process.stdin.write(prompt.encode())
            await process.stdin.drain()
            process.stdin.close()

            stdout_chunks: List[str] = []
            stderr_chunks: List[str] = []

            async def tee(stream, chunks, header=None):
                header_written = False
                while True:
                    chunk = await stream.read(4096)
                    if not chunk:
                        break
                    decoded = chunk.decode(errors="replace")
                    chunks.append(decoded)
                    if log_file:
                        if header and not header_written and decoded.strip():
                            log_file.write(header)
                            header_written = True
                        log_file.write(decoded)
                        log_file.flush()

            await asyncio.gather(
                tee(process.stdout, stdout_chunks),
                tee(process.stderr, stderr_chunks, header=f"\n{'=' * 50}\nSTDERR:\n{'=' * 50}\n"),
            )
            await process.wait()

        except asyncio.CancelledError:
            if process is not None:
                # The leader may already have exited while a child still holds
                # the output pipes, so signal the group regardless of returncode
                logger.warning(f"Agent run for task {request.task_id} cancelled, killing Claude CLI process group")
                kill_process_group(process.pid, signal.SIGKILL)
                await process.wait()
            if log_file:
                log_file.write(f"\n\n{'=' * 50}\n")
                log_file.write(f"CANCELLED after {time.time() - start_time:.1f}s, process killed\n")
            raise

        except OSError as e:
            # Executable missing or not runnable
            logger.error(f"Failed to start Claude CLI: {e}")
            return AgentResponse(
                success=False,
                error=f"Failed to start {self.executable}: {e}",
                latency_ms=(time.time() - start_time) * 1000,
            )

        finally:
            if log_file:
                log_file.close()
            # Nothing the agent started may keep writing into the workspace
            if process is not None and kill_process_group(process.pid, signal.SIGKILL):
                logger.warning(f"Killed leftover processes of Claude CLI for task {request.task_id}")

        latency_ms = (time.time() - start_time) * 1000
        output = "".join(stdout_chunks)
        stderr_text = "".join(stderr_chunks)

        if request.log_file:
            with open(request.log_file, "a") as f:
                f.write(f"\n\n{'=' * 50}\nSUMMARY\n{'=' * 50}\n")
                f.write(f"Completed: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                f.write(f"Duration: {latency_ms / 1000:.1f}s\n")
                f.write(f"Exit code: {process.returncode}\n")

        if process.returncode == 0:
            logger.info(f"Claude CLI finished in {latency_ms / 1000:.1f}s")
            return AgentResponse(success=True, output=output, latency_ms=latency_ms, exit_code=0)

        error_parts = [f"Exit code {process.returncode}"]
        if stderr_text.strip():
            error_parts.append(f"STDERR: {stderr_text.strip()}")
        error_msg = " | ".join(error_parts)[:_MAX_ERROR_LENGTH]

        logger.error(
            f"Claude CLI failed: returncode={process.returncode}\n"
            f"STDERR: {stderr_text[:1000]}\n"
            f"Log: {request.log_file}"
        )
        return AgentResponse(
            success=False,
            output=output,
            error=error_msg,
            latency_ms=latency_ms,
            exit_code=process.returncode,
        )
