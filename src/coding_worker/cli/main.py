"""Main CLI for the coding worker."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..core.config import DEFAULT_CONFIG_PATH, load_config
from ..core.pipeline import TaskPipeline
from ..queue.file_queue import ClaimedTask, TaskInbox
from ..utils.rich_logging import setup_logging
from ..workspace.repo_cache import RepositoryCache

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


def _read_message(task_file: str) -> dict:
    """Load a task message from a JSON file, or stdin for '-'."""
    try:
        if task_file == "-":
            message = json.load(sys.stdin)
        else:
            with open(task_file) as f:
                message = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Could not read task message: {e}")

    if not isinstance(message, dict):
        raise click.ClickException("Task message must be a JSON object")
    return message


@click.group()
@click.option(
    "--config", "-c", "config_path",
    default=str(DEFAULT_CONFIG_PATH),
    type=click.Path(dir_okay=False),
    help="Worker config file (YAML)",
)
@click.option("--log-level", default=None, help="Override logging level")
@click.pass_context
def cli(ctx, config_path, log_level):
    """Coding worker - turns coding tasks into pull requests."""
    ctx.ensure_object(dict)
    config = load_config(Path(config_path))
    ctx.obj["config"] = config

    setup_logging(
        level=log_level or config.logging.level,
        log_file=config.logging.log_file,
        use_colors=config.logging.use_colors,
    )


@cli.command()
@click.argument("task_file")
@click.pass_context
def run(ctx, task_file):
    """Execute one task message and print the result message."""
    config = ctx.obj["config"]
    message = _read_message(task_file)

    pipeline = TaskPipeline.from_config(config)
    result = asyncio.run(pipeline.execute_message(message))

    click.echo(json.dumps(result.to_message(), indent=2))
    if not result.success:
        err_console.print(f"[red]Task failed: {result.error}[/]")
    ctx.exit(0 if result.success else 1)


@cli.command()
@click.argument("task_file")
@click.pass_context
def submit(ctx, task_file):
    """Add a task message to the local inbox."""
    config = ctx.obj["config"]
    message = _read_message(task_file)

    inbox = TaskInbox(config.worker.communication_dir)
    try:
        path = inbox.submit(message)
    except ValueError as e:
        raise click.ClickException(str(e))

    if path is None:
        console.print(f"[yellow]Task {message.get('taskId')} already has a result, not queued[/]")
        return
    console.print(f"[green]✓[/] Queued {message['taskId']} ({path})")


@cli.command()
@click.option("--once", is_flag=True, help="Process the current inbox and exit")
@click.pass_context
def serve(ctx, once):
    """Poll the inbox and run tasks concurrently."""
    config = ctx.obj["config"]
    inbox = TaskInbox(config.worker.communication_dir, claim_max_age=config.worker.claim_max_age)
    pipeline = TaskPipeline.from_config(config)

    console.print(
        f"[bold]Serving {inbox.inbox_dir}[/] "
        f"(max {config.worker.max_concurrent_tasks} concurrent tasks)"
    )
    try:
        processed = asyncio.run(
            _serve(
                inbox,
                pipeline,
                max_concurrent=config.worker.max_concurrent_tasks,
                poll_interval=config.worker.poll_interval,
                once=once,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/]")
        return
    console.print(f"[green]✓[/] Processed {processed} task(s)")


def _log_handler_failure(task: asyncio.Task) -> None:
    """Surface an exception from a task handler; nothing else awaits it under serve."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Inbox task handler failed: {error!r}", exc_info=error)


async def _serve(
    inbox: TaskInbox,
    pipeline: TaskPipeline,
    max_concurrent: int,
    poll_interval: float,
    once: bool = False,
) -> int:
    """Claim and run tasks until stopped (or, with ``once``, until the inbox drains)."""
    semaphore = asyncio.Semaphore(max_concurrent)
    running = set()
    processed = 0

    async def handle(claimed: ClaimedTask):
        nonlocal processed
        try:
            result = await pipeline.execute_message(claimed.message)
            inbox.publish_result(result)
            processed += 1
        finally:
            try:
                inbox.complete(claimed)
            finally:
                semaphore.release()

    while True:
        await semaphore.acquire()
        claimed = inbox.claim()
        if claimed is None:
            semaphore.release()
            if once:
                break
            await asyncio.sleep(poll_interval)
            continue

        task = asyncio.create_task(handle(claimed))
        running.add(task)
        task.add_done_callback(running.discard)
        task.add_done_callback(_log_handler_failure)

    if running:
        # Failures were already logged by the done-callback
        await asyncio.gather(*running, return_exceptions=True)
    return processed


@cli.command()
@click.pass_context
def mirrors(ctx):
    """List cached repository mirrors."""
    config = ctx.obj["config"]
    cache = RepositoryCache(config.git.base_repos_path)

    entries = cache.list_mirrors()
    if not entries:
        console.print(f"[dim]No mirrors under {cache.root}[/]")
        return

    table = Table(title=f"Mirrors in {cache.root}")
    table.add_column("Owner")
    table.add_column("Repository")
    table.add_column("Path")

    for owner, name, path in entries:
        table.add_row(owner, name, str(path))

    console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
