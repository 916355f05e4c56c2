"""Logging with task context and readable console formatting."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Tuple

# (task_id, org_id) of the pipeline run in progress. asyncio.to_thread copies
# the context, so blocking components running in worker threads see it too.
_current_task: ContextVar[Optional[Tuple[str, Optional[str]]]] = ContextVar("current_task", default=None)


class WorkerLogFormatter(logging.Formatter):
    """Custom formatter with task and phase context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }

    def __init__(self, worker_id: str = "coding-worker", use_colors: bool = True):
        super().__init__()
        self.worker_id = worker_id
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with context."""
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        task_context = ""
        if hasattr(record, "task_id"):
            task_context = f"[{record.task_id}] "

        phase_context = ""
        if getattr(record, "phase", None):
            phase_context = f"[{record.phase}] "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.worker_id}] {phase_context}{task_context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class TaskLogger(logging.LoggerAdapter):
    """Logger adapter that adds task context to all log messages.

    One adapter is created per pipeline run, so concurrent tasks never share
    mutable context.
    """

    def __init__(self, logger: logging.Logger, task_id: str, org_id: Optional[str] = None):
        super().__init__(logger, {})
        self.task_id = task_id
        self.org_id = org_id
        self.phase: Optional[str] = None

    def process(self, msg, kwargs):
        """Add context to log record."""
        extra = dict(kwargs.get("extra") or {})
        extra["task_id"] = self.task_id
        if self.org_id:
            extra["org_id"] = self.org_id
        if self.phase:
            extra["phase"] = self.phase
        kwargs["extra"] = extra
        return msg, kwargs

    def phase_change(self, phase: str):
        """Log a pipeline state transition."""
        self.phase = phase
        self.info(f"Phase: {phase}")


@contextmanager
def task_context(task_id: str, org_id: Optional[str] = None) -> Iterator[None]:
    """Attribute every record logged inside the block to ``task_id``."""
    token = _current_task.set((task_id, org_id))
    try:
        yield
    finally:
        _current_task.reset(token)


class TaskContextFilter(logging.Filter):
    """Stamp records from plain module loggers with the task being run.

    Records that already carry a task id (from a TaskLogger) are left alone.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        current = _current_task.get()
        if current is not None and not hasattr(record, "task_id"):
            record.task_id, org_id = current
            if org_id and not hasattr(record, "org_id"):
                record.org_id = org_id
        return True


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    use_colors: bool = True,
    worker_id: str = "coding-worker",
) -> logging.Logger:
    """
    Configure the root logger for the worker process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file to mirror log output into (no ANSI codes)
        use_colors: Colorize console output when attached to a terminal
        worker_id: Label printed on every line

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)

    is_tty = sys.stderr.isatty() if hasattr(sys.stderr, "isatty") else False
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(WorkerLogFormatter(worker_id, use_colors=use_colors and is_tty))
    console_handler.addFilter(TaskContextFilter())
    root.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(WorkerLogFormatter(worker_id, use_colors=False))
        file_handler.addFilter(TaskContextFilter())
        root.addHandler(file_handler)

    return root
