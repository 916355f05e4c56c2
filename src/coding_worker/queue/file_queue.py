"""File-based task inbox for running the worker without a message broker.

Layout under the communication directory:

    inbox/       pending task messages ({taskId}.json)
    locks/       mkdir-based claim locks
    processed/   task messages that have been answered
    results/     outbound result messages ({taskId}.json)
    malformed/   messages that could not be parsed
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.task import CodingResult
from ..utils.atomic_io import atomic_write_json, read_json
from ..utils.validators import validate_identifier
from .locks import ClaimLock

logger = logging.getLogger(__name__)


@dataclass
class ClaimedTask:
    """An inbox message held by this worker until it is completed."""
    task_id: str
    message: Dict[str, Any]
    path: Path
    lock: ClaimLock


class TaskInbox:
    """Local transport: task messages in, result messages out."""

    def __init__(self, communication_dir: Path, claim_max_age: Optional[float] = None):
        """
        Args:
            communication_dir: Root of the inbox layout
            claim_max_age: Seconds after which any claim counts as abandoned,
                even one held by a worker on another host
        """
        self.comm_dir = Path(communication_dir)
        self.claim_max_age = claim_max_age
        self.inbox_dir = self.comm_dir / "inbox"
        self.lock_dir = self.comm_dir / "locks"
        self.processed_dir = self.comm_dir / "processed"
        self.results_dir = self.comm_dir / "results"
        self.malformed_dir = self.comm_dir / "malformed"
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        """Ensure all required directories exist."""
        for directory in (
            self.inbox_dir,
            self.lock_dir,
            self.processed_dir,
            self.results_dir,
            self.malformed_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def submit(self, message: Dict[str, Any]) -> Optional[Path]:
        """
        Enqueue a task message.

        Uses atomic write: write to .tmp then rename. Messages whose task
        already has a result are rejected so a task is never answered twice.

        Raises:
            ValueError: If the message has no usable taskId
        """
        task_id = validate_identifier(str(message.get("taskId", "")), "taskId")

        if (self.results_dir / f"{task_id}.json").exists():
            logger.warning(f"Rejecting submit for already-answered task {task_id}")
            return None

        task_file = self.inbox_dir / f"{task_id}.json"
        atomic_write_json(task_file, message)
        logger.info(f"Submitted task {task_id}")
        return task_file

    def pending(self) -> List[Path]:
        """Inbox files, oldest first."""
        files = []
        for task_file in self.inbox_dir.glob("*.json"):
            try:
                files.append((task_file.stat().st_mtime, task_file.name, task_file))
            except FileNotFoundError:
                continue
        return [f for _, _, f in sorted(files)]

    def claim(self) -> Optional[ClaimedTask]:
        """Atomically pick the oldest unclaimed message and lock it.

        Returns None if the inbox is empty or every message is held by
        another worker.
        """
        for task_file in self.pending():
            task_id = task_file.stem
            lock = ClaimLock(self.lock_dir, task_id, max_age=self.claim_max_age)
            if not lock.acquire():
                continue

            try:
                message = json.loads(task_file.read_text())
                if not isinstance(message, dict):
                    raise ValueError(f"expected a JSON object, got {type(message).__name__}")
            except FileNotFoundError:
                # Completed by another worker between listing and locking
                lock.release()
                continue
            except (json.JSONDecodeError, ValueError, UnicodeDecodeError) as e:
                self._quarantine_malformed(task_file, task_id, e)
                lock.release()
                continue

            return ClaimedTask(task_id=task_id, message=message, path=task_file, lock=lock)

        return None

    def publish_result(self, result: CodingResult) -> Path:
        """Write the outbound result message."""
        result_file = self.results_dir / f"{result.task_id}.json"
        atomic_write_json(result_file, result.to_message())
        logger.info(f"Published result for {result.task_id} (success={result.success})")
        return result_file

    def complete(self, claimed: ClaimedTask) -> None:
        """Archive the answered message and release its claim."""
        try:
            if claimed.path.exists():
                claimed.path.rename(self.processed_dir / claimed.path.name)
        finally:
            claimed.lock.release()

    def get_result(self, task_id: str) -> Optional[Dict[str, Any]]:
        return read_json(self.results_dir / f"{task_id}.json")

    def _quarantine_malformed(self, task_file: Path, task_id: str, error: Exception) -> None:
        """Move an unparseable message aside and answer it with a failure result."""
        dest_file = self.malformed_dir / task_file.name
        if dest_file.exists():
            dest_file = self.malformed_dir / f"{task_file.stem}_{int(time.time())}{task_file.suffix}"

        try:
            task_file.rename(dest_file)
        except OSError as e:
            logger.error(f"Failed to quarantine malformed task {task_file}: {e}")
            return

        logger.warning(f"Quarantined malformed task file: {task_file} -> {dest_file} (error: {error})")

        # The file name is the only task id left to answer with
        try:
            validate_identifier(task_id, "taskId")
        except ValueError:
            return
        self.publish_result(
            CodingResult(task_id=task_id, success=False, error="Invalid task message: malformed payload")
        )
