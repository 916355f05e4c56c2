"""Claims on inbox messages, held as lock directories."""

import json
import logging
import os
import shutil
import socket
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)

# Time a fresh claim may go without an owner record
OWNER_RECORD_GRACE = 5.0


class ClaimLock:
    """
    Exclusive claim on one task message.

    The claim is the directory ``{lock_dir}/{task_id}.lock``; creating it with
    mkdir is the atomic step. ``owner.json`` inside it records who holds the
    claim (host, pid, claimed_at) so other workers can decide whether it is
    abandoned:

    - same host, holder pid gone: abandoned
    - any host, older than ``max_age`` seconds: abandoned
    - no readable owner record after a short grace period: abandoned (the
      holder died between mkdir and writing the record)
    """

    def __init__(self, lock_dir: Path, task_id: str, max_age: Optional[float] = None):
        self.lock_dir = Path(lock_dir)
        self.task_id = task_id
        self.max_age = max_age
        self.path = self.lock_dir / f"{task_id}.lock"
        self.owner_file = self.path / "owner.json"
        self._held = False

    @property
    def held(self) -> bool:
        """True while this instance owns the claim."""
        return self._held

    def acquire(self) -> bool:
        """Claim the task. Returns False if another live worker holds it."""
        if self.path.exists():
            if not self.is_abandoned():
                return False
            logger.info(f"Reclaiming abandoned claim on {self.task_id}: {self.owner()}")
            self._remove()

        try:
            self.path.mkdir(parents=True)
        except FileExistsError:
            # Another worker won the race after our check
            return False

        atomic_write_json(self.owner_file, self._owner_record())
        self._held = True
        logger.debug(f"Claimed {self.task_id}")
        return True

    def release(self) -> None:
        """Give the claim up. A no-op for claims this instance never held."""
        if self._held:
            self._remove()
        self._held = False

    def owner(self) -> Optional[Dict[str, Any]]:
        """The current holder's record, or None if missing or unreadable."""
        try:
            record = json.loads(self.owner_file.read_text())
        except (OSError, ValueError):
            return None
        return record if isinstance(record, dict) else None

    def is_abandoned(self) -> bool:
        record = self.owner()
        if record is None:
            try:
                return time.time() - self.path.stat().st_mtime > OWNER_RECORD_GRACE
            except FileNotFoundError:
                return True

        claimed_at = record.get("claimed_at")
        if self.max_age is not None and isinstance(claimed_at, (int, float)):
            if time.time() - claimed_at > self.max_age:
                return True

        if record.get("host") != socket.gethostname():
            # A pid on another host cannot be checked; only age decides
            return False

        pid = record.get("pid")
        if not isinstance(pid, int):
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def _owner_record(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "host": socket.gethostname(),
            "pid": os.getpid(),
            "claimed_at": time.time(),
        }

    def _remove(self) -> None:
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove claim {self.path}: {e}")

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Task {self.task_id} is claimed by {self.owner()}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
