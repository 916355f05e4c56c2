from .file_queue import ClaimedTask, TaskInbox
from .locks import ClaimLock

__all__ = ["ClaimLock", "ClaimedTask", "TaskInbox"]
