"""Process management utilities for killing process trees."""

import os
import signal


def kill_process_group(pgid: int, sig: int = signal.SIGKILL) -> bool:
    """Signal every process in a process group.

    Agent processes are spawned with start_new_session=True, so the leader's
    pid is also the group id. The group outlives its leader: background
    children are still reached after the CLI itself has exited.

    Returns:
        True if the group still had members to signal
    """
    try:
        os.killpg(pgid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        return False
