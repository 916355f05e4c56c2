"""Atomic JSON file exchange for the task inbox."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional


def atomic_write_json(file_path: Path, data: Any, indent: int = 2) -> None:
    """
    Write ``data`` as JSON so readers see either no file or the complete one.

    The temp file lives in the target's directory (same filesystem, so the
    final ``os.replace`` is atomic) and is named ``.{stem}.*.tmp`` so directory
    scans for ``*.json`` never pick it up. It is removed if anything fails.
    """
    file_path = Path(file_path)
    fd, tmp_name = tempfile.mkstemp(
        dir=file_path.parent,
        prefix=f".{file_path.stem}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, file_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_json(file_path: Path) -> Optional[Any]:
    """Parsed contents of ``file_path``, or None if it does not exist."""
    try:
        with open(file_path) as f:
            return json.load(f)
    except FileNotFoundError:
        return None
