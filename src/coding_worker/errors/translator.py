"""Translate technical errors to user-facing Result messages."""

import logging
from typing import List

from pydantic import ValidationError

from .exceptions import CodingWorkerError, PublishFailed

logger = logging.getLogger(__name__)


class ErrorTranslator:
    """Turn exceptions into the single human-readable ``error`` of a Result."""

    GENERIC_MESSAGE = "Internal error while executing task"

    def to_user_message(self, error: BaseException) -> str:
        """Return the message a caller should see for ``error``."""
        if isinstance(error, CodingWorkerError):
            return error.user_message

        if isinstance(error, ValidationError):
            fields = sorted({".".join(str(p) for p in e["loc"]) for e in error.errors()})
            return f"Invalid task message: {', '.join(fields) or 'malformed payload'}"

        if isinstance(error, ValueError):
            return f"Invalid task: {error}"

        return f"{self.GENERIC_MESSAGE} ({type(error).__name__})"

    def summarize_publish_failures(self, failures: List[PublishFailed]) -> str:
        """Combine per-repository publish failures into one error string."""
        if not failures:
            return ""
        parts = [f.user_message for f in failures]
        return "Publishing failed for " + "; ".join(parts)
