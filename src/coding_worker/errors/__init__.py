"""Error taxonomy and user-facing translation."""

from .exceptions import (
    AgentExecutionFailed,
    CleanupFailed,
    CodingWorkerError,
    CredentialUnavailable,
    MirrorUnavailable,
    NoChanges,
    PublishFailed,
    WorktreeCreateFailed,
)
from .translator import ErrorTranslator

__all__ = [
    "AgentExecutionFailed",
    "CleanupFailed",
    "CodingWorkerError",
    "CredentialUnavailable",
    "ErrorTranslator",
    "MirrorUnavailable",
    "NoChanges",
    "PublishFailed",
    "WorktreeCreateFailed",
]
