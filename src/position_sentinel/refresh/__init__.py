"""Refresh coordination - staleness gate and cross-process file locks."""

from position_sentinel.refresh.coordinator import (
    SNAPSHOT_REFRESH_LOCK,
    RefreshCoordinator,
    RefreshResult,
    Summaries,
)
from position_sentinel.refresh.lock import AcquireOutcome, FileLock, LockHandle, is_pid_alive

__all__ = [
    "SNAPSHOT_REFRESH_LOCK",
    "AcquireOutcome",
    "FileLock",
    "LockHandle",
    "RefreshCoordinator",
    "RefreshResult",
    "Summaries",
    "is_pid_alive",
]
