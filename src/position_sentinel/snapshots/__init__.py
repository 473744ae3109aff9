"""Position snapshot layer - chain reads, classification and latest-value storage."""

from position_sentinel.snapshots.builder import SnapshotBuilder, SnapshotError, SnapshotRunResult
from position_sentinel.snapshots.models import LoanState, LpState
from position_sentinel.snapshots.reader import ChainPositionReader, PositionReadError

__all__ = [
    "ChainPositionReader",
    "LoanState",
    "LpState",
    "PositionReadError",
    "SnapshotBuilder",
    "SnapshotError",
    "SnapshotRunResult",
]
