"""Staleness-gated snapshot refresh for the read path."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from position_sentinel.storage.repos import SnapshotRepository

if TYPE_CHECKING:
    from position_sentinel.refresh.lock import FileLock
    from position_sentinel.storage.database import SessionFactory
    from position_sentinel.storage.repos import LoanSnapshotDTO, LpSnapshotDTO

logger = logging.getLogger(__name__)

SNAPSHOT_REFRESH_LOCK = "snapshot-refresh"


class Refresher(Protocol):
    async def refresh_all(self) -> Any: ...


@dataclass
class Summaries:
    loans: list[LoanSnapshotDTO] = field(default_factory=list)
    lps: list[LpSnapshotDTO] = field(default_factory=list)
    newest_at: datetime | None = None

    @property
    def empty(self) -> bool:
        return not self.loans and not self.lps


@dataclass
class RefreshResult:
    """Snapshot summaries plus how fresh they are."""

    summaries: Summaries
    is_stale: bool
    refreshed: bool
    warning: str | None = None


class RefreshCoordinator:
    """Serves cached snapshots, refreshing them under a lock when stale.

    If another process holds the refresh lock, or the refresh fails, the
    caller still gets the cached data together with a warning.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        refresher: Refresher,
        lock: FileLock,
        *,
        stale_after: timedelta,
        lock_name: str = SNAPSHOT_REFRESH_LOCK,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._refresher = refresher
        self._lock = lock
        self._stale_after = stale_after
        self._lock_name = lock_name
        self._clock = clock or (lambda: datetime.now(UTC))

    async def read_summaries(self) -> Summaries:
        async with self._session_factory() as session:
            repo = SnapshotRepository(session)
            return Summaries(
                loans=await repo.list_loans(),
                lps=await repo.list_lps(),
                newest_at=await repo.max_snapshot_at(),
            )

    def is_stale(self, newest_at: datetime | None) -> bool:
        if newest_at is None:
            return True
        return self._clock() - newest_at > self._stale_after

    async def get_summaries(self) -> RefreshResult:
        """Return current summaries, refreshing first when they are stale."""
        cached = await self.read_summaries()
        if not self.is_stale(cached.newest_at):
            return RefreshResult(summaries=cached, is_stale=False, refreshed=False)

        async with self._lock.hold(self._lock_name) as outcome:
            if not outcome.held:
                logger.info("Snapshot refresh already running elsewhere; serving cached data")
                return RefreshResult(
                    summaries=cached,
                    is_stale=True,
                    refreshed=False,
                    warning="A refresh is already in progress; showing cached data.",
                )
            try:
                await self._refresher.refresh_all()
                fresh = await self.read_summaries()
            except Exception as e:
                logger.error("Snapshot refresh failed: %s: %s", type(e).__name__, e)
                return RefreshResult(
                    summaries=cached,
                    is_stale=True,
                    refreshed=False,
                    warning=f"Live refresh failed ({type(e).__name__}); showing cached data.",
                )

        return RefreshResult(summaries=fresh, is_stale=self.is_stale(fresh.newest_at), refreshed=True)
