"""Tests for the staleness-gated refresh coordinator."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

import pytest

from position_sentinel.refresh.coordinator import SNAPSHOT_REFRESH_LOCK, RefreshCoordinator
from position_sentinel.refresh.lock import FileLock, LockHandle
from position_sentinel.storage.database import DatabaseManager
from position_sentinel.storage.repos import LoanSnapshotDTO, SnapshotRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _store_loan(db: DatabaseManager, seed, at: datetime) -> None:
    async with db.get_async_session() as session:
        await SnapshotRepository(session).upsert_loan(
            LoanSnapshotDTO(
                identity=seed.loan_identity(),
                chain_id="FLR",
                protocol="enosys-loans",
                collateral=1000.0,
                debt=400.0,
                interest_rate=0.05,
                price=0.02,
                liquidation_price=0.011,
                ltv_pct=20.0,
                liquidation_buffer_frac=0.45,
                debt_ahead=100.0,
                total_debt=10_000.0,
                debt_ahead_frac=0.01,
                liquidation_tier="LOW",
                redemption_tier="HIGH",
                snapshot_at=at,
                snapshot_run_id=f"run-{at.isoformat()}",
            )
        )


class FakeRefresher:
    def __init__(self, db: DatabaseManager, seed, *, error: Exception | None = None) -> None:
        self.db = db
        self.seed = seed
        self.error = error
        self.calls = 0

    async def refresh_all(self) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        await _store_loan(self.db, self.seed, NOW)


@pytest.fixture
def locks(tmp_path) -> FileLock:
    return FileLock(tmp_path / "locks")


def _coordinator(db: DatabaseManager, refresher: FakeRefresher, locks: FileLock) -> RefreshCoordinator:
    return RefreshCoordinator(
        db.get_async_session,
        refresher,
        locks,
        stale_after=timedelta(minutes=10),
        clock=lambda: NOW,
    )


class TestRefreshCoordinator:
    @pytest.mark.asyncio
    async def test_fresh_data_is_served_without_refresh(self, db: DatabaseManager, seed, locks: FileLock) -> None:
        await _store_loan(db, seed, NOW - timedelta(minutes=2))
        refresher = FakeRefresher(db, seed)

        result = await _coordinator(db, refresher, locks).get_summaries()

        assert refresher.calls == 0
        assert result.is_stale is False
        assert result.refreshed is False
        assert result.warning is None
        assert len(result.summaries.loans) == 1

    @pytest.mark.asyncio
    async def test_empty_cache_triggers_refresh(self, db: DatabaseManager, seed, locks: FileLock) -> None:
        refresher = FakeRefresher(db, seed)

        result = await _coordinator(db, refresher, locks).get_summaries()

        assert refresher.calls == 1
        assert result.refreshed is True
        assert result.is_stale is False
        assert result.summaries.newest_at == NOW
        assert not locks.path_for(SNAPSHOT_REFRESH_LOCK).exists()

    @pytest.mark.asyncio
    async def test_stale_cache_with_contended_lock(self, db: DatabaseManager, seed, locks: FileLock) -> None:
        await _store_loan(db, seed, NOW - timedelta(hours=1))
        locks.lock_dir.mkdir(parents=True)
        handle = LockHandle(pid=os.getppid(), acquired_at=datetime.now(UTC))
        locks.path_for(SNAPSHOT_REFRESH_LOCK).write_text(handle.to_json(), encoding="utf-8")
        refresher = FakeRefresher(db, seed)

        result = await _coordinator(db, refresher, locks).get_summaries()

        assert refresher.calls == 0
        assert result.is_stale is True
        assert result.refreshed is False
        assert result.warning is not None
        assert "in progress" in result.warning
        assert result.summaries.newest_at == NOW - timedelta(hours=1)
        assert locks.path_for(SNAPSHOT_REFRESH_LOCK).exists()

    @pytest.mark.asyncio
    async def test_failed_refresh_serves_cache(self, db: DatabaseManager, seed, locks: FileLock) -> None:
        await _store_loan(db, seed, NOW - timedelta(hours=1))
        refresher = FakeRefresher(db, seed, error=RuntimeError("rpc down"))

        result = await _coordinator(db, refresher, locks).get_summaries()

        assert refresher.calls == 1
        assert result.refreshed is False
        assert result.is_stale is True
        assert result.warning == "Live refresh failed (RuntimeError); showing cached data."
        assert len(result.summaries.loans) == 1
        assert not locks.path_for(SNAPSHOT_REFRESH_LOCK).exists()

    @pytest.mark.asyncio
    async def test_is_stale_boundary(self, db: DatabaseManager, seed, locks: FileLock) -> None:
        coordinator = _coordinator(db, FakeRefresher(db, seed), locks)
        assert coordinator.is_stale(None) is True
        assert coordinator.is_stale(NOW - timedelta(minutes=10)) is False
        assert coordinator.is_stale(NOW - timedelta(minutes=10, seconds=1)) is True
