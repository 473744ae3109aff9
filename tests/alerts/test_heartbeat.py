"""Tests for the daily heartbeat digest."""

from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from position_sentinel.alerts.formatter import DISCORD_MSG_MAX, numbered_chunks
from position_sentinel.alerts.heartbeat import (
    HeartbeatJob,
    build_heartbeat_message,
    seconds_until_hour,
    worst_lp_status,
)
from position_sentinel.alerts.notifier import DeliveryStatus, LoggingNotifier
from position_sentinel.refresh.coordinator import SNAPSHOT_REFRESH_LOCK, RefreshCoordinator
from position_sentinel.refresh.lock import FileLock, LockHandle
from position_sentinel.storage.database import DatabaseManager
from position_sentinel.storage.repos import (
    LoanSnapshotDTO,
    LpSnapshotDTO,
    SnapshotRepository,
    UserRepository,
    WalletRepository,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _loan(seed, token_id: str = "1", **changes) -> LoanSnapshotDTO:
    base = LoanSnapshotDTO(
        identity=seed.loan_identity(token_id),
        chain_id="FLR",
        protocol="enosys-loans",
        collateral=10_000.0,
        debt=100.0,
        interest_rate=0.05,
        price=0.02,
        liquidation_price=0.011,
        ltv_pct=50.0,
        liquidation_buffer_frac=0.45,
        debt_ahead=2_000.0,
        total_debt=10_000.0,
        debt_ahead_frac=0.2,
        liquidation_tier="LOW",
        redemption_tier="MEDIUM",
        snapshot_at=NOW,
        snapshot_run_id="run",
        wallet_address=seed.wallet_address,
    )
    return replace(base, **changes)


def _lp(seed, token_id: str = "7", **changes) -> LpSnapshotDTO:
    base = LpSnapshotDTO(
        identity=seed.lp_identity(token_id),
        chain_id="FLR",
        protocol="enosys-v3",
        range_status="IN_RANGE",
        range_tier="LOW",
        snapshot_at=NOW,
        snapshot_run_id="run",
        token0_symbol="WFLR",
        token1_symbol="USDT",
        tick_lower=100,
        tick_upper=200,
        current_tick=150,
        liquidity=10,
        wallet_address=seed.wallet_address,
    )
    return replace(base, **changes)


async def _store(db: DatabaseManager, *snapshots) -> None:
    async with db.get_async_session() as session:
        repo = SnapshotRepository(session)
        for snapshot in snapshots:
            if isinstance(snapshot, LoanSnapshotDTO):
                await repo.upsert_loan(snapshot)
            else:
                await repo.upsert_lp(snapshot)


class FakeRefresher:
    def __init__(self) -> None:
        self.calls = 0

    async def refresh_all(self) -> None:
        self.calls += 1


@pytest.fixture
def locks(tmp_path) -> FileLock:
    return FileLock(tmp_path / "locks")


@pytest.fixture
def refresher() -> FakeRefresher:
    return FakeRefresher()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def job(db: DatabaseManager, locks: FileLock, refresher: FakeRefresher, notifier: LoggingNotifier) -> HeartbeatJob:
    coordinator = RefreshCoordinator(
        db.get_async_session,
        refresher,
        locks,
        stale_after=timedelta(minutes=10),
        clock=lambda: NOW,
    )
    return HeartbeatJob(db.get_async_session, coordinator, notifier)


# ============================================================================
# Digest Tests
# ============================================================================


class TestBuildHeartbeatMessage:
    def test_header_counts_and_worst_tiers(self, seed) -> None:
        text = build_heartbeat_message(
            [_loan(seed), _loan(seed, "2", liquidation_tier="HIGH")],
            [_lp(seed), _lp(seed, "8", range_status="OUT_OF_RANGE", range_tier="MEDIUM")],
            newest_at=NOW,
            is_stale=False,
        )
        lines = text.splitlines()

        assert lines[0] == "Daily position heartbeat"
        assert lines[1] == "Loans: 2 | LPs: 2"
        assert lines[2] == "Worst loan tier: HIGH | Worst LP status: OUT_OF_RANGE"
        assert lines[3] == "Data captured: 2026-03-01 12:00 UTC"

    def test_loans_sorted_by_ltv_and_closed_left_out(self, seed) -> None:
        text = build_heartbeat_message(
            [
                _loan(seed, "1", ltv_pct=20.0),
                _loan(seed, "2", ltv_pct=80.0),
                _loan(seed, "3", ltv_pct=None),
                _loan(seed, "4", is_active=False, liquidation_tier="CRITICAL"),
            ],
            [],
            newest_at=NOW,
            is_stale=False,
        )

        assert text.index("#2 ") < text.index("#1 ") < text.index("#3 ")
        assert "#4 " not in text
        assert "Worst loan tier: MEDIUM" in text
        assert "No monitored LP positions" in text

    def test_lps_out_of_range_first_and_inactive_left_out(self, seed) -> None:
        text = build_heartbeat_message(
            [],
            [
                _lp(seed, "7"),
                _lp(seed, "8", range_status="UNKNOWN", range_tier="UNKNOWN"),
                _lp(seed, "9", range_status="OUT_OF_RANGE", range_tier="HIGH"),
                _lp(seed, "10", range_status="INACTIVE", range_tier="LOW"),
            ],
            newest_at=NOW,
            is_stale=False,
        )

        assert text.index("#9 ") < text.index("#8 ") < text.index("#7 ")
        assert "#10 " not in text
        assert "LPs: 3" in text
        assert "No monitored loans" in text
        assert "Worst loan tier: UNKNOWN" in text

    def test_stale_data_is_flagged(self, seed) -> None:
        text = build_heartbeat_message(
            [_loan(seed)],
            [],
            newest_at=NOW - timedelta(hours=3),
            is_stale=True,
            warning="A refresh is already in progress; showing cached data.",
        )

        assert "Data captured: 2026-03-01 09:00 UTC (data may be stale)" in text
        assert "Note: A refresh is already in progress; showing cached data." in text

    def test_no_data_yet(self) -> None:
        text = build_heartbeat_message([], [], newest_at=None, is_stale=True)
        assert "Data captured: never (data may be stale)" in text
        assert "Loans: 0 | LPs: 0" in text

    def test_long_digest_is_chunked_for_discord(self, seed) -> None:
        loans = [_loan(seed, str(i), ltv_pct=float(i)) for i in range(60)]
        text = build_heartbeat_message(loans, [], newest_at=NOW, is_stale=False)

        chunks = numbered_chunks(text)

        assert len(chunks) > 1
        assert all(len(c) <= DISCORD_MSG_MAX for c in chunks)


class TestHelpers:
    def test_worst_lp_status(self, seed) -> None:
        assert worst_lp_status([]) == "UNKNOWN"
        assert worst_lp_status([_lp(seed), _lp(seed, range_status="UNKNOWN")]) == "UNKNOWN"
        assert worst_lp_status([_lp(seed), _lp(seed, range_status="OUT_OF_RANGE")]) == "OUT_OF_RANGE"

    @pytest.mark.parametrize(
        ("now", "hour", "expected"),
        [
            (datetime(2026, 3, 1, 8, 0, tzinfo=UTC), 9, 3600.0),
            (datetime(2026, 3, 1, 9, 0, tzinfo=UTC), 9, 86400.0),
            (datetime(2026, 3, 1, 23, 30, tzinfo=UTC), 0, 1800.0),
        ],
    )
    def test_seconds_until_hour(self, now: datetime, hour: int, expected: float) -> None:
        assert seconds_until_hour(now, hour) == expected


# ============================================================================
# Job Tests
# ============================================================================


class TestHeartbeatJob:
    @pytest.mark.asyncio
    async def test_each_user_gets_own_positions(
        self, db: DatabaseManager, seed, job: HeartbeatJob, notifier: LoggingNotifier
    ) -> None:
        async with db.get_async_session() as session:
            other = await UserRepository(session).create(discord_id="99")
            await WalletRepository(session).add(user_id=other.id, chain_id="FLR", address="0x" + "9" * 40)
        await _store(db, _loan(seed), _lp(seed))

        result = await job.run_once()

        assert result is not None
        assert result.recipients == 2
        assert result.sent == 2
        assert result.is_stale is False
        sent = dict(notifier.sent)
        assert "Loans: 1 | LPs: 1" in sent["42"]
        assert "Loans: 0 | LPs: 0" in sent["99"]

    @pytest.mark.asyncio
    async def test_unreachable_users_are_not_recipients(
        self, db: DatabaseManager, seed, job: HeartbeatJob, notifier: LoggingNotifier
    ) -> None:
        async with db.get_async_session() as session:
            users = UserRepository(session)
            no_discord = await users.create(discord_id=None)
            await WalletRepository(session).add(user_id=no_discord.id, chain_id="FLR", address="0x" + "8" * 40)
            await users.create(discord_id="77")
            await users.set_accepts_dm(seed.user_id, False)

        result = await job.run_once()

        assert result is not None
        assert result.recipients == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_stale_data_is_refreshed_first(
        self, db: DatabaseManager, seed, job: HeartbeatJob, refresher: FakeRefresher, locks: FileLock
    ) -> None:
        await _store(db, _loan(seed, snapshot_at=NOW - timedelta(hours=2)))

        result = await job.run_once()

        assert refresher.calls == 1
        assert result is not None
        assert result.is_stale is True
        assert not locks.path_for(SNAPSHOT_REFRESH_LOCK).exists()

    @pytest.mark.asyncio
    async def test_contended_lock_sends_cached_data_with_warning(
        self,
        db: DatabaseManager,
        seed,
        job: HeartbeatJob,
        refresher: FakeRefresher,
        locks: FileLock,
        notifier: LoggingNotifier,
    ) -> None:
        await _store(db, _loan(seed, snapshot_at=NOW - timedelta(hours=2)))
        locks.lock_dir.mkdir(parents=True)
        handle = LockHandle(pid=os.getppid(), acquired_at=datetime.now(UTC))
        locks.path_for(SNAPSHOT_REFRESH_LOCK).write_text(handle.to_json(), encoding="utf-8")

        result = await job.run_once()

        assert refresher.calls == 0
        assert result is not None
        assert result.sent == 1
        assert result.warning is not None
        ((_, message),) = notifier.sent
        assert "(data may be stale)" in message
        assert f"Note: {result.warning}" in message

    @pytest.mark.asyncio
    async def test_blocked_recipient_is_opted_out(self, db: DatabaseManager, seed, job: HeartbeatJob) -> None:
        job._notifier = AsyncMock()
        job._notifier.send.return_value = DeliveryStatus.BLOCKED

        first = await job.run_once()
        second = await job.run_once()

        assert first is not None
        assert first.blocked == 1
        async with db.get_async_session() as session:
            user = await UserRepository(session).get(seed.user_id)
        assert user is not None
        assert user.accepts_dm is False
        assert second is not None
        assert second.recipients == 0

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_opt_in(self, db: DatabaseManager, seed, job: HeartbeatJob) -> None:
        job._notifier = AsyncMock()
        job._notifier.send.side_effect = RuntimeError("socket closed")

        result = await job.run_once()

        assert result is not None
        assert result.failed == 1
        async with db.get_async_session() as session:
            user = await UserRepository(session).get(seed.user_id)
        assert user is not None
        assert user.accepts_dm is True

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, db: DatabaseManager, seed, job: HeartbeatJob) -> None:
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_send(recipient_id: str, message: str) -> DeliveryStatus:
            entered.set()
            await release.wait()
            return DeliveryStatus.DELIVERED

        job._notifier = AsyncMock()
        job._notifier.send.side_effect = slow_send

        first = asyncio.create_task(job.run_once())
        await entered.wait()
        assert job.is_running
        second = await job.run_once()
        release.set()
        first_result = await first

        assert second is None
        assert first_result is not None
        assert first_result.sent == 1
