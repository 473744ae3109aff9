"""Tests for the monitoring orchestrator."""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from position_sentinel.alerts.engine import AlertCycleStats
from position_sentinel.alerts.heartbeat import HeartbeatResult
from position_sentinel.indexer.scanner import IndexerStats
from position_sentinel.monitor import Monitor, MonitorState
from position_sentinel.refresh.coordinator import SNAPSHOT_REFRESH_LOCK
from position_sentinel.refresh.lock import FileLock, LockHandle
from position_sentinel.snapshots.builder import SnapshotRunResult


@pytest.fixture
def mock_settings():
    """Create mock settings for testing."""
    settings = MagicMock()
    settings.dry_run = False
    settings.monitor.interval_seconds = 3600.0
    settings.monitor.jitter_seconds = 0.0
    settings.heartbeat.enabled = False
    settings.heartbeat.hour_utc = 9
    return settings


@pytest.fixture
def mock_services(tmp_path):
    """Services with mocked I/O and a real file lock."""
    services = MagicMock()
    services.db.init_schema_async = AsyncMock()
    services.aclose = AsyncMock()
    services.scanner.scan_all = AsyncMock(return_value=IndexerStats(contracts_scanned=2))
    services.builder.refresh_all = AsyncMock(
        return_value=SnapshotRunResult(run_id="run-1", started_at=datetime.now(UTC))
    )
    services.engine.process_snapshots = AsyncMock(return_value=AlertCycleStats())
    services.locks = FileLock(tmp_path / "locks")
    services.heartbeat.run_once = AsyncMock(return_value=HeartbeatResult(recipients=2, sent=2))
    return services


@pytest.fixture
def monitor(mock_settings, mock_services) -> Monitor:
    return Monitor(mock_settings, dry_run=True, services=mock_services)


# ============================================================================
# Cycle Tests
# ============================================================================


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_cycle_runs_every_stage(self, monitor: Monitor, mock_services) -> None:
        result = await monitor.run_cycle()

        assert result is not None
        assert result.errors == []
        assert result.indexer.contracts_scanned == 2
        assert result.snapshots.run_id == "run-1"
        mock_services.engine.process_snapshots.assert_awaited_once_with([], [], tracked=set())
        assert monitor.stats.cycles_completed == 1
        assert not mock_services.locks.path_for(SNAPSHOT_REFRESH_LOCK).exists()

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_skipped(self, monitor: Monitor, mock_services) -> None:
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_scan() -> IndexerStats:
            entered.set()
            await release.wait()
            return IndexerStats()

        mock_services.scanner.scan_all = AsyncMock(side_effect=slow_scan)

        first = asyncio.create_task(monitor.run_cycle())
        await entered.wait()
        second = await monitor.run_cycle()
        release.set()
        first_result = await first

        assert second is None
        assert first_result is not None
        assert monitor.stats.cycles_skipped == 1
        assert monitor.stats.cycles_completed == 1
        assert mock_services.scanner.scan_all.await_count == 1

    @pytest.mark.asyncio
    async def test_indexer_failure_does_not_block_snapshots(self, monitor: Monitor, mock_services) -> None:
        mock_services.scanner.scan_all = AsyncMock(side_effect=RuntimeError("rpc down"))

        result = await monitor.run_cycle()

        assert result.errors == ["indexer: rpc down"]
        mock_services.builder.refresh_all.assert_awaited_once()
        assert monitor.stats.errors == 1
        assert monitor.stats.last_error == "indexer: rpc down"

    @pytest.mark.asyncio
    async def test_contended_refresh_lock_skips_snapshot_pass(self, monitor: Monitor, mock_services) -> None:
        locks = mock_services.locks
        locks.lock_dir.mkdir(parents=True)
        handle = LockHandle(pid=os.getppid(), acquired_at=datetime.now(UTC))
        locks.path_for(SNAPSHOT_REFRESH_LOCK).write_text(handle.to_json(), encoding="utf-8")

        result = await monitor.run_cycle()

        assert result.errors == []
        assert result.snapshots is None
        mock_services.builder.refresh_all.assert_not_awaited()
        mock_services.engine.process_snapshots.assert_not_awaited()
        assert locks.path_for(SNAPSHOT_REFRESH_LOCK).exists()

    @pytest.mark.asyncio
    async def test_snapshot_failure_releases_lock(self, monitor: Monitor, mock_services) -> None:
        mock_services.builder.refresh_all = AsyncMock(side_effect=RuntimeError("db gone"))

        result = await monitor.run_cycle()

        assert result.errors == ["snapshots: db gone"]
        mock_services.engine.process_snapshots.assert_not_awaited()
        assert not mock_services.locks.path_for(SNAPSHOT_REFRESH_LOCK).exists()


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_first_cycle_and_stop_cleans_up(self, monitor: Monitor, mock_services) -> None:
        await monitor.start()
        assert monitor.state == MonitorState.RUNNING
        assert monitor.is_running

        for _ in range(50):
            if monitor.stats.cycles_completed:
                break
            await asyncio.sleep(0.01)
        assert monitor.stats.cycles_completed == 1

        await monitor.stop()

        assert monitor.state == MonitorState.STOPPED
        mock_services.db.init_schema_async.assert_awaited_once()
        mock_services.aclose.assert_awaited_once()
        with pytest.raises(RuntimeError):
            _ = monitor.services

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, monitor: Monitor) -> None:
        await monitor.start()
        try:
            with pytest.raises(RuntimeError):
                await monitor.start()
        finally:
            await monitor.stop()

    @pytest.mark.asyncio
    async def test_failed_start_enters_error_state(self, monitor: Monitor, mock_services) -> None:
        mock_services.db.init_schema_async = AsyncMock(side_effect=OSError("connection refused"))

        with pytest.raises(OSError):
            await monitor.start()

        assert monitor.state == MonitorState.ERROR
        assert monitor.stats.last_error == "connection refused"
        mock_services.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_context_manager(self, monitor: Monitor) -> None:
        async with monitor as running:
            assert running.state == MonitorState.RUNNING
        assert monitor.state == MonitorState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, monitor: Monitor, mock_services) -> None:
        await monitor.stop()
        mock_services.aclose.assert_not_awaited()


class TestSchedule:
    def test_delay_includes_jitter(self, mock_settings, mock_services) -> None:
        mock_settings.monitor.jitter_seconds = 30.0
        monitor = Monitor(mock_settings, services=mock_services)

        with patch("position_sentinel.monitor.random.uniform", return_value=12.5) as uniform:
            assert monitor._next_delay() == 3612.5
        uniform.assert_called_once_with(0, 30.0)

    def test_no_jitter(self, monitor: Monitor) -> None:
        assert monitor._next_delay() == 3600.0

    def test_heartbeat_delay_targets_configured_hour(self, monitor: Monitor) -> None:
        now = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)
        assert monitor._next_heartbeat_delay(now) == 1800.0

    def test_heartbeat_delay_rolls_to_next_day(self, monitor: Monitor) -> None:
        now = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        assert monitor._next_heartbeat_delay(now) == 86400.0


# ============================================================================
# Heartbeat Tests
# ============================================================================


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_run_heartbeat_counts_sent(self, monitor: Monitor, mock_services) -> None:
        result = await monitor.run_heartbeat()

        assert result is not None
        assert result.sent == 2
        assert monitor.stats.heartbeats_sent == 2
        mock_services.heartbeat.run_once.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_heartbeat_is_recorded(self, monitor: Monitor, mock_services) -> None:
        mock_services.heartbeat.run_once = AsyncMock(side_effect=RuntimeError("db gone"))

        assert await monitor.run_heartbeat() is None
        assert monitor.stats.errors == 1
        assert monitor.stats.last_error == "heartbeat: db gone"

    @pytest.mark.asyncio
    async def test_skipped_heartbeat_counts_nothing(self, monitor: Monitor, mock_services) -> None:
        mock_services.heartbeat.run_once = AsyncMock(return_value=None)

        assert await monitor.run_heartbeat() is None
        assert monitor.stats.heartbeats_sent == 0

    @pytest.mark.asyncio
    async def test_enabled_heartbeat_fires_on_schedule(self, mock_settings, mock_services) -> None:
        mock_settings.heartbeat.enabled = True
        monitor = Monitor(mock_settings, dry_run=True, services=mock_services)

        with patch.object(Monitor, "_next_heartbeat_delay", return_value=0.01):
            await monitor.start()
            for _ in range(100):
                if monitor.stats.heartbeats_sent:
                    break
                await asyncio.sleep(0.01)
            await monitor.stop()

        assert monitor.stats.heartbeats_sent >= 2
        assert monitor.state == MonitorState.STOPPED

    @pytest.mark.asyncio
    async def test_disabled_heartbeat_never_runs(self, monitor: Monitor, mock_services) -> None:
        await monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        mock_services.heartbeat.run_once.assert_not_awaited()
