"""Monitoring orchestrator for Position Sentinel.

This module wires the indexer, snapshot builder, classifier and alert
engine together and runs them on a schedule.

Cycle flow:
    Log Indexer → (snapshot-refresh lock) → Snapshot Builder → Alert Engine → Notifier

When enabled, a daily heartbeat digest is sent at a fixed UTC hour from a
second task that shares the snapshot-refresh lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from position_sentinel.alerts.engine import AlertCycleStats, AlertEngine
from position_sentinel.alerts.heartbeat import HeartbeatJob, HeartbeatResult, seconds_until_hour
from position_sentinel.alerts.notifier import DiscordNotifier, LoggingNotifier, Notifier
from position_sentinel.chain.client import ChainClientRegistry
from position_sentinel.chain.retry import RetryPolicy
from position_sentinel.config import Settings, get_settings
from position_sentinel.indexer.scanner import IndexerStats, LogScanner
from position_sentinel.refresh.coordinator import SNAPSHOT_REFRESH_LOCK, RefreshCoordinator
from position_sentinel.refresh.lock import FileLock
from position_sentinel.risk.classifier import RiskClassifier
from position_sentinel.risk.overrides import RiskOverrides
from position_sentinel.snapshots.builder import SnapshotBuilder, SnapshotRunResult
from position_sentinel.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived components built from settings."""

    settings: Settings
    db: DatabaseManager
    redis: Redis | None
    clients: ChainClientRegistry
    classifier: RiskClassifier
    scanner: LogScanner
    builder: SnapshotBuilder
    notifier: Notifier
    engine: AlertEngine
    locks: FileLock
    coordinator: RefreshCoordinator
    heartbeat: HeartbeatJob

    @classmethod
    def create(
        cls,
        settings: Settings,
        *,
        dry_run: bool = False,
        overrides: RiskOverrides | None = None,
    ) -> Services:
        """Build every component from settings (no network I/O happens here)."""
        db = DatabaseManager(settings.database.url)
        redis = Redis.from_url(settings.redis.url) if settings.redis.url else None

        retry_policy = RetryPolicy(
            max_attempts=settings.indexer.retry_max_attempts,
            base_delay=settings.indexer.retry_base_delay_seconds,
            max_delay=settings.indexer.retry_max_delay_seconds,
            max_total_delay=settings.indexer.retry_max_total_delay_seconds,
        )
        clients = ChainClientRegistry(
            settings.chain.rpc_urls,
            fallback_rpc_urls=settings.chain.fallback_rpc_urls,
            redis=redis,
            retry_policy=retry_policy,
            max_requests_per_second=settings.chain.max_requests_per_second,
            request_timeout_seconds=settings.chain.request_timeout_seconds,
            cache_ttl_seconds=settings.redis.cache_ttl_seconds,
        )
        classifier = RiskClassifier(
            liquidation=settings.liquidation.thresholds(),
            redemption=settings.redemption.thresholds(),
            lp_range=settings.lp_range.thresholds(),
            overrides=overrides,
        )
        scanner = LogScanner(
            db.get_async_session,
            clients,
            window_blocks=settings.indexer.window_blocks,
            confirmations=settings.indexer.confirmations,
            window_pause_seconds=settings.indexer.window_pause_seconds,
            beacon_names=settings.indexer.vault_beacon_names,
        )
        builder = SnapshotBuilder(
            db.get_async_session,
            clients,
            classifier,
            max_debt_ahead_walk=settings.refresh.debt_ahead_max_walk,
        )

        notifier: Notifier
        if dry_run or not settings.discord.enabled:
            if not dry_run:
                logger.warning("DISCORD_BOT_TOKEN not set; alerts will only be logged")
            notifier = LoggingNotifier()
        else:
            assert settings.discord.bot_token is not None
            notifier = DiscordNotifier(
                settings.discord.bot_token.get_secret_value(),
                api_base_url=settings.discord.api_base_url,
                timeout_seconds=settings.discord.request_timeout_seconds,
                inter_message_delay_seconds=settings.discord.inter_message_delay_seconds,
            )

        engine = AlertEngine(
            db.get_async_session,
            notifier,
            debounce_seconds=settings.alerts.debounce_seconds,
            liquidation_min_tier=settings.alerts.liquidation_min_tier,
            redemption_min_tier=settings.alerts.redemption_min_tier,
            lp_min_tier=settings.alerts.lp_min_tier,
            notify_on_resolve=settings.alerts.notify_on_resolve,
        )
        locks = FileLock(
            settings.refresh.lock_dir,
            stale_after=timedelta(minutes=settings.refresh.lock_stale_minutes),
        )
        coordinator = RefreshCoordinator(
            db.get_async_session,
            builder,
            locks,
            stale_after=timedelta(minutes=settings.refresh.snapshot_stale_minutes),
        )
        heartbeat = HeartbeatJob(db.get_async_session, coordinator, notifier)
        return cls(
            settings=settings,
            db=db,
            redis=redis,
            clients=clients,
            classifier=classifier,
            scanner=scanner,
            builder=builder,
            notifier=notifier,
            engine=engine,
            locks=locks,
            coordinator=coordinator,
            heartbeat=heartbeat,
        )

    async def aclose(self) -> None:
        """Release network and database resources."""
        await self.notifier.close()
        await self.clients.aclose()
        await self.db.dispose_async()
        if self.redis is not None:
            await self.redis.aclose()
        logger.debug("Resources cleaned up")


class MonitorState(str, Enum):
    """Monitor lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class MonitorStats:
    """Statistics for the monitor."""

    started_at: datetime | None = None
    cycles_completed: int = 0
    cycles_skipped: int = 0
    errors: int = 0
    heartbeats_sent: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None


@dataclass
class CycleResult:
    """What one monitoring cycle did."""

    started_at: datetime
    indexer: IndexerStats | None = None
    snapshots: SnapshotRunResult | None = None
    alerts: AlertCycleStats | None = None
    errors: list[str] = field(default_factory=list)


class Monitor:
    """Runs indexing, snapshot and alert cycles on a schedule.

    One cycle runs right after start, then one every interval, each
    preceded by a random jitter. Only one cycle is in flight at a time: a
    trigger that arrives while a cycle runs is skipped, not queued.

    Example:
        ```python
        from position_sentinel.config import get_settings
        from position_sentinel.monitor import Monitor

        monitor = Monitor(get_settings())
        await monitor.start()
        # Monitor runs until stop() is called
        await monitor.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        services: Services | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, log alerts instead of sending them. Overrides settings.dry_run.
            services: Prebuilt components; built from settings on start() when omitted.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = MonitorState.STOPPED
        self._stats = MonitorStats()
        self._services = services

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._cycle_lock = asyncio.Lock()

    @property
    def state(self) -> MonitorState:
        """Current monitor state."""
        return self._state

    @property
    def stats(self) -> MonitorStats:
        """Current monitor statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if the monitor is running."""
        return self._state == MonitorState.RUNNING

    @property
    def services(self) -> Services:
        if self._services is None:
            raise RuntimeError("Monitor services are not initialized")
        return self._services

    async def start(self) -> None:
        """Start the monitor.

        Builds all components, makes sure the schema exists and schedules
        the cycle loop (whose first cycle runs immediately) and, when
        enabled, the daily heartbeat.

        Raises:
            RuntimeError: If the monitor is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != MonitorState.STOPPED:
            raise RuntimeError(f"Cannot start monitor in state {self._state}")

        self._state = MonitorState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting monitor...")

        try:
            if self._services is None:
                self._services = Services.create(self._settings, dry_run=self._dry_run)
            await self._services.db.init_schema_async()
            self._loop_task = asyncio.create_task(self._run_loop())
            if self._settings.heartbeat.enabled:
                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
                logger.info("Daily heartbeat scheduled at %02d:00 UTC", self._settings.heartbeat.hour_utc)
            self._stats.started_at = datetime.now(UTC)
            self._state = MonitorState.RUNNING
            logger.info("Monitor started successfully")
        except Exception as e:
            self._state = MonitorState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start monitor: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the monitor gracefully."""
        if self._state == MonitorState.STOPPED:
            return

        self._state = MonitorState.STOPPING
        logger.info("Stopping monitor...")

        if self._stop_event:
            self._stop_event.set()

        for task in (self._loop_task, self._heartbeat_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._heartbeat_task = None

        await self._cleanup()

        self._state = MonitorState.STOPPED
        logger.info("Monitor stopped")

    async def _cleanup(self) -> None:
        if self._services is not None:
            await self._services.aclose()
            self._services = None

    def _next_delay(self) -> float:
        monitor = self._settings.monitor
        jitter = random.uniform(0, monitor.jitter_seconds) if monitor.jitter_seconds > 0 else 0.0
        return monitor.interval_seconds + jitter

    async def _run_loop(self) -> None:
        if not self._stop_event:
            return

        await self.run_cycle()
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._next_delay())
                    break
                except TimeoutError:
                    pass
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Monitor loop error: %s", e)

    def _next_heartbeat_delay(self, now: datetime | None = None) -> float:
        return seconds_until_hour(now or datetime.now(UTC), self._settings.heartbeat.hour_utc)

    async def _heartbeat_loop(self) -> None:
        if not self._stop_event:
            return

        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._next_heartbeat_delay())
                    break
                except TimeoutError:
                    pass
                await self.run_heartbeat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Heartbeat loop error: %s", e)

    async def run_heartbeat(self) -> HeartbeatResult | None:
        """Send the daily digest now.

        Returns:
            The heartbeat result, or None when it was skipped or failed.
        """
        try:
            result = await self.services.heartbeat.run_once()
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = f"heartbeat: {e}"
            logger.error("Heartbeat failed: %s: %s", type(e).__name__, e)
            return None
        if result is not None:
            self._stats.heartbeats_sent += result.sent
        return result

    async def run_cycle(self) -> CycleResult | None:
        """Run one index + snapshot + alert cycle.

        Returns:
            The cycle result, or None when another cycle was already running.
        """
        if self._cycle_lock.locked():
            self._stats.cycles_skipped += 1
            logger.warning("Monitoring cycle already in progress; skipping trigger")
            return None

        async with self._cycle_lock:
            result = CycleResult(started_at=datetime.now(UTC))
            logger.info("Monitoring cycle started")

            try:
                result.indexer = await self.services.scanner.scan_all()
            except Exception as e:
                result.errors.append(f"indexer: {e}")
                logger.error("Indexing failed: %s: %s", type(e).__name__, e)

            try:
                await self._snapshot_pass(result)
            except Exception as e:
                result.errors.append(f"snapshots: {e}")
                logger.error("Snapshot/alert pass failed: %s: %s", type(e).__name__, e)

            self._stats.cycles_completed += 1
            self._stats.last_cycle_at = datetime.now(UTC)
            if result.errors:
                self._stats.errors += len(result.errors)
                self._stats.last_error = result.errors[-1]
            logger.info("Monitoring cycle finished (errors=%d)", len(result.errors))
            return result

    async def _snapshot_pass(self, result: CycleResult) -> None:
        services = self.services
        async with services.locks.hold(SNAPSHOT_REFRESH_LOCK) as outcome:
            if not outcome.held:
                logger.warning("Snapshot refresh lock is held elsewhere; skipping snapshot pass")
                return
            result.snapshots = await services.builder.refresh_all()
            result.alerts = await services.engine.process_snapshots(
                result.snapshots.loans,
                result.snapshots.lps,
                tracked=result.snapshots.tracked,
            )

    async def run(self) -> None:
        """Start the monitor and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Monitor:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
