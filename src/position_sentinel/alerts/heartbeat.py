"""Daily heartbeat: a per-user digest of every monitored position.

Once a day each reachable user gets one direct message listing their
loans (highest LTV first) and liquidity positions (out of range first),
headed by the worst tier of each kind. Summaries are read through the
refresh coordinator, so stale data is refreshed under the shared
snapshot lock first, or sent with a warning when that is not possible.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from position_sentinel.alerts.formatter import truncate_address
from position_sentinel.alerts.notifier import DeliveryStatus
from position_sentinel.risk.models import RangeStatus, Tier, worst_tier
from position_sentinel.storage.repos import UserRepository

if TYPE_CHECKING:
    from position_sentinel.alerts.notifier import Notifier
    from position_sentinel.refresh.coordinator import RefreshCoordinator
    from position_sentinel.storage.database import SessionFactory
    from position_sentinel.storage.repos import LoanSnapshotDTO, LpSnapshotDTO

logger = logging.getLogger(__name__)

HEARTBEAT_TITLE = "Daily position heartbeat"

# Lower sorts first
_LP_STATUS_ORDER = {
    RangeStatus.OUT_OF_RANGE.value: 0,
    RangeStatus.UNKNOWN.value: 1,
    RangeStatus.IN_RANGE.value: 2,
}


def seconds_until_hour(now: datetime, hour_utc: int) -> float:
    """Seconds from ``now`` until the next ``hour_utc``:00 UTC (always > 0)."""
    now = now.astimezone(UTC)
    target = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def _tier(value: str) -> Tier:
    try:
        return Tier(value)
    except ValueError:
        return Tier.UNKNOWN


def _pct(value: float | None, *, scale: float = 1.0) -> str:
    if value is None:
        return "n/a"
    return f"{value * scale:.2f}%"


def _num(value: float | None) -> str:
    return "n/a" if value is None else f"{value:,.5g}"


def worst_lp_status(lps: list[LpSnapshotDTO]) -> str:
    if not lps:
        return RangeStatus.UNKNOWN.value
    return min((lp.range_status for lp in lps), key=lambda s: _LP_STATUS_ORDER.get(s, 99))


def _loan_lines(loan: LoanSnapshotDTO) -> list[str]:
    wallet = truncate_address(loan.wallet_address or "?")
    return [
        f"- {loan.protocol} ({loan.chain_id}) #{loan.identity.token_id} wallet={wallet}",
        f"  LTV {_pct(loan.ltv_pct)} | price {_num(loan.price)} | liq {_num(loan.liquidation_price)}"
        f" | buffer {_pct(loan.liquidation_buffer_frac, scale=100)}",
        f"  Liquidation: {loan.liquidation_tier} | Redemption: {loan.redemption_tier}"
        f" (debt ahead {_pct(loan.debt_ahead_frac, scale=100)})",
    ]


def _lp_lines(lp: LpSnapshotDTO) -> list[str]:
    wallet = truncate_address(lp.wallet_address or "?")
    pair = f"{lp.token0_symbol or '?'}-{lp.token1_symbol or '?'}"
    line = f"  {lp.range_status} (tier {lp.range_tier})"
    if lp.range_label:
        line += f": {lp.range_label}"
    return [
        f"- {lp.protocol} {pair} ({lp.chain_id}) #{lp.identity.token_id} wallet={wallet}",
        line,
    ]


def build_heartbeat_message(
    loans: list[LoanSnapshotDTO],
    lps: list[LpSnapshotDTO],
    *,
    newest_at: datetime | None,
    is_stale: bool,
    warning: str | None = None,
) -> str:
    """Render one user's heartbeat digest.

    Closed loans and inactive liquidity positions are left out. The header
    carries the counts, the worst loan tier across both risk axes and the
    worst LP range status.
    """
    active_loans = sorted(
        (loan for loan in loans if loan.is_active),
        key=lambda loan: loan.ltv_pct if loan.ltv_pct is not None else -1.0,
        reverse=True,
    )
    active_lps = sorted(
        (lp for lp in lps if lp.range_status != RangeStatus.INACTIVE.value),
        key=lambda lp: (_LP_STATUS_ORDER.get(lp.range_status, 99), lp.protocol),
    )

    loan_tier = worst_tier(
        [_tier(loan.liquidation_tier) for loan in active_loans]
        + [_tier(loan.redemption_tier) for loan in active_loans]
    )
    lines = [
        HEARTBEAT_TITLE,
        f"Loans: {len(active_loans)} | LPs: {len(active_lps)}",
        f"Worst loan tier: {loan_tier.value} | Worst LP status: {worst_lp_status(active_lps)}",
    ]
    if newest_at is not None:
        captured = f"Data captured: {newest_at.astimezone(UTC):%Y-%m-%d %H:%M} UTC"
        if is_stale:
            captured += " (data may be stale)"
        lines.append(captured)
    elif is_stale:
        lines.append("Data captured: never (data may be stale)")
    if warning:
        lines.append(f"Note: {warning}")

    lines += ["", "Loans"]
    if not active_loans:
        lines.append("No monitored loans")
    for loan in active_loans:
        lines += _loan_lines(loan)

    lines += ["", "LP positions"]
    if not active_lps:
        lines.append("No monitored LP positions")
    for lp in active_lps:
        lines += _lp_lines(lp)
    return "\n".join(lines)


@dataclass
class HeartbeatResult:
    """What one heartbeat run did."""

    recipients: int = 0
    sent: int = 0
    blocked: int = 0
    failed: int = 0
    is_stale: bool = False
    warning: str | None = None


class HeartbeatJob:
    """Sends the daily digest to every reachable user.

    Only one run is in flight at a time: a trigger that arrives while a
    run is still sending is skipped.

    Example:
        ```python
        job = HeartbeatJob(db.get_async_session, coordinator, notifier)
        result = await job.run_once()
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        coordinator: RefreshCoordinator,
        notifier: Notifier,
    ) -> None:
        self._session_factory = session_factory
        self._coordinator = coordinator
        self._notifier = notifier
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> HeartbeatResult | None:
        """Send one heartbeat round.

        Returns:
            The run result, or None when a previous run was still in progress.
        """
        if self._lock.locked():
            logger.warning("Previous heartbeat still running; skipping trigger")
            return None

        async with self._lock:
            t0 = time.monotonic()
            logger.info("Heartbeat started")
            try:
                return await self._send_all()
            finally:
                logger.info("Heartbeat finished (elapsed %.1fs)", time.monotonic() - t0)

    async def _send_all(self) -> HeartbeatResult:
        result = HeartbeatResult()
        async with self._session_factory() as session:
            recipients = await UserRepository(session).list_heartbeat_recipients()
        if not recipients:
            logger.info("No heartbeat recipients (DM-enabled users with enabled wallets)")
            return result
        result.recipients = len(recipients)

        refresh = await self._coordinator.get_summaries()
        result.is_stale = refresh.is_stale
        result.warning = refresh.warning
        if refresh.is_stale:
            logger.warning("Heartbeat is using stale snapshot data: %s", refresh.warning or "refresh incomplete")

        loans_by_user: dict[int, list[LoanSnapshotDTO]] = defaultdict(list)
        lps_by_user: dict[int, list[LpSnapshotDTO]] = defaultdict(list)
        for loan in refresh.summaries.loans:
            loans_by_user[loan.identity.user_id].append(loan)
        for lp in refresh.summaries.lps:
            lps_by_user[lp.identity.user_id].append(lp)

        for user in recipients:
            assert user.discord_id is not None
            message = build_heartbeat_message(
                loans_by_user[user.id],
                lps_by_user[user.id],
                newest_at=refresh.summaries.newest_at,
                is_stale=refresh.is_stale,
                warning=refresh.warning,
            )
            try:
                status = await self._notifier.send(user.discord_id, message)
            except Exception as e:
                logger.error("Heartbeat to user %d raised: %s: %s", user.id, type(e).__name__, e)
                status = DeliveryStatus.TRANSIENT_ERROR

            if status == DeliveryStatus.DELIVERED:
                result.sent += 1
                logger.info("Sent heartbeat to user %d", user.id)
            elif status == DeliveryStatus.BLOCKED:
                result.blocked += 1
                async with self._session_factory() as session:
                    await UserRepository(session).set_accepts_dm(user.id, False)
                logger.warning("Disabled DMs for user %d (heartbeat blocked)", user.id)
            else:
                result.failed += 1
                logger.warning("Heartbeat to user %d failed transiently", user.id)

        logger.info(
            "Heartbeat round: recipients=%d sent=%d blocked=%d failed=%d stale=%s",
            result.recipients,
            result.sent,
            result.blocked,
            result.failed,
            result.is_stale,
        )
        return result
