"""Alert lifecycle engine.

Each identity ``(user, wallet, contract, token)`` runs an independent state
machine with two states, Inactive and Active(signature):

- Inactive -> Active(S): NEW event, notify.
- Active(S) -> Active(S): last-seen refresh only.
- Active(S) -> Active(S'): UPDATED event, notify (debounced when the last
  signature change is more recent than the debounce window).
- Active(S) -> Inactive: RESOLVED event, no notification unless enabled.
  A position that is burned or leaves the monitored wallets also resolves.
- Inactive -> Inactive: last-seen refresh only.

State and events are written in one transaction before delivery is
attempted, so the delivery outcome never affects alert state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from position_sentinel.alerts.formatter import format_alert_message, truncate_address
from position_sentinel.alerts.notifier import DeliveryStatus
from position_sentinel.alerts.signature import frac_bucket, make_signature
from position_sentinel.risk.models import RangeStatus, Tier, tier_at_least
from position_sentinel.storage.repos import (
    AlertEventDTO,
    AlertEventRepository,
    AlertStateDTO,
    AlertStateRepository,
    UserRepository,
)

if TYPE_CHECKING:
    from position_sentinel.alerts.notifier import Notifier
    from position_sentinel.storage.database import SessionFactory
    from position_sentinel.storage.repos import LoanSnapshotDTO, LpSnapshotDTO, PositionIdentity

logger = logging.getLogger(__name__)

ALERT_TYPE_LOAN = "LOAN"
ALERT_TYPE_LP_RANGE = "LP_RANGE"

BUFFER_BUCKET_STEP = 0.01
DEBT_AHEAD_BUCKET_STEP = 0.01
LP_DISTANCE_BUCKET_STEP = 0.05


class Transition(str, Enum):
    NEW = "NEW"
    UPDATED = "UPDATED"
    RESOLVED = "RESOLVED"
    UNCHANGED = "UNCHANGED"
    DEBOUNCED = "DEBOUNCED"
    NONE = "NONE"


NOTIFYING_TRANSITIONS = frozenset({Transition.NEW, Transition.UPDATED})


@dataclass(frozen=True)
class AlertEvaluation:
    """Whether an identity should have an open alert, and what it looks like."""

    identity: PositionIdentity
    alert_type: str
    is_active: bool
    signature_payload: dict[str, Any]
    message: str
    meta: dict[str, Any] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def signature(self) -> str:
        return make_signature(self.signature_payload)


@dataclass
class AlertOutcome:
    transition: Transition
    signature: str | None
    delivery: DeliveryStatus | None = None


@dataclass
class AlertCycleStats:
    processed: int = 0
    failed: int = 0
    transitions: dict[str, int] = field(default_factory=dict)
    deliveries: dict[str, int] = field(default_factory=dict)

    def record(self, outcome: AlertOutcome) -> None:
        self.processed += 1
        key = outcome.transition.value
        self.transitions[key] = self.transitions.get(key, 0) + 1
        if outcome.delivery is not None:
            dkey = outcome.delivery.value
            self.deliveries[dkey] = self.deliveries.get(dkey, 0) + 1


class AlertEngine:
    """Evaluates snapshots into alert transitions and drives delivery.

    Example:
        ```python
        engine = AlertEngine(db.get_async_session, notifier, debounce_seconds=900)
        stats = await engine.process_snapshots(loans, lps)
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: Notifier,
        *,
        debounce_seconds: float,
        liquidation_min_tier: Tier = Tier.HIGH,
        redemption_min_tier: Tier = Tier.HIGH,
        lp_min_tier: Tier = Tier.MEDIUM,
        notify_on_resolve: bool = False,
    ) -> None:
        if debounce_seconds < 0:
            raise ValueError("debounce_seconds must be >= 0")
        self._session_factory = session_factory
        self._notifier = notifier
        self._debounce = timedelta(seconds=debounce_seconds)
        self._liq_min = liquidation_min_tier
        self._red_min = redemption_min_tier
        self._lp_min = lp_min_tier
        self._notify_on_resolve = notify_on_resolve

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_loan(self, snapshot: LoanSnapshotDTO) -> AlertEvaluation:
        """Combined liquidation/redemption alert for one loan.

        Only axes that reach their minimum tier contribute to the signature,
        so a quiet axis moving around does not produce updates.
        """
        liq_tier = Tier(snapshot.liquidation_tier)
        red_tier = Tier(snapshot.redemption_tier)
        liq_active = snapshot.is_active and tier_at_least(liq_tier, self._liq_min)
        red_active = snapshot.is_active and tier_at_least(red_tier, self._red_min)

        payload: dict[str, Any] = {"kind": ALERT_TYPE_LOAN}
        if liq_active:
            payload["liq_tier"] = liq_tier.value
            payload["buf_b"] = frac_bucket(snapshot.liquidation_buffer_frac, BUFFER_BUCKET_STEP)
        if red_active:
            payload["red_tier"] = red_tier.value
            payload["ahead_b"] = frac_bucket(snapshot.debt_ahead_frac, DEBT_AHEAD_BUCKET_STEP)

        risks = []
        if liq_active:
            risks.append(f"liquidation={liq_tier.value}")
        if red_active:
            risks.append(f"redemption={red_tier.value}")
        wallet = truncate_address(snapshot.wallet_address or "?")
        summary = ", ".join(risks) if risks else f"liquidation={liq_tier.value}, redemption={red_tier.value}"
        message = (
            f"Loan at risk ({snapshot.protocol}, wallet={wallet}, trove={snapshot.identity.token_id}): {summary}"
        )

        meta = {
            "chain": snapshot.chain_id,
            "liquidation_tier": liq_tier.value,
            "liquidation_buffer_frac": snapshot.liquidation_buffer_frac,
            "ltv_pct": snapshot.ltv_pct,
            "price": snapshot.price,
            "liquidation_price": snapshot.liquidation_price,
            "redemption_tier": red_tier.value,
            "debt_ahead_frac": snapshot.debt_ahead_frac,
            "interest_rate": snapshot.interest_rate,
        }
        return AlertEvaluation(
            identity=snapshot.identity,
            alert_type=ALERT_TYPE_LOAN,
            is_active=liq_active or red_active,
            signature_payload=payload,
            message=message,
            meta=meta,
            state={"kind": ALERT_TYPE_LOAN, **meta},
        )

    def evaluate_lp(self, snapshot: LpSnapshotDTO) -> AlertEvaluation:
        """Range alert for one liquidity position (active only when out of range)."""
        status = RangeStatus(snapshot.range_status)
        tier = Tier(snapshot.range_tier)
        is_active = status == RangeStatus.OUT_OF_RANGE and tier_at_least(tier, self._lp_min)

        pair = f"{snapshot.token0_symbol or '?'}-{snapshot.token1_symbol or '?'}"
        wallet = truncate_address(snapshot.wallet_address or "?")
        message = (
            f"LP range alert ({snapshot.protocol} {pair}, wallet={wallet}, "
            f"token={snapshot.identity.token_id}): {status.value} (tier={tier.value})"
        )
        meta = {
            "chain": snapshot.chain_id,
            "range_status": status.value,
            "range_tier": tier.value,
            "label": snapshot.range_label,
            "tick_lower": snapshot.tick_lower,
            "tick_upper": snapshot.tick_upper,
            "current_tick": snapshot.current_tick,
            "distance_frac": snapshot.distance_frac,
        }
        return AlertEvaluation(
            identity=snapshot.identity,
            alert_type=ALERT_TYPE_LP_RANGE,
            is_active=is_active,
            signature_payload={
                "kind": "LP",
                "status": status.value,
                "tier": tier.value,
                "dist_b": frac_bucket(snapshot.distance_frac, LP_DISTANCE_BUCKET_STEP),
            },
            message=message,
            meta=meta,
            state={"kind": "LP", **meta},
        )

    def evaluate_closed(self, state: AlertStateDTO) -> AlertEvaluation:
        """Inactive evaluation for a position that is no longer monitored."""
        identity = state.identity
        message = (
            f"Position closed or no longer monitored ({state.alert_type}, "
            f"contract={identity.contract_id}, token={identity.token_id})"
        )
        meta = {**(state.state or {}), "closed": True}
        return AlertEvaluation(
            identity=identity,
            alert_type=state.alert_type,
            is_active=False,
            signature_payload={"kind": state.alert_type, "closed": True},
            message=message,
            meta=meta,
            state=meta,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def process(self, evaluation: AlertEvaluation, *, now: datetime | None = None) -> AlertOutcome:
        """Apply one evaluation to the identity's stored state.

        Returns:
            The transition taken and, when a message was attempted, its delivery status.
        """
        now = now or datetime.now(UTC)
        signature = evaluation.signature

        async with self._session_factory() as session:
            states = AlertStateRepository(session)
            events = AlertEventRepository(session)
            prev = await states.get(evaluation.identity)
            prev_active = prev is not None and prev.is_active

            if evaluation.is_active and not prev_active:
                transition = Transition.NEW
                stored_signature: str | None = signature
                changed_at: datetime | None = now
            elif evaluation.is_active and prev is not None and prev.signature != signature:
                if self._is_debounced(prev, now):
                    transition = Transition.DEBOUNCED
                    stored_signature = prev.signature
                    changed_at = prev.last_changed_at
                else:
                    transition = Transition.UPDATED
                    stored_signature = signature
                    changed_at = now
            elif evaluation.is_active and prev is not None:
                transition = Transition.UNCHANGED
                stored_signature = signature
                changed_at = prev.last_changed_at
            elif prev_active:
                transition = Transition.RESOLVED
                stored_signature = None
                changed_at = now
            else:
                transition = Transition.NONE
                stored_signature = None
                changed_at = prev.last_changed_at if prev is not None else None

            await states.upsert(
                AlertStateDTO(
                    identity=evaluation.identity,
                    alert_type=evaluation.alert_type,
                    is_active=evaluation.is_active,
                    signature=stored_signature,
                    state=evaluation.state,
                    last_seen_at=now,
                    last_changed_at=changed_at,
                )
            )
            if transition in (Transition.NEW, Transition.UPDATED, Transition.RESOLVED):
                await events.append(
                    AlertEventDTO(
                        identity=evaluation.identity,
                        alert_type=evaluation.alert_type,
                        phase=transition.value,
                        message=evaluation.message,
                        meta=evaluation.meta,
                        signature=stored_signature,
                        created_at=now,
                    )
                )

        outcome = AlertOutcome(transition=transition, signature=stored_signature)
        if transition in (Transition.NEW, Transition.UPDATED):
            logger.warning("%s %s: %s", evaluation.alert_type, transition.value, evaluation.message)
        elif transition == Transition.RESOLVED:
            logger.info("%s RESOLVED: %s", evaluation.alert_type, evaluation.message)
        elif transition == Transition.DEBOUNCED:
            logger.debug("%s change debounced for %s", evaluation.alert_type, evaluation.identity)

        if transition in NOTIFYING_TRANSITIONS or (transition == Transition.RESOLVED and self._notify_on_resolve):
            outcome.delivery = await self._deliver(evaluation, transition)
        return outcome

    def _is_debounced(self, prev: AlertStateDTO, now: datetime) -> bool:
        if not self._debounce or prev.last_changed_at is None:
            return False
        return now - prev.last_changed_at < self._debounce

    async def _deliver(self, evaluation: AlertEvaluation, transition: Transition) -> DeliveryStatus | None:
        user_id = evaluation.identity.user_id
        async with self._session_factory() as session:
            user = await UserRepository(session).get(user_id)
        if user is None or not user.accepts_dm or not user.discord_id:
            logger.debug("User %d not reachable by DM; skipping delivery", user_id)
            return None

        text = format_alert_message(transition.value, evaluation.alert_type, evaluation.message, evaluation.meta)
        try:
            status = await self._notifier.send(user.discord_id, text)
        except Exception as e:
            logger.error("Notifier raised for user %d: %s: %s", user_id, type(e).__name__, e)
            return DeliveryStatus.TRANSIENT_ERROR

        if status == DeliveryStatus.BLOCKED:
            async with self._session_factory() as session:
                await UserRepository(session).set_accepts_dm(user_id, False)
            logger.warning("Disabled DMs for user %d (recipient blocked)", user_id)
        elif status == DeliveryStatus.TRANSIENT_ERROR:
            logger.warning("Transient delivery failure for user %d; retrying next cycle", user_id)
        return status

    async def process_snapshots(
        self,
        loans: list[LoanSnapshotDTO],
        lps: list[LpSnapshotDTO],
        *,
        tracked: set[PositionIdentity] | None = None,
        now: datetime | None = None,
    ) -> AlertCycleStats:
        """Evaluate and process every snapshot; one failing identity does not stop the rest.

        Args:
            loans: Loan snapshots built in this run.
            lps: Liquidity position snapshots built in this run.
            tracked: Every identity still monitored, including those whose read
                failed this run. When given, active alerts outside it are resolved.
            now: Evaluation time (defaults to the current time).
        """
        stats = AlertCycleStats()
        items: list[tuple[str, Any]] = [(ALERT_TYPE_LOAN, s) for s in loans] + [(ALERT_TYPE_LP_RANGE, s) for s in lps]
        for alert_type, snapshot in items:
            try:
                if alert_type == ALERT_TYPE_LOAN:
                    evaluation = self.evaluate_loan(snapshot)
                else:
                    evaluation = self.evaluate_lp(snapshot)
                stats.record(await self.process(evaluation, now=now))
            except Exception as e:
                stats.failed += 1
                logger.error(
                    "Alert processing failed for %s (%s): %s: %s",
                    snapshot.identity,
                    alert_type,
                    type(e).__name__,
                    e,
                )
        if tracked is not None:
            await self.resolve_untracked(tracked, stats, now=now)
        logger.info(
            "Alert pass: processed=%d failed=%d transitions=%s deliveries=%s",
            stats.processed,
            stats.failed,
            stats.transitions,
            stats.deliveries,
        )
        return stats

    async def resolve_untracked(
        self,
        tracked: set[PositionIdentity],
        stats: AlertCycleStats | None = None,
        *,
        now: datetime | None = None,
    ) -> AlertCycleStats:
        """Resolve active alerts whose position is no longer monitored."""
        stats = stats if stats is not None else AlertCycleStats()
        async with self._session_factory() as session:
            active = await AlertStateRepository(session).list_active()

        for state in active:
            if state.identity in tracked:
                continue
            try:
                stats.record(await self.process(self.evaluate_closed(state), now=now))
            except Exception as e:
                stats.failed += 1
                logger.error(
                    "Resolving closed position failed for %s (%s): %s: %s",
                    state.identity,
                    state.alert_type,
                    type(e).__name__,
                    e,
                )
        return stats
