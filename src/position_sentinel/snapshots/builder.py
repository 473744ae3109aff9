"""Snapshot builder: reads, classifies and stores the latest state of every position.

Snapshots are a latest-value cache keyed by the identity tuple
``(user, wallet, contract, token)``. A run reads each monitored position,
classifies it and upserts its row. A failure on one position leaves that
position's previous row in place and the run moves on. Rows of positions
that are no longer monitored (burned, transferred away, emptied vault)
are removed at the end of the run.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from position_sentinel.risk.classifier import liquidation_buffer_frac
from position_sentinel.snapshots.reader import ChainPositionReader
from position_sentinel.storage.models import ContractKind
from position_sentinel.storage.repos import (
    LoanSnapshotDTO,
    LpSnapshotDTO,
    PositionTokenRepository,
    SnapshotRepository,
)

if TYPE_CHECKING:
    from position_sentinel.chain.client import ChainClient
    from position_sentinel.risk.classifier import RiskClassifier
    from position_sentinel.snapshots.models import LoanState, LpState
    from position_sentinel.storage.database import SessionFactory
    from position_sentinel.storage.repos import PositionIdentity, PositionRef

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """Raised when a snapshot run cannot start."""


class ChainClientSource(Protocol):
    def get(self, chain_id: str) -> ChainClient: ...


class PositionReader(Protocol):
    async def read_loan(self, ref: PositionRef) -> LoanState: ...

    async def read_lp(self, ref: PositionRef) -> LpState: ...

    async def read_vault(self, ref: PositionRef) -> LpState | None: ...


ReaderFactory = Callable[..., PositionReader]


def _identity_key(identity: PositionIdentity) -> tuple[int, int, int, str]:
    return (identity.user_id, identity.wallet_id, identity.contract_id, identity.token_id)


@dataclass
class SnapshotRunResult:
    """Outcome of one ``refresh_all`` run."""

    run_id: str
    started_at: datetime
    loans: list[LoanSnapshotDTO] = field(default_factory=list)
    lps: list[LpSnapshotDTO] = field(default_factory=list)
    failed: int = 0
    skipped: int = 0
    tracked: set[PositionIdentity] = field(default_factory=set)
    closed: list[PositionIdentity] = field(default_factory=list)

    @property
    def built(self) -> int:
        return len(self.loans) + len(self.lps)


class SnapshotBuilder:
    """Builds snapshots for every monitored position.

    Example:
        ```python
        builder = SnapshotBuilder(db.get_async_session, clients, classifier)
        result = await builder.refresh_all()
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        clients: ChainClientSource,
        classifier: RiskClassifier,
        *,
        max_debt_ahead_walk: int = 2000,
        reader_factory: ReaderFactory = ChainPositionReader,
    ) -> None:
        self._session_factory = session_factory
        self._clients = clients
        self._classifier = classifier
        self._max_walk = max_debt_ahead_walk
        self._reader_factory = reader_factory

    async def refresh_all(self) -> SnapshotRunResult:
        """Rebuild snapshots for all monitored positions.

        Chains run concurrently; positions of one chain run sequentially.

        Raises:
            SnapshotError: If the list of monitored positions cannot be loaded.
        """
        result = SnapshotRunResult(run_id=uuid.uuid4().hex, started_at=datetime.now(UTC))
        try:
            async with self._session_factory() as session:
                repo = PositionTokenRepository(session)
                refs = await repo.list_owned_positions()
                refs += await repo.list_vault_candidates()
        except Exception as e:
            raise SnapshotError(f"Failed to load monitored positions: {e}") from e

        by_chain: dict[str, list[PositionRef]] = defaultdict(list)
        for ref in refs:
            by_chain[ref.chain_id].append(ref)
            result.tracked.add(ref.identity)

        await asyncio.gather(
            *(self._refresh_chain(chain_id, items, result) for chain_id, items in sorted(by_chain.items()))
        )
        await self._prune_closed(result)

        logger.info(
            "Snapshot run %s: loans=%d lps=%d failed=%d skipped=%d closed=%d",
            result.run_id,
            len(result.loans),
            len(result.lps),
            result.failed,
            result.skipped,
            len(result.closed),
        )
        return result

    async def _prune_closed(self, result: SnapshotRunResult) -> None:
        """Drop snapshot rows of positions that are no longer tracked.

        A position stops being tracked when its token is burned, moves to a
        wallet nobody registered, or a vault holder's share balance reaches
        zero. Positions whose read failed this run stay tracked.
        """
        try:
            async with self._session_factory() as session:
                repo = SnapshotRepository(session)
                stale = (await repo.list_identities()) - result.tracked
                for identity in sorted(stale, key=_identity_key):
                    await repo.delete(identity)
        except Exception as e:
            logger.error("Failed to prune closed positions: %s: %s", type(e).__name__, e)
            return
        result.closed = sorted(stale, key=_identity_key)
        for identity in result.closed:
            logger.info("Position closed or no longer monitored: %s", identity)

    async def _refresh_chain(self, chain_id: str, refs: list[PositionRef], result: SnapshotRunResult) -> None:
        try:
            client = self._clients.get(chain_id)
        except Exception as e:
            logger.error("No client for chain %s, skipping %d positions: %s", chain_id, len(refs), e)
            result.failed += len(refs)
            return

        reader = self._reader_factory(client, max_debt_ahead_walk=self._max_walk)
        for ref in refs:
            try:
                await self._refresh_position(reader, ref, result)
            except Exception as e:
                result.failed += 1
                logger.warning(
                    "Snapshot failed for %s (%s #%s): %s: %s",
                    ref.identity,
                    chain_id,
                    ref.token_id,
                    type(e).__name__,
                    e,
                )

    async def _refresh_position(self, reader: PositionReader, ref: PositionRef, result: SnapshotRunResult) -> None:
        kind = ref.contract.kind
        if kind == ContractKind.LOAN_NFT:
            loan = self.build_loan_snapshot(ref, await reader.read_loan(ref), result)
            async with self._session_factory() as session:
                await SnapshotRepository(session).upsert_loan(loan)
            result.loans.append(loan)
            return

        if kind == ContractKind.LP_ALM:
            vault_state = await reader.read_vault(ref)
            if vault_state is None:
                result.skipped += 1
                result.tracked.discard(ref.identity)
                return
            lp = self.build_lp_snapshot(ref, vault_state, result)
        else:
            lp = self.build_lp_snapshot(ref, await reader.read_lp(ref), result)

        async with self._session_factory() as session:
            await SnapshotRepository(session).upsert_lp(lp)
        result.lps.append(lp)

    def build_loan_snapshot(self, ref: PositionRef, state: LoanState, result: SnapshotRunResult) -> LoanSnapshotDTO:
        """Classify a loan and turn it into a snapshot row (effective values are stored)."""
        protocol = ref.contract.protocol
        overrides = self._classifier.overrides
        liquidation_price = state.liquidation_price
        risk = self._classifier.classify_loan(
            protocol=protocol,
            price=state.price,
            liquidation_price=liquidation_price,
            debt_ahead_frac=state.debt_ahead_frac,
        )
        price = overrides.effective_price(protocol, state.price)

        return LoanSnapshotDTO(
            identity=ref.identity,
            chain_id=ref.chain_id,
            protocol=protocol,
            collateral=state.collateral,
            debt=state.debt,
            interest_rate=overrides.effective_interest_rate(protocol, state.interest_rate),
            price=price,
            liquidation_price=liquidation_price,
            ltv_pct=state.ltv_pct(price),
            liquidation_buffer_frac=liquidation_buffer_frac(price, liquidation_price),
            debt_ahead=state.debt_ahead,
            total_debt=state.total_debt,
            debt_ahead_frac=overrides.effective_debt_ahead_frac(protocol, state.debt_ahead_frac),
            liquidation_tier=risk.liquidation.tier.value,
            liquidation_label=risk.liquidation.label,
            redemption_tier=risk.redemption.tier.value,
            redemption_label=risk.redemption.label,
            is_active=state.is_active,
            snapshot_at=result.started_at,
            snapshot_run_id=result.run_id,
            wallet_address=ref.wallet_address,
        )

    def build_lp_snapshot(self, ref: PositionRef, state: LpState, result: SnapshotRunResult) -> LpSnapshotDTO:
        """Classify a liquidity position and turn it into a snapshot row."""
        protocol = ref.contract.protocol
        status, classification = self._classifier.classify_lp(
            protocol=protocol,
            liquidity=state.liquidity,
            tick_lower=state.tick_lower,
            tick_upper=state.tick_upper,
            current_tick=state.current_tick,
        )
        effective_tick = self._classifier.overrides.effective_tick(
            protocol, state.current_tick, state.tick_lower, state.tick_upper
        )

        return LpSnapshotDTO(
            identity=ref.identity,
            chain_id=ref.chain_id,
            protocol=protocol,
            range_status=status.value,
            range_tier=classification.tier.value,
            range_label=classification.label,
            position_frac=classification.position_frac,
            distance_frac=classification.distance_frac,
            snapshot_at=result.started_at,
            snapshot_run_id=result.run_id,
            pool_address=state.pool_address,
            token0=state.token0,
            token1=state.token1,
            token0_symbol=state.token0_symbol,
            token1_symbol=state.token1_symbol,
            fee=state.fee,
            tick_lower=state.tick_lower,
            tick_upper=state.tick_upper,
            current_tick=effective_tick,
            liquidity=state.liquidity,
            amount0=state.amount0,
            amount1=state.amount1,
            fees0=state.fees0,
            fees1=state.fees1,
            pool_liquidity_share=state.pool_liquidity_share,
            wallet_address=ref.wallet_address,
        )
