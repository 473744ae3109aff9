"""On-chain readers for loan and liquidity positions.

Loans follow the Liquity v2 layout: the registry NFT id is the trove id,
and the contract config names the branch contracts::

    {"trove_manager": "0x...", "sorted_troves": "0x...", "price_feed": "0x...", "mcr": 1.1}

Liquidity positions follow the Uniswap v3 NonfungiblePositionManager layout;
ALM vaults expose ``getTotalAmounts`` and ``getPositions`` over one pool.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3

from position_sentinel.chain.abis import (
    ALM_VAULT_ABI,
    ERC20_ABI,
    FACTORY_ABI,
    POOL_ABI,
    POSITION_MANAGER_ABI,
    PRICE_FEED_ABI,
    SORTED_TROVES_ABI,
    TROVE_MANAGER_ABI,
)
from position_sentinel.chain.errors import ChainClientError
from position_sentinel.snapshots.lp_math import amounts_for_liquidity, scale, sqrt_price_from_x96
from position_sentinel.snapshots.models import LoanState, LpState

if TYPE_CHECKING:
    from position_sentinel.chain.client import ChainClient
    from position_sentinel.storage.repos import PositionRef

logger = logging.getLogger(__name__)

WAD = 10**18
MAX_UINT128 = 2**128 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_MCR = 1.1

# TroveManager.Status enum value for an open trove
TROVE_STATUS_ACTIVE = 1


class PositionReadError(Exception):
    """Raised when a position's state cannot be read or is misconfigured."""


def _require(config: dict[str, Any], key: str, contract_address: str) -> str:
    value = config.get(key)
    if not value:
        raise PositionReadError(f"Contract {contract_address} config is missing '{key}'")
    return str(value)


class ChainPositionReader:
    """Reads raw position state for one chain.

    A reader instance caches token metadata and the redemption ladder of each
    trove branch, so it is meant to live for one snapshot run.
    """

    def __init__(self, client: ChainClient, *, max_debt_ahead_walk: int = 2000) -> None:
        self._client = client
        self._max_walk = max_debt_ahead_walk
        self._decimals: dict[str, int] = {}
        self._symbols: dict[str, str] = {}
        self._ladders: dict[str, list[tuple[int, float]]] = {}

    # ------------------------------------------------------------------
    # Token metadata
    # ------------------------------------------------------------------

    async def token_decimals(self, token: str) -> int:
        key = token.lower()
        if key not in self._decimals:
            self._decimals[key] = int(await self._client.call_function(token, ERC20_ABI, "decimals"))
        return self._decimals[key]

    async def token_symbol(self, token: str) -> str:
        key = token.lower()
        if key not in self._symbols:
            try:
                self._symbols[key] = str(await self._client.call_function(token, ERC20_ABI, "symbol"))
            except ChainClientError as e:
                logger.debug("symbol() failed for %s: %s", token, e)
                self._symbols[key] = token
        return self._symbols[key]

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    async def read_loan(self, ref: PositionRef) -> LoanState:
        """Read collateral, debt, rate, price and redemption depth of a trove."""
        config = ref.contract.config
        trove_manager = _require(config, "trove_manager", ref.contract.address_lower)
        sorted_troves = _require(config, "sorted_troves", ref.contract.address_lower)
        price_feed = config.get("price_feed")
        mcr = float(config.get("mcr", DEFAULT_MCR))
        trove_id = int(ref.token_id)

        status = int(
            await self._client.call_function(trove_manager, TROVE_MANAGER_ABI, "getTroveStatus", trove_id)
        )
        data = await self._client.call_function(
            trove_manager, TROVE_MANAGER_ABI, "getLatestTroveData", trove_id
        )
        debt = data[0] / WAD
        collateral = data[1] / WAD
        interest_rate = data[6] / WAD

        price = await self._read_price(price_feed) if price_feed else None

        total_raw = await self._client.call_function(trove_manager, TROVE_MANAGER_ABI, "getEntireBranchDebt")
        total_debt = total_raw / WAD
        debt_ahead = await self._debt_ahead(trove_manager, sorted_troves, trove_id)

        return LoanState(
            collateral=collateral,
            debt=debt,
            interest_rate=interest_rate,
            price=price,
            mcr=mcr,
            debt_ahead=debt_ahead,
            total_debt=total_debt,
            is_active=status == TROVE_STATUS_ACTIVE,
        )

    async def _read_price(self, price_feed: str) -> float | None:
        try:
            raw = await self._client.call_function(price_feed, PRICE_FEED_ABI, "lastGoodPrice")
        except ChainClientError as e:
            logger.warning("Price feed %s unavailable: %s", price_feed, e)
            return None
        if not raw:
            return None
        return raw / WAD

    async def _debt_ahead(self, trove_manager: str, sorted_troves: str, trove_id: int) -> float | None:
        """Debt redeemed before ``trove_id``, or None if it lies beyond the walk bound."""
        ladder = await self._redemption_ladder(trove_manager, sorted_troves)
        ahead = 0.0
        for candidate, debt in ladder:
            if candidate == trove_id:
                return ahead
            ahead += debt
        return None

    async def _redemption_ladder(self, trove_manager: str, sorted_troves: str) -> list[tuple[int, float]]:
        """Troves in redemption order (lowest interest rate first) with their debt."""
        key = sorted_troves.lower()
        if key in self._ladders:
            return self._ladders[key]

        ladder: list[tuple[int, float]] = []
        current = int(await self._client.call_function(sorted_troves, SORTED_TROVES_ABI, "getLast"))
        while current != 0 and len(ladder) < self._max_walk:
            data = await self._client.call_function(
                trove_manager, TROVE_MANAGER_ABI, "getLatestTroveData", current
            )
            ladder.append((current, data[0] / WAD))
            current = int(await self._client.call_function(sorted_troves, SORTED_TROVES_ABI, "getPrev", current))

        if current != 0:
            logger.info(
                "Redemption ladder for %s truncated at %d troves",
                sorted_troves,
                self._max_walk,
            )
        self._ladders[key] = ladder
        return ladder

    # ------------------------------------------------------------------
    # Liquidity positions
    # ------------------------------------------------------------------

    async def read_lp(self, ref: PositionRef) -> LpState:
        """Read an NFT liquidity position and its pool."""
        manager = ref.contract.address_eip55
        token_id = int(ref.token_id)
        pos = await self._client.call_function(manager, POSITION_MANAGER_ABI, "positions", token_id)

        token0, token1 = pos[2], pos[3]
        fee = int(pos[4])
        tick_lower, tick_upper = int(pos[5]), int(pos[6])
        liquidity = int(pos[7])

        state = LpState(
            liquidity=liquidity,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            token0=token0,
            token1=token1,
            token0_symbol=await self.token_symbol(token0),
            token1_symbol=await self.token_symbol(token1),
            fee=fee,
        )
        if liquidity == 0:
            return state

        try:
            factory = await self._client.call_function(manager, POSITION_MANAGER_ABI, "factory")
            pool = await self._client.call_function(factory, FACTORY_ABI, "getPool", token0, token1, fee)
        except ChainClientError as e:
            logger.warning("Pool lookup failed for %s #%s: %s", manager, ref.token_id, e)
            return state
        if not pool or pool == ZERO_ADDRESS:
            return state

        state.pool_address = pool
        await self._fill_pool_state(state, pool)

        owed0, owed1 = await self._uncollected_fees(manager, token_id, ref.wallet_address, pos[10], pos[11])
        dec0 = await self.token_decimals(token0)
        dec1 = await self.token_decimals(token1)
        state.fees0 = scale(owed0, dec0)
        state.fees1 = scale(owed1, dec1)
        if state.amount0 is not None and state.amount1 is not None:
            state.amount0 = scale(state.amount0, dec0)
            state.amount1 = scale(state.amount1, dec1)
        return state

    async def _fill_pool_state(self, state: LpState, pool: str) -> None:
        try:
            slot0 = await self._client.call_function(pool, POOL_ABI, "slot0")
            state.pool_liquidity = int(await self._client.call_function(pool, POOL_ABI, "liquidity"))
        except ChainClientError as e:
            logger.warning("Pool %s unreadable: %s", pool, e)
            return
        state.current_tick = int(slot0[1])
        if state.tick_lower is not None and state.tick_upper is not None:
            state.amount0, state.amount1 = amounts_for_liquidity(
                state.liquidity,
                sqrt_price_from_x96(int(slot0[0])),
                state.tick_lower,
                state.tick_upper,
            )

    async def _uncollected_fees(
        self,
        manager: str,
        token_id: int,
        owner: str,
        tokens_owed0: int,
        tokens_owed1: int,
    ) -> tuple[int, int]:
        """Fees a ``collect`` from the owner would return, else the stored ``tokensOwed``."""
        try:
            result = await self._client.call_function(
                manager,
                POSITION_MANAGER_ABI,
                "collect",
                (token_id, AsyncWeb3.to_checksum_address(owner), MAX_UINT128, MAX_UINT128),
                tx={"from": AsyncWeb3.to_checksum_address(owner)},
            )
            return int(result[0]), int(result[1])
        except ChainClientError as e:
            logger.debug("Static collect failed for #%d: %s", token_id, e)
            return int(tokens_owed0), int(tokens_owed1)

    async def read_vault(self, ref: PositionRef) -> LpState | None:
        """Read a wallet's share of an ALM vault, or None when it holds no shares."""
        vault = ref.contract.address_eip55
        owner = AsyncWeb3.to_checksum_address(ref.wallet_address)
        balance = int(await self._client.call_function(vault, ALM_VAULT_ABI, "balanceOf", owner))
        if balance == 0:
            return None

        supply = int(await self._client.call_function(vault, ALM_VAULT_ABI, "totalSupply"))
        token0 = await self._client.call_function(vault, ALM_VAULT_ABI, "token0")
        token1 = await self._client.call_function(vault, ALM_VAULT_ABI, "token1")
        pool = await self._client.call_function(vault, ALM_VAULT_ABI, "pool")
        total0, total1 = await self._client.call_function(vault, ALM_VAULT_ABI, "getTotalAmounts")
        lowers, uppers, _weights = await self._client.call_function(vault, ALM_VAULT_ABI, "getPositions")

        share = balance / supply if supply else 0.0
        dec0 = await self.token_decimals(token0)
        dec1 = await self.token_decimals(token1)

        state = LpState(
            liquidity=balance,
            # Outermost bounds across the vault's sub-positions.
            tick_lower=min(lowers) if lowers else None,
            tick_upper=max(uppers) if uppers else None,
            token0=token0,
            token1=token1,
            token0_symbol=await self.token_symbol(token0),
            token1_symbol=await self.token_symbol(token1),
            pool_address=pool,
            amount0=scale(total0, dec0) * share,
            amount1=scale(total1, dec1) * share,
        )
        try:
            slot0 = await self._client.call_function(pool, POOL_ABI, "slot0")
            state.current_tick = int(slot0[1])
        except ChainClientError as e:
            logger.warning("Vault pool %s unreadable: %s", pool, e)
        return state
