"""Tests for the on-chain position reader."""

from __future__ import annotations

from collections import Counter
from typing import Any

import pytest

from position_sentinel.chain.errors import RPCError
from position_sentinel.snapshots.lp_math import Q96, sqrt_price_at_tick
from position_sentinel.snapshots.reader import ChainPositionReader, PositionReadError
from position_sentinel.storage.models import ContractKind
from position_sentinel.storage.repos import MonitoredContractDTO, PositionIdentity, PositionRef

WAD = 10**18
WALLET = "0x1234567890AbcdEF1234567890aBcdef12345678"
TROVE_MANAGER = "0x" + "a" * 40
SORTED_TROVES = "0x" + "b" * 40
PRICE_FEED = "0x" + "c" * 40
TOKEN0 = "0x" + "1" * 40
TOKEN1 = "0x" + "2" * 40
POOL = "0x" + "9" * 40


def _ref(kind: ContractKind, token_id: str, config: dict[str, Any] | None = None) -> PositionRef:
    address = "0x" + "5" * 40
    contract = MonitoredContractDTO(
        id=1,
        chain_id="FLR",
        address_lower=address,
        address_eip55=address,
        protocol="test",
        kind=kind,
        config=config or {},
    )
    return PositionRef(
        identity=PositionIdentity(1, 1, 1, token_id),
        chain_id="FLR",
        wallet_address=WALLET,
        contract=contract,
    )


def _trove(debt: int, coll: int = 0, rate: int = 0) -> tuple[int, ...]:
    return (debt, coll, 0, 0, 0, 0, rate, 0, 0, 0)


class FakeClient:
    """Dispatches ``call_function`` on the function name."""

    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = responses
        self.calls: Counter[str] = Counter()

    async def call_function(self, address: str, abi: Any, fn_name: str, *args: Any, **kwargs: Any) -> Any:
        self.calls[fn_name] += 1
        response = self.responses[fn_name]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(*args)
        return response


DEBTS = {3: 100 * WAD, 1: 50 * WAD, 2: 30 * WAD}

LOAN_CONFIG = {
    "trove_manager": TROVE_MANAGER,
    "sorted_troves": SORTED_TROVES,
    "price_feed": PRICE_FEED,
    "mcr": 1.2,
}


def _loan_client(**overrides: Any) -> FakeClient:
    responses: dict[str, Any] = {
        "getTroveStatus": 1,
        "getLatestTroveData": lambda trove_id: _trove(DEBTS[trove_id], 1000 * WAD, 5 * WAD // 100),
        "lastGoodPrice": 2 * WAD // 100,
        "getEntireBranchDebt": 180 * WAD,
        "getLast": 3,
        "getPrev": lambda trove_id: {3: 1, 1: 2, 2: 0}[trove_id],
    }
    responses.update(overrides)
    return FakeClient(responses)


# ============================================================================
# Loan Tests
# ============================================================================


class TestReadLoan:
    @pytest.mark.asyncio
    async def test_reads_trove_and_debt_ahead(self) -> None:
        reader = ChainPositionReader(_loan_client())  # type: ignore[arg-type]

        state = await reader.read_loan(_ref(ContractKind.LOAN_NFT, "1", LOAN_CONFIG))

        assert state.debt == 50.0
        assert state.collateral == 1000.0
        assert state.interest_rate == pytest.approx(0.05)
        assert state.price == pytest.approx(0.02)
        assert state.mcr == 1.2
        assert state.debt_ahead == 100.0
        assert state.total_debt == 180.0
        assert state.is_active is True
        assert state.liquidation_price == pytest.approx(0.06)

    @pytest.mark.asyncio
    async def test_ladder_is_walked_once_per_reader(self) -> None:
        client = _loan_client()
        reader = ChainPositionReader(client)  # type: ignore[arg-type]

        first = await reader.read_loan(_ref(ContractKind.LOAN_NFT, "1", LOAN_CONFIG))
        second = await reader.read_loan(_ref(ContractKind.LOAN_NFT, "2", LOAN_CONFIG))

        assert first.debt_ahead == 100.0
        assert second.debt_ahead == 150.0
        assert client.calls["getLast"] == 1

    @pytest.mark.asyncio
    async def test_walk_bound_leaves_debt_ahead_unknown(self) -> None:
        reader = ChainPositionReader(_loan_client(), max_debt_ahead_walk=1)  # type: ignore[arg-type]

        state = await reader.read_loan(_ref(ContractKind.LOAN_NFT, "1", LOAN_CONFIG))

        assert state.debt_ahead is None
        assert state.debt_ahead_frac is None

    @pytest.mark.asyncio
    async def test_closed_trove_without_price(self) -> None:
        client = _loan_client(getTroveStatus=2, lastGoodPrice=RPCError("feed reverted"))
        reader = ChainPositionReader(client)  # type: ignore[arg-type]

        state = await reader.read_loan(_ref(ContractKind.LOAN_NFT, "1", LOAN_CONFIG))

        assert state.is_active is False
        assert state.price is None
        assert state.ltv_pct() is None

    @pytest.mark.asyncio
    async def test_missing_config_raises(self) -> None:
        reader = ChainPositionReader(_loan_client())  # type: ignore[arg-type]
        with pytest.raises(PositionReadError, match="sorted_troves"):
            await reader.read_loan(_ref(ContractKind.LOAN_NFT, "1", {"trove_manager": TROVE_MANAGER}))


# ============================================================================
# Liquidity position Tests
# ============================================================================


def _position(liquidity: int) -> tuple[Any, ...]:
    return (0, POOL, TOKEN0, TOKEN1, 3000, -100, 100, liquidity, 0, 0, 5 * WAD, 0)


def _lp_client(liquidity: int, **overrides: Any) -> FakeClient:
    responses: dict[str, Any] = {
        "positions": _position(liquidity),
        "symbol": lambda: "TKN",
        "decimals": 18,
        "factory": "0x" + "f" * 40,
        "getPool": POOL,
        "slot0": (Q96, 0, 0, 0, 0, 0, True),
        "liquidity": 4 * WAD,
        "collect": RPCError("execution reverted"),
    }
    responses.update(overrides)
    return FakeClient(responses)


class TestReadLp:
    @pytest.mark.asyncio
    async def test_reads_position_and_pool(self) -> None:
        reader = ChainPositionReader(_lp_client(WAD))  # type: ignore[arg-type]

        state = await reader.read_lp(_ref(ContractKind.LP_NFT, "7"))

        expected = 1 - sqrt_price_at_tick(-100)
        assert (state.tick_lower, state.tick_upper, state.current_tick) == (-100, 100, 0)
        assert state.fee == 3000
        assert state.pool_address == POOL
        assert state.token0_symbol == "TKN"
        assert state.amount0 == pytest.approx(expected)
        assert state.amount1 == pytest.approx(expected)
        assert state.fees0 == 5.0
        assert state.fees1 == 0.0
        assert state.pool_liquidity_share == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_static_collect_takes_precedence(self) -> None:
        client = _lp_client(WAD, collect=(7 * WAD, 3 * WAD))
        reader = ChainPositionReader(client)  # type: ignore[arg-type]

        state = await reader.read_lp(_ref(ContractKind.LP_NFT, "7"))

        assert (state.fees0, state.fees1) == (7.0, 3.0)

    @pytest.mark.asyncio
    async def test_empty_position_skips_pool(self) -> None:
        client = _lp_client(0)
        reader = ChainPositionReader(client)  # type: ignore[arg-type]

        state = await reader.read_lp(_ref(ContractKind.LP_NFT, "7"))

        assert state.liquidity == 0
        assert state.current_tick is None
        assert client.calls["factory"] == 0

    @pytest.mark.asyncio
    async def test_symbol_failure_falls_back_to_address(self) -> None:
        client = _lp_client(0, symbol=RPCError("no symbol"))
        reader = ChainPositionReader(client)  # type: ignore[arg-type]

        state = await reader.read_lp(_ref(ContractKind.LP_NFT, "7"))

        assert state.token0_symbol == TOKEN0
        assert client.calls["symbol"] == 2


class TestReadVault:
    def _client(self, balance: int) -> FakeClient:
        return FakeClient(
            {
                "balanceOf": balance,
                "totalSupply": 100,
                "token0": TOKEN0,
                "token1": TOKEN1,
                "pool": POOL,
                "getTotalAmounts": (400 * WAD, 800 * 10**6),
                "getPositions": ([-50, -10], [60, 200], [1, 1]),
                "decimals": lambda: 18,
                "symbol": "TKN",
                "slot0": (Q96, 30, 0, 0, 0, 0, True),
            }
        )

    @pytest.mark.asyncio
    async def test_share_of_vault(self) -> None:
        client = self._client(25)
        client.responses["decimals"] = _decimals_by_call()
        reader = ChainPositionReader(client)  # type: ignore[arg-type]

        state = await reader.read_vault(_ref(ContractKind.LP_ALM, "0"))

        assert state is not None
        assert (state.tick_lower, state.tick_upper, state.current_tick) == (-50, 200, 30)
        assert state.amount0 == pytest.approx(100.0)
        assert state.amount1 == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_no_shares(self) -> None:
        reader = ChainPositionReader(self._client(0))  # type: ignore[arg-type]
        assert await reader.read_vault(_ref(ContractKind.LP_ALM, "0")) is None


def _decimals_by_call():
    values = iter([18, 6])
    return lambda: next(values)
