"""Minimal contract ABIs and event topics used by the indexer and snapshot reader."""

from __future__ import annotations

from typing import Any

from web3 import AsyncWeb3


def _fn(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[tuple[str, str]] | list[dict[str, Any]],
    *,
    mutability: str = "view",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [o if isinstance(o, dict) else {"name": o[0], "type": o[1]} for o in outputs],
    }


def event_topic(signature: str) -> str:
    """keccak256 topic for an event signature such as ``Transfer(address,address,uint256)``."""
    topic = AsyncWeb3.keccak(text=signature).hex()
    return topic if topic.startswith("0x") else "0x" + topic


TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
VAULT_CREATED_SIGNATURE = "VaultCreated(address,address,string,uint256,address)"

TRANSFER_TOPIC = event_topic(TRANSFER_SIGNATURE)
VAULT_CREATED_TOPIC = event_topic(VAULT_CREATED_SIGNATURE)

# Non-indexed VaultCreated fields, in data order (tokenId is indexed).
VAULT_CREATED_DATA_TYPES = ["address", "address", "string", "address"]

ERC20_ABI = [
    _fn("decimals", [], [("", "uint8")]),
    _fn("symbol", [], [("", "string")]),
    _fn("balanceOf", [("owner", "address")], [("", "uint256")]),
    _fn("totalSupply", [], [("", "uint256")]),
]

POSITION_MANAGER_ABI = [
    _fn(
        "positions",
        [("tokenId", "uint256")],
        [
            ("nonce", "uint96"),
            ("operator", "address"),
            ("token0", "address"),
            ("token1", "address"),
            ("fee", "uint24"),
            ("tickLower", "int24"),
            ("tickUpper", "int24"),
            ("liquidity", "uint128"),
            ("feeGrowthInside0LastX128", "uint256"),
            ("feeGrowthInside1LastX128", "uint256"),
            ("tokensOwed0", "uint128"),
            ("tokensOwed1", "uint128"),
        ],
    ),
    _fn("factory", [], [("", "address")]),
    {
        "type": "function",
        "name": "collect",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "params",
                "type": "tuple",
                "components": [
                    {"name": "tokenId", "type": "uint256"},
                    {"name": "recipient", "type": "address"},
                    {"name": "amount0Max", "type": "uint128"},
                    {"name": "amount1Max", "type": "uint128"},
                ],
            }
        ],
        "outputs": [{"name": "amount0", "type": "uint256"}, {"name": "amount1", "type": "uint256"}],
    },
]

FACTORY_ABI = [
    _fn("getPool", [("tokenA", "address"), ("tokenB", "address"), ("fee", "uint24")], [("", "address")]),
]

POOL_ABI = [
    _fn(
        "slot0",
        [],
        [
            ("sqrtPriceX96", "uint160"),
            ("tick", "int24"),
            ("observationIndex", "uint16"),
            ("observationCardinality", "uint16"),
            ("observationCardinalityNext", "uint16"),
            ("feeProtocol", "uint8"),
            ("unlocked", "bool"),
        ],
    ),
    _fn("liquidity", [], [("", "uint128")]),
]

ALM_VAULT_ABI = [
    *ERC20_ABI,
    _fn("pool", [], [("", "address")]),
    _fn("token0", [], [("", "address")]),
    _fn("token1", [], [("", "address")]),
    _fn("getTotalAmounts", [], [("total0", "uint256"), ("total1", "uint256")]),
    _fn(
        "getPositions",
        [],
        [("lowerTicks", "int24[]"), ("upperTicks", "int24[]"), ("weights", "uint16[]")],
    ),
]

TROVE_MANAGER_ABI = [
    _fn(
        "getLatestTroveData",
        [("troveId", "uint256")],
        [
            {
                "name": "trove",
                "type": "tuple",
                "components": [
                    {"name": "entireDebt", "type": "uint256"},
                    {"name": "entireColl", "type": "uint256"},
                    {"name": "redistBoldDebtGain", "type": "uint256"},
                    {"name": "redistCollGain", "type": "uint256"},
                    {"name": "accruedInterest", "type": "uint256"},
                    {"name": "recordedDebt", "type": "uint256"},
                    {"name": "annualInterestRate", "type": "uint256"},
                    {"name": "weightedRecordedDebt", "type": "uint256"},
                    {"name": "accruedBatchManagementFee", "type": "uint256"},
                    {"name": "lastInterestRateAdjTime", "type": "uint256"},
                ],
            }
        ],
    ),
    _fn("getTroveStatus", [("troveId", "uint256")], [("", "uint8")]),
    _fn("getEntireBranchDebt", [], [("", "uint256")]),
]

SORTED_TROVES_ABI = [
    _fn("getLast", [], [("", "uint256")]),
    _fn("getPrev", [("id", "uint256")], [("", "uint256")]),
    _fn("getSize", [], [("", "uint256")]),
]

PRICE_FEED_ABI = [
    _fn("lastGoodPrice", [], [("", "uint256")]),
]
