"""Pytest configuration and fixtures."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from position_sentinel.storage.database import DatabaseManager
from position_sentinel.storage.models import ContractKind
from position_sentinel.storage.repos import (
    ContractRepository,
    MonitoredContractDTO,
    PositionIdentity,
    UserRepository,
    WalletRepository,
)

WALLET = "0x1234567890123456789012345678901234567890"
LOAN_NFT = "0x5555555555555555555555555555555555555555"
LP_NFT = "0x6666666666666666666666666666666666666666"


@dataclass
class Seed:
    """Ids created by ``seed``."""

    user_id: int
    wallet_id: int
    wallet_address: str
    loan_contract: MonitoredContractDTO
    lp_contract: MonitoredContractDTO

    def loan_identity(self, token_id: str = "1") -> PositionIdentity:
        return PositionIdentity(self.user_id, self.wallet_id, self.loan_contract.id, token_id)

    def lp_identity(self, token_id: str = "7") -> PositionIdentity:
        return PositionIdentity(self.user_id, self.wallet_id, self.lp_contract.id, token_id)


@pytest.fixture
async def db(tmp_path):
    """File-backed SQLite database shared by every session of one test."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
async def seed(db: DatabaseManager) -> Seed:
    """One user with one wallet, plus a loan NFT and an LP NFT contract."""
    async with db.get_async_session() as session:
        user = await UserRepository(session).create(discord_id="42", discord_name="alice")
        wallet = await WalletRepository(session).add(user_id=user.id, chain_id="FLR", address=WALLET)
        contracts = ContractRepository(session)
        await contracts.register(
            chain_id="FLR",
            address=LOAN_NFT,
            protocol="enosys-loans",
            kind=ContractKind.LOAN_NFT,
            default_start_block=100,
            config={"trove_manager": "0x" + "a" * 40},
        )
        await contracts.register(
            chain_id="FLR",
            address=LP_NFT,
            protocol="enosys-v3",
            kind=ContractKind.LP_NFT,
            default_start_block=100,
            config={"factory": "0x" + "f" * 40},
        )
        registered = await contracts.list_enabled()
    by_kind: dict[ContractKind, Any] = {c.kind: c for c in registered}
    return Seed(
        user_id=user.id,
        wallet_id=wallet.id,
        wallet_address=WALLET,
        loan_contract=by_kind[ContractKind.LOAN_NFT],
        lp_contract=by_kind[ContractKind.LP_NFT],
    )
