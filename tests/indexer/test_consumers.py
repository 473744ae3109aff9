"""Tests for log consumers."""

from __future__ import annotations

from typing import Any

import pytest
from eth_abi import encode as abi_encode

from position_sentinel.chain.abis import TRANSFER_TOPIC, VAULT_CREATED_TOPIC
from position_sentinel.indexer.consumers import (
    ERC721TransferConsumer,
    LogDecodeError,
    VaultCreatedConsumer,
    consumer_for,
    log_position,
)
from position_sentinel.storage.database import DatabaseManager
from position_sentinel.storage.models import ContractKind
from position_sentinel.storage.repos import ContractRepository, PositionTokenRepository

ZERO = "0x" + "0" * 40
FACTORY = "0x8888888888888888888888888888888888888888"
VAULT = "0x9999999999999999999999999999999999999999"
MANAGER = "0x4444444444444444444444444444444444444444"


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def _int_topic(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def transfer_log(block: int, index: int, to: str, token_id: int, frm: str = ZERO) -> dict[str, Any]:
    return {
        "blockNumber": block,
        "logIndex": index,
        "topics": [TRANSFER_TOPIC, _address_topic(frm), _address_topic(to), _int_topic(token_id)],
        "data": "0x",
    }


def vault_created_log(block: int, beacon: str) -> dict[str, Any]:
    data = abi_encode(["address", "address", "string", "address"], [ZERO[:-1] + "1", VAULT, beacon, MANAGER])
    return {
        "blockNumber": block,
        "logIndex": 0,
        "topics": [VAULT_CREATED_TOPIC, _int_topic(3)],
        "data": data,
    }


async def _factory(db: DatabaseManager):
    async with db.get_async_session() as session:
        repo = ContractRepository(session)
        await repo.register(
            chain_id="FLR",
            address=FACTORY,
            protocol="alm",
            kind=ContractKind.VAULT_FACTORY,
            default_start_block=10,
        )
        (factory,) = await repo.list_enabled(kinds=[ContractKind.VAULT_FACTORY])
    return factory


class TestLogPosition:
    def test_reads_position(self) -> None:
        assert log_position({"blockNumber": 5, "logIndex": 2}) == (5, 2)

    def test_missing_position(self) -> None:
        with pytest.raises(LogDecodeError):
            log_position({"blockNumber": 5})


class TestERC721TransferConsumer:
    @pytest.mark.asyncio
    async def test_mint_and_burn(self, db: DatabaseManager, seed) -> None:
        consumer = ERC721TransferConsumer()
        async with db.get_async_session() as session:
            await consumer.consume(session, seed.lp_contract, transfer_log(120, 0, seed.wallet_address, 7))
            minted = await PositionTokenRepository(session).get(seed.lp_contract.id, "7")
            await consumer.consume(
                session, seed.lp_contract, transfer_log(130, 4, ZERO, 7, frm=seed.wallet_address)
            )
            burned = await PositionTokenRepository(session).get(seed.lp_contract.id, "7")

        assert minted is not None
        assert minted.owner_lower == seed.wallet_address.lower()
        assert minted.is_burned is False
        assert burned is not None
        assert burned.is_burned is True
        assert (burned.last_block, burned.last_log_index) == (130, 4)

    @pytest.mark.asyncio
    async def test_erc20_shaped_transfer_is_rejected(self, db: DatabaseManager, seed) -> None:
        log = transfer_log(120, 0, seed.wallet_address, 7)
        log["topics"] = log["topics"][:3]
        async with db.get_async_session() as session:
            with pytest.raises(LogDecodeError):
                await ERC721TransferConsumer().consume(session, seed.lp_contract, log)

    @pytest.mark.asyncio
    async def test_bytes_topics(self, db: DatabaseManager, seed) -> None:
        log = transfer_log(120, 0, seed.wallet_address, 9)
        log["topics"] = [bytes.fromhex(t[2:]) for t in log["topics"]]
        async with db.get_async_session() as session:
            await ERC721TransferConsumer().consume(session, seed.lp_contract, log)
            token = await PositionTokenRepository(session).get(seed.lp_contract.id, "9")
        assert token is not None


class TestVaultCreatedConsumer:
    @pytest.mark.asyncio
    async def test_registers_vault(self, db: DatabaseManager) -> None:
        factory = await _factory(db)
        async with db.get_async_session() as session:
            await VaultCreatedConsumer(frozenset({"ICHI"})).consume(session, factory, vault_created_log(55, "ichi"))
            vaults = await ContractRepository(session).list_enabled(kinds=[ContractKind.LP_ALM])

        assert len(vaults) == 1
        vault = vaults[0]
        assert vault.address_lower == VAULT
        assert vault.default_start_block == 55
        assert vault.protocol == "alm"
        assert vault.config["beacon_name"] == "ichi"
        assert vault.config["registry_token_id"] == "3"
        assert vault.config["vault_manager"].lower() == MANAGER

    @pytest.mark.asyncio
    async def test_other_beacons_are_ignored(self, db: DatabaseManager) -> None:
        factory = await _factory(db)
        async with db.get_async_session() as session:
            await VaultCreatedConsumer(frozenset({"ichi"})).consume(session, factory, vault_created_log(55, "gamma"))
            vaults = await ContractRepository(session).list_enabled(kinds=[ContractKind.LP_ALM])
        assert vaults == []

    @pytest.mark.asyncio
    async def test_garbage_data_is_rejected(self, db: DatabaseManager) -> None:
        factory = await _factory(db)
        log = vault_created_log(55, "ichi")
        log["data"] = "0x1234"
        async with db.get_async_session() as session:
            with pytest.raises(LogDecodeError):
                await VaultCreatedConsumer().consume(session, factory, log)


class TestConsumerFor:
    @pytest.mark.asyncio
    async def test_by_kind(self, db: DatabaseManager, seed) -> None:
        factory = await _factory(db)
        assert isinstance(consumer_for(seed.loan_contract), ERC721TransferConsumer)
        assert isinstance(consumer_for(seed.lp_contract), ERC721TransferConsumer)
        assert isinstance(consumer_for(factory), VaultCreatedConsumer)
