"""Log consumers turning decoded events into storage writes.

Every consumer is idempotent: replaying a log that was already applied
leaves storage unchanged, which lets the scanner re-read its boundary block
after a restart.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import AsyncWeb3

from position_sentinel.chain.abis import (
    TRANSFER_TOPIC,
    VAULT_CREATED_DATA_TYPES,
    VAULT_CREATED_TOPIC,
)
from position_sentinel.storage.models import ContractKind
from position_sentinel.storage.repos import ContractRepository, PositionTokenRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from position_sentinel.storage.repos import MonitoredContractDTO

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class LogDecodeError(ValueError):
    """Raised when a log entry cannot be decoded into the expected event."""


class LogConsumer(Protocol):
    """Consumes one event type for one registry kind."""

    topic0: str

    async def consume(self, session: AsyncSession, contract: MonitoredContractDTO, log: dict[str, Any]) -> None:
        """Apply ``log`` to storage.

        Raises:
            LogDecodeError: If the log does not have the expected shape.
        """
        ...


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return bytes.fromhex(text)
        except ValueError as e:
            raise LogDecodeError(f"Invalid hex value: {value!r}") from e
    raise LogDecodeError(f"Unsupported log field type: {type(value).__name__}")


def _topic_to_address(topic: Any) -> str:
    raw = _to_bytes(topic)
    if len(raw) != 32:
        raise LogDecodeError(f"Topic has {len(raw)} bytes, expected 32")
    return AsyncWeb3.to_checksum_address("0x" + raw[-20:].hex())


def _topic_to_int(topic: Any) -> int:
    raw = _to_bytes(topic)
    if len(raw) != 32:
        raise LogDecodeError(f"Topic has {len(raw)} bytes, expected 32")
    return int.from_bytes(raw, "big")


def log_position(log: dict[str, Any]) -> tuple[int, int]:
    """Canonical (blockNumber, logIndex) ordering key of a log entry."""
    try:
        return int(log["blockNumber"]), int(log["logIndex"])
    except (KeyError, TypeError, ValueError) as e:
        raise LogDecodeError(f"Log without block position: {e}") from e


class ERC721TransferConsumer:
    """Maintains the ownership index from ERC-721 ``Transfer`` events."""

    topic0 = TRANSFER_TOPIC

    async def consume(self, session: AsyncSession, contract: MonitoredContractDTO, log: dict[str, Any]) -> None:
        topics = log.get("topics") or []
        # ERC-20 transfers share topic0 but index only two arguments.
        if len(topics) != 4:
            raise LogDecodeError(f"Transfer log has {len(topics)} topics, expected 4")

        to_address = _topic_to_address(topics[2])
        token_id = _topic_to_int(topics[3])
        block_number, log_index = log_position(log)
        is_burned = to_address.lower() == ZERO_ADDRESS

        await PositionTokenRepository(session).apply_transfer(
            contract_id=contract.id,
            token_id=str(token_id),
            owner=to_address,
            is_burned=is_burned,
            block_number=block_number,
            log_index=log_index,
        )
        logger.debug(
            "Transfer %s #%d -> %s (block=%d idx=%d)",
            contract.address_lower,
            token_id,
            to_address,
            block_number,
            log_index,
        )


class VaultCreatedConsumer:
    """Registers vaults announced by a vault factory as monitored ALM contracts."""

    topic0 = VAULT_CREATED_TOPIC

    def __init__(self, beacon_names: frozenset[str] | None = None) -> None:
        """Initialize the consumer.

        Args:
            beacon_names: Vault beacon names to accept; empty or None accepts all.
        """
        self._beacon_names = frozenset(name.lower() for name in beacon_names or ())

    async def consume(self, session: AsyncSession, contract: MonitoredContractDTO, log: dict[str, Any]) -> None:
        topics = log.get("topics") or []
        if len(topics) != 2:
            raise LogDecodeError(f"VaultCreated log has {len(topics)} topics, expected 2")

        try:
            deployer, vault, beacon_name, vault_manager = abi_decode(
                VAULT_CREATED_DATA_TYPES, _to_bytes(log.get("data", b""))
            )
        except (DecodingError, OverflowError, ValueError) as e:
            raise LogDecodeError(f"Undecodable VaultCreated data: {e}") from e

        token_id = _topic_to_int(topics[1])
        block_number, _ = log_position(log)

        if self._beacon_names and beacon_name.lower() not in self._beacon_names:
            logger.debug("Ignoring vault %s with beacon %s", vault, beacon_name)
            return

        inserted = await ContractRepository(session).register(
            chain_id=contract.chain_id,
            address=AsyncWeb3.to_checksum_address(vault),
            protocol=contract.protocol,
            kind=ContractKind.LP_ALM,
            default_start_block=block_number,
            config={
                "registry": contract.address_eip55,
                "beacon_name": beacon_name,
                "vault_manager": AsyncWeb3.to_checksum_address(vault_manager),
                "deployer": AsyncWeb3.to_checksum_address(deployer),
                "registry_token_id": str(token_id),
            },
        )
        if inserted:
            logger.info(
                "Registered %s vault %s (%s) from registry %s at block %d",
                contract.chain_id,
                vault,
                beacon_name,
                contract.address_lower,
                block_number,
            )


def consumer_for(contract: MonitoredContractDTO, *, beacon_names: frozenset[str] | None = None) -> LogConsumer | None:
    """Consumer scanning ``contract``'s logs, or None if its logs are not indexed."""
    if contract.kind in (ContractKind.LOAN_NFT, ContractKind.LP_NFT):
        return ERC721TransferConsumer()
    if contract.kind == ContractKind.VAULT_FACTORY:
        return VaultCreatedConsumer(beacon_names)
    return None
