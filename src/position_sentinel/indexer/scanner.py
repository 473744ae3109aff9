"""Windowed, resumable event-log scanner.

Each enabled registry contract owns a scan cursor. A scan walks the block
range ``[cursor, head]`` in fixed-size windows, strictly in increasing block
order. The logs of a window are consumed and the cursor is advanced to the
window end inside one transaction, so a window either lands completely or
not at all. Scans resume at the cursor block inclusive; consumers are
idempotent, so re-reading that boundary block is harmless.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from position_sentinel.chain.errors import ChainClientError
from position_sentinel.indexer.consumers import LogConsumer, LogDecodeError, consumer_for, log_position
from position_sentinel.indexer.discovery import find_creation_block
from position_sentinel.storage.models import ContractKind
from position_sentinel.storage.repos import ContractRepository, ScanCursorRepository

if TYPE_CHECKING:
    from position_sentinel.chain.client import ChainClient
    from position_sentinel.storage.database import SessionFactory
    from position_sentinel.storage.repos import MonitoredContractDTO, ScanCursorDTO

logger = logging.getLogger(__name__)

INDEXED_KINDS = [ContractKind.LOAN_NFT, ContractKind.LP_NFT, ContractKind.VAULT_FACTORY]


class IndexerError(Exception):
    """Raised when a contract scan cannot complete."""


class ChainClientSource(Protocol):
    def get(self, chain_id: str) -> ChainClient: ...


@dataclass
class IndexerStats:
    """Counters for one indexing pass."""

    contracts_scanned: int = 0
    contracts_failed: int = 0
    windows_scanned: int = 0
    logs_seen: int = 0
    logs_consumed: int = 0
    logs_skipped: int = 0

    def merge(self, other: IndexerStats) -> None:
        self.contracts_scanned += other.contracts_scanned
        self.contracts_failed += other.contracts_failed
        self.windows_scanned += other.windows_scanned
        self.logs_seen += other.logs_seen
        self.logs_consumed += other.logs_consumed
        self.logs_skipped += other.logs_skipped


class LogScanner:
    """Scans registry contracts and feeds their logs to consumers.

    Example:
        ```python
        scanner = LogScanner(db.get_async_session, clients, window_blocks=5000)
        stats = await scanner.scan_all()
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        clients: ChainClientSource,
        *,
        window_blocks: int = 5000,
        confirmations: int = 0,
        window_pause_seconds: float = 0.0,
        beacon_names: frozenset[str] | None = None,
    ) -> None:
        if window_blocks < 1:
            raise ValueError("window_blocks must be >= 1")
        if confirmations < 0:
            raise ValueError("confirmations must be >= 0")
        self._session_factory = session_factory
        self._clients = clients
        self._window_blocks = window_blocks
        self._confirmations = confirmations
        self._window_pause = window_pause_seconds
        self._beacon_names = beacon_names

    async def scan_all(self) -> IndexerStats:
        """Scan every enabled registry contract.

        Chains are scanned concurrently; contracts within a chain run one
        after another. A failing contract is logged and counted, and does
        not stop the others.
        """
        async with self._session_factory() as session:
            contracts = await ContractRepository(session).list_enabled(kinds=INDEXED_KINDS)

        by_chain: dict[str, list[MonitoredContractDTO]] = defaultdict(list)
        for contract in contracts:
            by_chain[contract.chain_id].append(contract)

        results = await asyncio.gather(
            *(self._scan_chain(chain_id, items) for chain_id, items in sorted(by_chain.items()))
        )

        stats = IndexerStats()
        for result in results:
            stats.merge(result)
        logger.info(
            "Indexing pass done: contracts=%d failed=%d windows=%d logs=%d consumed=%d skipped=%d",
            stats.contracts_scanned,
            stats.contracts_failed,
            stats.windows_scanned,
            stats.logs_seen,
            stats.logs_consumed,
            stats.logs_skipped,
        )
        return stats

    async def _scan_chain(self, chain_id: str, contracts: list[MonitoredContractDTO]) -> IndexerStats:
        stats = IndexerStats()
        try:
            client = self._clients.get(chain_id)
            head = await self.safe_head(client)
        except ChainClientError as e:
            logger.error("Skipping chain %s: %s: %s", chain_id, type(e).__name__, e)
            stats.contracts_failed += len(contracts)
            return stats

        for contract in contracts:
            try:
                stats.merge(await self.scan_contract(client, contract, head=head))
            except Exception as e:
                stats.contracts_failed += 1
                logger.error(
                    "Scan failed for contract_id=%d (%s %s): %s: %s",
                    contract.id,
                    chain_id,
                    contract.address_lower,
                    type(e).__name__,
                    e,
                )
        return stats

    async def safe_head(self, client: ChainClient) -> int:
        """Chain head minus the configured confirmation depth."""
        head = await client.get_block_number()
        return max(0, head - self._confirmations)

    async def scan_contract(
        self,
        client: ChainClient,
        contract: MonitoredContractDTO,
        *,
        head: int | None = None,
    ) -> IndexerStats:
        """Scan one contract from its cursor up to ``head``.

        Raises:
            IndexerError: If a window fetch fails; the cursor stays at the
                last fully processed window.
        """
        stats = IndexerStats()
        consumer = consumer_for(contract, beacon_names=self._beacon_names)
        if consumer is None:
            return stats

        if head is None:
            head = await self.safe_head(client)

        cursor = await self._resolve_cursor(client, contract, head)
        if cursor is None:
            return stats

        stats.contracts_scanned += 1
        start = cursor.last_scanned_block
        if start > head:
            return stats

        for from_block in range(start, head + 1, self._window_blocks):
            to_block = min(from_block + self._window_blocks - 1, head)
            await self._scan_window(client, contract, consumer, from_block, to_block, stats)
            if self._window_pause > 0 and to_block < head:
                await asyncio.sleep(self._window_pause)

        logger.debug(
            "Scanned contract_id=%d %s blocks %d..%d",
            contract.id,
            contract.address_lower,
            start,
            head,
        )
        return stats

    async def _resolve_cursor(
        self,
        client: ChainClient,
        contract: MonitoredContractDTO,
        head: int,
    ) -> ScanCursorDTO | None:
        async with self._session_factory() as session:
            cursor = await ScanCursorRepository(session).get(contract.id)
        if cursor is not None:
            return cursor

        start_block = contract.default_start_block
        if start_block is None:
            start_block = await find_creation_block(client, contract.address_eip55, head=head)
            if start_block is None:
                logger.warning(
                    "Contract %s on %s has no code yet; skipping",
                    contract.address_lower,
                    contract.chain_id,
                )
                return None

        async with self._session_factory() as session:
            cursor = await ScanCursorRepository(session).ensure(contract.id, start_block)
        logger.info(
            "Initialized scan cursor for contract_id=%d at block %d",
            contract.id,
            cursor.start_block,
        )
        return cursor

    async def _scan_window(
        self,
        client: ChainClient,
        contract: MonitoredContractDTO,
        consumer: LogConsumer,
        from_block: int,
        to_block: int,
        stats: IndexerStats,
    ) -> None:
        try:
            logs = await client.get_logs(
                {
                    "address": contract.address_eip55,
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "topics": [consumer.topic0],
                }
            )
        except ChainClientError as e:
            raise IndexerError(
                f"get_logs failed for contract_id={contract.id} blocks {from_block}..{to_block}: {e}"
            ) from e

        stats.logs_seen += len(logs)
        ordered: list[tuple[tuple[int, int], dict[str, Any]]] = []
        for log in logs:
            try:
                ordered.append((log_position(log), log))
            except LogDecodeError as e:
                stats.logs_skipped += 1
                logger.warning("Skipping log without position in contract_id=%d: %s", contract.id, e)
        ordered.sort(key=lambda item: item[0])

        async with self._session_factory() as session:
            for (block_number, log_index), log in ordered:
                try:
                    await consumer.consume(session, contract, log)
                except LogDecodeError as e:
                    stats.logs_skipped += 1
                    logger.warning(
                        "Skipping undecodable log contract_id=%d block=%d idx=%d: %s",
                        contract.id,
                        block_number,
                        log_index,
                        e,
                    )
                    continue
                stats.logs_consumed += 1
            await ScanCursorRepository(session).advance(contract.id, to_block)

        stats.windows_scanned += 1
