"""Chain log indexer - creation-block discovery, windowed scans and consumers."""

from position_sentinel.indexer.consumers import (
    ERC721TransferConsumer,
    LogConsumer,
    LogDecodeError,
    VaultCreatedConsumer,
    consumer_for,
)
from position_sentinel.indexer.discovery import find_creation_block
from position_sentinel.indexer.scanner import IndexerError, IndexerStats, LogScanner

__all__ = [
    "ERC721TransferConsumer",
    "IndexerError",
    "IndexerStats",
    "LogConsumer",
    "LogDecodeError",
    "LogScanner",
    "VaultCreatedConsumer",
    "consumer_for",
    "find_creation_block",
]
