"""Contract creation-block discovery."""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class CodeProbe(Protocol):
    async def get_block_number(self) -> int: ...

    async def has_code(self, address: str, block: int | str = "latest") -> bool: ...


async def find_creation_block(client: CodeProbe, address: str, *, head: int | None = None) -> int | None:
    """Find the first block at which ``address`` holds contract code.

    Code presence is monotonic in the block number (once deployed, code stays
    at every later block), so a binary search over ``[0, head]`` needs
    ``O(log head)`` probes.

    Args:
        client: Chain client exposing ``has_code`` and ``get_block_number``.
        address: Contract address.
        head: Upper bound of the search; defaults to the current chain head.

    Returns:
        The creation block, or None if the address has no code at ``head``.
    """
    if head is None:
        head = await client.get_block_number()

    if not await client.has_code(address, head):
        logger.warning("No code at %s on head block %d", address, head)
        return None

    lo, hi = 0, head
    probes = 1
    while lo < hi:
        mid = (lo + hi) // 2
        probes += 1
        if await client.has_code(address, mid):
            hi = mid
        else:
            lo = mid + 1

    logger.info("Creation block for %s: %d (%d probes)", address, lo, probes)
    return lo
