"""Cross-process named locks backed by marker files.

A lock ``name`` is the file ``<lock_dir>/<name>.lock`` holding
``{"pid": ..., "acquired_at": ...}``. Acquisition is three-way:

- ``ACQUIRED``: no marker existed.
- ``STALE_RECLAIMED``: a marker existed but its owner process is gone
  (checked first) or it is older than the staleness age.
- ``CONTENDED``: a live, fresh marker is in place, or the filesystem
  refused the operation.

Neither acquire nor release raises; failures are logged.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=30)


class AcquireOutcome(str, Enum):
    ACQUIRED = "ACQUIRED"
    CONTENDED = "CONTENDED"
    STALE_RECLAIMED = "STALE_RECLAIMED"

    @property
    def held(self) -> bool:
        return self is not AcquireOutcome.CONTENDED


@dataclass(frozen=True)
class LockHandle:
    """Owner record persisted in the marker file."""

    pid: int
    acquired_at: datetime

    def to_json(self) -> str:
        return json.dumps({"pid": self.pid, "acquired_at": self.acquired_at.isoformat()})

    @classmethod
    def from_json(cls, raw: str) -> LockHandle | None:
        try:
            data = json.loads(raw)
            pid = int(data["pid"])
            acquired_at = datetime.fromisoformat(data["acquired_at"])
        except (ValueError, KeyError, TypeError):
            return None
        if pid <= 0:
            return None
        if acquired_at.tzinfo is None:
            acquired_at = acquired_at.replace(tzinfo=UTC)
        return cls(pid=pid, acquired_at=acquired_at)


def is_pid_alive(pid: int) -> bool:
    """Liveness probe via signal 0; a permission error means the process exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class FileLock:
    """Named locks under one directory.

    Example:
        ```python
        locks = FileLock("locks", stale_after=timedelta(minutes=30))
        async with locks.hold("snapshot-refresh") as outcome:
            if outcome.held:
                await refresh()
        ```
    """

    def __init__(self, lock_dir: str | Path, *, stale_after: timedelta = DEFAULT_STALE_AFTER) -> None:
        self.lock_dir = Path(lock_dir)
        self.stale_after = stale_after

    def path_for(self, name: str) -> Path:
        if not name or "/" in name or name.startswith("."):
            raise ValueError(f"Invalid lock name: {name!r}")
        return self.lock_dir / f"{name}.lock"

    def read(self, name: str) -> LockHandle | None:
        """Current owner record, or None when absent or unreadable."""
        try:
            return LockHandle.from_json(self.path_for(name).read_text(encoding="utf-8"))
        except OSError:
            return None

    def acquire(self, name: str) -> AcquireOutcome:
        """Try to take the lock without blocking."""
        try:
            path = self.path_for(name)
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except (OSError, ValueError) as e:
            logger.error("Lock %s unavailable: %s", name, e)
            return AcquireOutcome.CONTENDED

        reclaimed = False
        if path.exists():
            if not self._is_reclaimable(name, path):
                return AcquireOutcome.CONTENDED
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove stale lock %s: %s", path, e)
                return AcquireOutcome.CONTENDED
            reclaimed = True

        if not self._create(path):
            return AcquireOutcome.CONTENDED
        return AcquireOutcome.STALE_RECLAIMED if reclaimed else AcquireOutcome.ACQUIRED

    def _is_reclaimable(self, name: str, path: Path) -> bool:
        handle = self.read(name)
        if handle is not None and not is_pid_alive(handle.pid):
            logger.warning("Reclaiming lock %s from dead pid %d", path, handle.pid)
            return True

        if handle is not None:
            age = (datetime.now(UTC) - handle.acquired_at).total_seconds()
        else:
            # Unreadable marker: fall back to the file timestamp
            try:
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                return True
            except OSError as e:
                logger.warning("Cannot stat lock %s: %s", path, e)
                return False

        if age >= self.stale_after.total_seconds():
            logger.warning("Reclaiming stale lock %s (age %.0fs)", path, age)
            return True
        return False

    def _create(self, path: Path) -> bool:
        handle = LockHandle(pid=os.getpid(), acquired_at=datetime.now(UTC))
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            logger.error("Failed to create lock %s: %s", path, e)
            return False
        try:
            try:
                os.write(fd, handle.to_json().encode("utf-8"))
            finally:
                os.close(fd)
        except OSError as e:
            logger.error("Failed to write lock %s: %s", path, e)
            with suppress(OSError):
                path.unlink()
            return False
        return True

    def release(self, name: str) -> None:
        """Remove the marker if this process owns it."""
        try:
            path = self.path_for(name)
        except ValueError as e:
            logger.error("Lock release failed: %s", e)
            return
        handle = self.read(name)
        if handle is not None and handle.pid != os.getpid():
            logger.warning("Not releasing lock %s owned by pid %d", path, handle.pid)
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to release lock %s: %s", path, e)

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[AcquireOutcome]:
        """Acquire ``name`` for the block; released on exit only if it was taken."""
        outcome = self.acquire(name)
        try:
            yield outcome
        finally:
            if outcome.held:
                self.release(name)
