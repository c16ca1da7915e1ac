"""Lease module for cluster-wide mutual exclusion.

Leases live in the shared SQLite database. Acquisition is a single atomic
upsert, so any number of processes pointing at the same database file can
compete for a lease safely.

A lease is held for at least min_hold even when released earlier, and
expires on its own after max_hold so a crashed holder cannot block others.
"""

import logging
import socket
import time
from dataclasses import dataclass
from typing import Optional

import database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """A granted lease.

    Times are epoch milliseconds, hold durations are seconds.
    """
    lock_key: str
    acquired_at: int
    min_hold_seconds: float
    max_hold_seconds: float
    holder: str

    @property
    def min_hold_until(self) -> int:
        return self.acquired_at + int(self.min_hold_seconds * 1000)

    @property
    def max_hold_until(self) -> int:
        return self.acquired_at + int(self.max_hold_seconds * 1000)


def _now_millis() -> int:
    return int(time.time() * 1000)


class LeaseProvider:
    """Acquires and releases leases stored in the SQLite database."""

    def __init__(self, db_path: str, holder: Optional[str] = None) -> None:
        """Initialize the lease provider.

        Args:
            db_path: Path to the SQLite database file
            holder: Name recorded as lease holder (default: hostname)
        """
        self._db_path = db_path
        self._holder = holder or socket.gethostname()

    @property
    def holder(self) -> str:
        return self._holder

    def acquire(
        self,
        lock_key: str,
        min_hold_seconds: float,
        max_hold_seconds: float,
        now: Optional[int] = None,
    ) -> Optional[Lease]:
        """Try to acquire a lease without waiting.

        Args:
            lock_key: Lease key
            min_hold_seconds: Minimum time the lease stays held
            max_hold_seconds: Time after which the lease expires on its own
            now: Current epoch milliseconds (default: wall clock)

        Returns:
            The Lease, or None if another holder has it
        """
        if now is None:
            now = _now_millis()

        lease = Lease(
            lock_key=lock_key,
            acquired_at=now,
            min_hold_seconds=min_hold_seconds,
            max_hold_seconds=max_hold_seconds,
            holder=self._holder,
        )

        conn = database.get_connection(self._db_path)
        try:
            acquired = database.try_acquire_lease(
                conn, lock_key, now, lease.max_hold_until, self._holder
            )
        finally:
            conn.close()

        if not acquired:
            return None

        logger.debug(f"Acquired lease {lock_key} until {lease.max_hold_until}")
        return lease

    def release(self, lease: Lease, now: Optional[int] = None) -> None:
        """Release a lease, keeping it held until its minimum hold has passed.

        Args:
            lease: Lease returned by acquire()
            now: Current epoch milliseconds (default: wall clock)
        """
        if now is None:
            now = _now_millis()

        unlock_at = max(now, lease.min_hold_until)

        conn = database.get_connection(self._db_path)
        try:
            released = database.release_lease(
                conn, lease.lock_key, lease.acquired_at, lease.holder, unlock_at
            )
        finally:
            conn.close()

        if not released:
            logger.warning(
                f"Lease {lease.lock_key} was taken over before release "
                f"(held past its maximum of {lease.max_hold_seconds}s)"
            )
