"""
Per-loan locks.

Serialise read-then-write sequences on one loan (balance check before
a payment insert, settlement check before auto-return). Single
transitions do not need them: storage applies those as compare-and-swap.
"""

import asyncio


class LoanLocks:
    """Registry of asyncio locks keyed by loan id."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def for_loan(self, loan_id: str) -> asyncio.Lock:
        lock = self._locks.get(loan_id)
        if lock is None:
            lock = self._locks[loan_id] = asyncio.Lock()
        return lock

    def discard(self, loan_id: str) -> None:
        """Forget the lock of a deleted loan unless someone still holds it."""
        lock = self._locks.get(loan_id)
        if lock is not None and not lock.locked():
            del self._locks[loan_id]

    def __len__(self) -> int:
        return len(self._locks)
