"""
Per-Loan Locking Module

Serializes mutations scoped to a single loan (schedule generation, payments
that may complete the loan) while leaving different loans free to proceed
in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict


class LoanLockRegistry:
    """Hands out one re-entrant lock per loan id"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get_lock(self, loan_id: str) -> threading.RLock:
        """Get (creating on first use) the lock for a loan"""
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            return lock

    @contextmanager
    def hold(self, loan_id: str):
        """Context manager holding the loan's lock"""
        lock = self.get_lock(loan_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
