"""Per-scope locks that serialize same-scope operations.

Two operations on the same ledger account (or the same rebuild scope) must not
interleave; operations on different keys never contend. A busy key is
reported as ``ConcurrencyConflict`` instead of queueing indefinitely, and the
caller decides whether to retry.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from siteledger.config import get_settings
from siteledger.errors import ConcurrencyConflict
from siteledger.models import Scope

logger = logging.getLogger(__name__)


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def scope_key(scope: Scope) -> str:
    return f"scope:{scope.key}"


def account_scope_keys(account_id: str, site_ids: Iterable[str]) -> List[str]:
    """Lock keys of the group scope and every site scope of an account."""
    keys = [scope_key(Scope(account_id=account_id))]
    keys += [scope_key(Scope(account_id=account_id, site_id=site)) for site in site_ids]
    return keys


class ScopeLockManager:
    """Hands out one re-entrant lock per key.

    Locks are re-entrant so a thread already holding a key (for example a
    merge that recomputes the account it holds) can take it again.

    Example:
        ```python
        locks = ScopeLockManager(timeout_seconds=0.5)
        with locks.hold(account_key("shop-1")):
            ...  # other threads get ConcurrencyConflict for this key
        ```
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        """Initialize the lock manager.

        Args:
            timeout_seconds: How long to wait for a busy key; 0 fails at once.
                Defaults to ``Settings.lock_timeout_seconds``.
        """
        if timeout_seconds is None:
            timeout_seconds = get_settings().lock_timeout_seconds
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def _acquire(self, key: str) -> threading.RLock:
        lock = self._lock_for(key)
        if self.timeout_seconds > 0:
            acquired = lock.acquire(timeout=self.timeout_seconds)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            logger.warning("Scope busy", extra={"lock_key": key})
            raise ConcurrencyConflict(key)
        return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Raises:
            ConcurrencyConflict: If another thread holds the key past the timeout
        """
        lock = self._acquire(key)
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def hold_all(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold several keys at once, acquired in sorted order.

        Keys already taken are released again if a later one is busy.
        """
        held = []
        try:
            for key in sorted(set(keys)):
                held.append(self._acquire(key))
            yield
        finally:
            for lock in reversed(held):
                lock.release()
