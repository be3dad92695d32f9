"""Per-permit mutual exclusion.

Every lifecycle operation holds its permit's lock from the first read of
``status`` until the resulting state is committed.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional

from .errors import ConcurrencyConflict


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class PermitLockRegistry:
    """
    Hands out one lock per permit id.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the registry only grows with the number of permits currently
    being written.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Permit id
            timeout: Seconds to wait before giving up; None waits forever

        Raises:
            ConcurrencyConflict: If the lock could not be acquired in time
        """
        entry = self._checkout(key)
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise ConcurrencyConflict(
                    f"Timed out after {timeout}s waiting for permit {key}",
                    permit_id=key,
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def is_locked(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: Hashable) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _LockEntry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]
