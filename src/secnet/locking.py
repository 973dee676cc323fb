"""
Named locks used to serialize writers on a single consent request.

Usage:
    locks = LocalLockManager()

    with locks.lock(f"consent:{request_id}", timeout=10):
        apply_transition()

A lock that cannot be acquired in time raises TransientError, so callers
see a retryable failure rather than an internal one.
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import TransientError


@dataclass
class LockInfo:
    """Information about a held lock."""
    name: str
    holder_id: str
    acquired_at: float


class LockManager(ABC):
    """Interface for named lock managers."""

    @abstractmethod
    def acquire(self, name: str, timeout: float = 30.0) -> bool:
        """
        Acquire a named lock.

        Returns:
            True if lock acquired, False on timeout
        """

    @abstractmethod
    def release(self, name: str) -> bool:
        """Release a named lock. Returns False if the caller does not hold it."""

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""

    @contextmanager
    def lock(self, name: str, timeout: float = 30.0):
        """
        Context manager for acquiring a lock.

        Raises:
            TransientError: If lock cannot be acquired within timeout
        """
        if not self.acquire(name, timeout=timeout):
            raise TransientError(
                f"Could not acquire lock '{name}' within {timeout}s",
                details={"lock": name},
            )
        try:
            yield
        finally:
            self.release(name)

    def get_info(self, name: str) -> Optional[LockInfo]:
        return None


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0  # threads holding or waiting
    depth: int = 0  # re-entry count of the holder
    owner: Optional[int] = None
    info: Optional[LockInfo] = None


class LocalLockManager(LockManager):
    """
    Thread-based lock manager for single-instance deployments.

    Locks are reentrant so a holder may re-enter (e.g. lazy expiry inside
    an approve call). An entry lives only while some thread holds or waits
    for it.
    """

    def __init__(self):
        self._entries: Dict[str, _LockEntry] = {}
        self._meta_lock = threading.Lock()
        self._instance_id = str(uuid.uuid4())[:8]

    def _checkout(self, name: str) -> _LockEntry:
        with self._meta_lock:
            entry = self._entries.get(name)
            if entry is None:
                entry = self._entries[name] = _LockEntry()
            entry.users += 1
            return entry

    def _checkin(self, name: str, entry: _LockEntry) -> None:
        with self._meta_lock:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(name) is entry:
                del self._entries[name]

    def acquire(self, name: str, timeout: float = 30.0) -> bool:
        entry = self._checkout(name)
        if not entry.lock.acquire(timeout=timeout):
            self._checkin(name, entry)
            return False

        entry.depth += 1
        if entry.depth == 1:
            entry.owner = threading.get_ident()
            entry.info = LockInfo(
                name=name,
                holder_id=f"{self._instance_id}:{threading.current_thread().name}",
                acquired_at=time.time(),
            )
        return True

    def release(self, name: str) -> bool:
        with self._meta_lock:
            entry = self._entries.get(name)
        if entry is None or entry.owner != threading.get_ident():
            return False

        entry.depth -= 1
        if entry.depth == 0:
            entry.owner = None
            entry.info = None
        entry.lock.release()
        self._checkin(name, entry)
        return True

    def is_locked(self, name: str) -> bool:
        with self._meta_lock:
            entry = self._entries.get(name)
            return entry is not None and entry.owner is not None

    def get_info(self, name: str) -> Optional[LockInfo]:
        with self._meta_lock:
            entry = self._entries.get(name)
            return entry.info if entry is not None else None

    def active_count(self) -> int:
        """Number of names currently held or waited on."""
        with self._meta_lock:
            return len(self._entries)
