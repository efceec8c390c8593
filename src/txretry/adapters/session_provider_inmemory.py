"""In-memory implementation of SessionProviderPort over an optimistic store.

The store validates every transaction's read set at commit time, like a
serializable MVCC database: if any key read by the transaction was
committed by somebody else in the meantime, the commit is refused with
SQLSTATE 40001 and nothing is applied. Suitable for tests and for the
hot-account simulation; not a database.
"""
from __future__ import annotations

import asyncio
import itertools
import threading
from typing import Any, Dict, Optional, Tuple

from txretry.core.exceptions import SessionAcquisitionError
from txretry.core.interfaces.session_provider import SessionProviderPort


class SerializationFailure(Exception):
    """Commit refused because a read key changed since it was read."""

    sqlstate = "40001"


class SessionClosedError(ConnectionError):
    """Session used after it was handed back to its provider."""


class InMemoryVersionedStore:
    """Key/value store with per-key versions and read-set validation."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Tuple[Any, int]] = {
            key: (value, 1) for key, value in (initial or {}).items()
        }
        self._lock = threading.Lock()
        self.commits = 0
        self.conflicts = 0

    def read(self, key: str) -> Tuple[Any, int]:
        """Return (value, version); version 0 means the key does not exist."""
        with self._lock:
            return self._data.get(key, (None, 0))

    def get(self, key: str, default: Any = None) -> Any:
        value, version = self.read(key)
        return value if version else default

    def put(self, key: str, value: Any) -> None:
        """Write outside any transaction (seeding/resetting)."""
        with self._lock:
            _, version = self._data.get(key, (None, 0))
            self._data[key] = (value, version + 1)

    def commit(self, read_set: Dict[str, int], writes: Dict[str, Any]) -> None:
        with self._lock:
            for key, seen_version in read_set.items():
                _, current = self._data.get(key, (None, 0))
                if current != seen_version:
                    self.conflicts += 1
                    raise SerializationFailure(
                        f"restart transaction: key {key!r} changed (read v{seen_version}, now v{current})"
                    )
            for key, value in writes.items():
                _, version = self._data.get(key, (None, 0))
                self._data[key] = (value, version + 1)
            self.commits += 1


class InMemorySession:
    """Transactional handle on an InMemoryVersionedStore.

    Every operation yields to the event loop (optionally sleeping `latency`
    seconds) so that concurrent sessions interleave like network round trips.
    """

    def __init__(self, store: InMemoryVersionedStore, session_id: int, latency: float = 0.0) -> None:
        self.store = store
        self.session_id = session_id
        self.latency = latency
        self.closed = False
        self._read_set: Dict[str, int] = {}
        self._writes: Dict[str, Any] = {}
        self._in_transaction = False

    async def _round_trip(self) -> None:
        if self.closed:
            raise SessionClosedError(f"session {self.session_id} is closed")
        await asyncio.sleep(self.latency)

    async def begin(self) -> None:
        await self._round_trip()
        self._read_set.clear()
        self._writes.clear()
        self._in_transaction = True

    async def get(self, key: str, default: Any = None) -> Any:
        await self._round_trip()
        if key in self._writes:
            return self._writes[key]
        value, version = self.store.read(key)
        self._read_set.setdefault(key, version)
        return value if version else default

    async def put(self, key: str, value: Any) -> None:
        await self._round_trip()
        if not self._in_transaction:
            raise RuntimeError("put() outside of a transaction; call begin() first")
        self._writes[key] = value

    async def commit(self) -> None:
        await self._round_trip()
        try:
            self.store.commit(dict(self._read_set), dict(self._writes))
        finally:
            self._read_set.clear()
            self._writes.clear()
            self._in_transaction = False

    async def rollback(self) -> None:
        await self._round_trip()
        self._read_set.clear()
        self._writes.clear()
        self._in_transaction = False

    def close(self) -> None:
        self._read_set.clear()
        self._writes.clear()
        self._in_transaction = False
        self.closed = True


class InMemorySessionProvider(SessionProviderPort[InMemorySession]):
    """Hands out a new InMemorySession per acquire and keeps lifecycle counters.

    Args:
        store: Shared store all sessions operate on
        latency: Simulated round-trip time per session operation
        acquisition_failures: Number of leading acquire() calls that fail
    """

    name = "in-memory"

    def __init__(
        self,
        store: InMemoryVersionedStore,
        latency: float = 0.0,
        acquisition_failures: int = 0,
    ) -> None:
        self.store = store
        self.latency = latency
        self._failures_left = acquisition_failures
        self._ids = itertools.count(1)
        self.acquired = 0
        self.released = 0
        self.broken = 0

    @property
    def outstanding(self) -> int:
        return self.acquired - self.released

    async def acquire(self) -> InMemorySession:
        await asyncio.sleep(0)
        if self._failures_left > 0:
            self._failures_left -= 1
            raise SessionAcquisitionError("no session available", provider_name=self.name)
        self.acquired += 1
        return InMemorySession(self.store, next(self._ids), self.latency)

    async def release(self, session: InMemorySession, broken: bool = False) -> None:
        if session.closed:
            raise RuntimeError(f"session {session.session_id} released twice")
        session.close()
        self.released += 1
        if broken:
            self.broken += 1
