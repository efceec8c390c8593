"""SQLAlchemy implementation of SessionProviderPort.

Sessions are `sqlalchemy.engine.Connection` objects checked out from the
engine's pool. Blocking driver calls run in worker threads
(`asyncio.to_thread`) so that a transaction in flight or a pool wait never
blocks other executions on the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DisconnectionError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from txretry.core.exceptions import SessionAcquisitionError
from txretry.core.interfaces.session_provider import SessionProviderPort

logger = logging.getLogger(__name__)

# Exception types that mean "this connection is gone" even without a SQLSTATE
SQLALCHEMY_BROKEN_TYPES = (DisconnectionError, PoolTimeoutError)


def create_engine_from_settings(settings) -> Engine:
    """Build a pooled engine from TxRetrySettings."""
    return create_engine(
        settings.TXRETRY_DATABASE_URL,
        pool_size=settings.TXRETRY_POOL_SIZE,
        max_overflow=0,  # the pool size is the concurrency ceiling
        pool_timeout=settings.TXRETRY_POOL_TIMEOUT,
        pool_pre_ping=True,
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


class SqlAlchemySessionProvider(SessionProviderPort[Connection]):
    """Checks out one pooled connection per attempt.

    Args:
        engine: Configured SQLAlchemy engine (pooling is the engine's concern)
        isolation_level: Applied to every connection; None keeps the engine default
    """

    name = "sqlalchemy"

    def __init__(self, engine: Engine, isolation_level: Optional[str] = "SERIALIZABLE") -> None:
        self._engine = engine
        self._isolation_level = isolation_level

    def _connect(self) -> Connection:
        connection = self._engine.connect()
        if self._isolation_level:
            connection = connection.execution_options(isolation_level=self._isolation_level)
        return connection

    async def acquire(self) -> Connection:
        try:
            return await asyncio.to_thread(self._connect)
        except SQLAlchemyError as exc:
            raise SessionAcquisitionError(
                f"Could not check out a connection: {exc}", provider_name=self.name
            ) from exc

    @staticmethod
    def _close(connection: Connection, broken: bool) -> None:
        if broken:
            # drop the DBAPI connection instead of returning it to the pool
            connection.invalidate()
        connection.close()

    async def release(self, connection: Connection, broken: bool = False) -> None:
        await asyncio.to_thread(self._close, connection, broken)
        logger.debug(f"[provider:sqlalchemy] released connection broken={broken}")

    def dispose(self) -> None:
        self._engine.dispose()
