"""psycopg2 implementation of SessionProviderPort.

Sessions are raw DBAPI connections from a `ThreadedConnectionPool`.
`getconn`/`putconn` may block, so they run in worker threads. The pool
rolls back any transaction left open on `putconn` and closes connections
handed back with `close=True`, which is how broken sessions are discarded.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import psycopg2
import psycopg2.pool
from psycopg2.extensions import ISOLATION_LEVEL_SERIALIZABLE, connection as PgConnection

from txretry.core.exceptions import SessionAcquisitionError
from txretry.core.interfaces.session_provider import SessionProviderPort

logger = logging.getLogger(__name__)

# Connection-level failures reported by libpq carry no SQLSTATE
PSYCOPG2_BROKEN_TYPES = (psycopg2.OperationalError, psycopg2.InterfaceError)


def create_pool_from_settings(settings) -> psycopg2.pool.ThreadedConnectionPool:
    """Build a thread-safe connection pool from TxRetrySettings."""
    return psycopg2.pool.ThreadedConnectionPool(
        minconn=1,
        maxconn=settings.TXRETRY_POOL_SIZE,
        dbname=settings.TXRETRY_DATABASE_NAME,
        host=settings.TXRETRY_DATABASE_HOST,
        port=settings.TXRETRY_DATABASE_PORT,
        user=settings.TXRETRY_DATABASE_USER,
        password=settings.TXRETRY_DATABASE_PASSWORD.get_secret_value() or None,
        sslmode=settings.TXRETRY_DATABASE_SSLMODE,
    )


class Psycopg2SessionProvider(SessionProviderPort[PgConnection]):
    """Checks out one pooled psycopg2 connection per attempt.

    Args:
        pool: A thread-safe psycopg2 pool
        isolation_level: psycopg2 isolation constant; None keeps the server default
    """

    name = "psycopg2"

    def __init__(
        self,
        pool: psycopg2.pool.AbstractConnectionPool,
        isolation_level: Optional[int] = ISOLATION_LEVEL_SERIALIZABLE,
    ) -> None:
        self._pool = pool
        self._isolation_level = isolation_level

    def _getconn(self) -> PgConnection:
        conn = self._pool.getconn()
        try:
            if self._isolation_level is not None:
                conn.set_session(isolation_level=self._isolation_level, autocommit=False)
        except psycopg2.Error:
            self._pool.putconn(conn, close=True)
            raise
        return conn

    async def acquire(self) -> PgConnection:
        try:
            return await asyncio.to_thread(self._getconn)
        except (psycopg2.pool.PoolError, psycopg2.Error) as exc:
            raise SessionAcquisitionError(
                f"Could not get a connection from the pool: {exc}", provider_name=self.name
            ) from exc

    async def release(self, conn: PgConnection, broken: bool = False) -> None:
        await asyncio.to_thread(self._pool.putconn, conn, None, broken or bool(conn.closed))
        logger.debug(f"[provider:psycopg2] released connection broken={broken}")

    def close(self) -> None:
        """Close the connection pool."""
        try:
            self._pool.closeall()
            logger.info("Connection pool closed.")
        except psycopg2.pool.PoolError as e:
            logger.warning("Connection pool is already closed: %s", e)
