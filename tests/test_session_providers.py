"""Session provider adapters: psycopg2 pool (mocked) and SQLAlchemy over SQLite."""

import asyncio
import threading
from decimal import Decimal
from unittest.mock import MagicMock, Mock

import psycopg2
import psycopg2.pool
import pytest
from psycopg2.extensions import ISOLATION_LEVEL_SERIALIZABLE
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

from txretry.adapters.session_provider_inmemory import (
    InMemorySessionProvider,
    InMemoryVersionedStore,
    SessionClosedError,
)
from txretry.adapters.session_provider_psycopg2 import Psycopg2SessionProvider
from txretry.adapters.session_provider_sqlalchemy import (
    SQLALCHEMY_BROKEN_TYPES,
    SqlAlchemySessionProvider,
)
from txretry.adapters.sync_unit_of_work import run_sync
from txretry.core.config import BackoffConfig
from txretry.core.exceptions import SessionAcquisitionError
from txretry.core.managers.error_classifier import default_classifier
from txretry.core.managers.retry_executor import RetryExecutor
from txretry.core.models.result import FailureKind, Success
from txretry.scenarios.hot_account import Psycopg2Ledger

from fakes import RecordingSleep


# --- psycopg2 ---

@pytest.fixture
def pg_conn():
    conn = Mock()
    conn.closed = 0
    return conn


@pytest.fixture
def pg_pool(pg_conn):
    pool = Mock()
    pool.getconn.return_value = pg_conn
    return pool


class TestPsycopg2Provider:
    async def test_acquire_sets_serializable_session(self, pg_pool, pg_conn):
        provider = Psycopg2SessionProvider(pg_pool)

        conn = await provider.acquire()

        assert conn is pg_conn
        pg_conn.set_session.assert_called_once_with(
            isolation_level=ISOLATION_LEVEL_SERIALIZABLE, autocommit=False
        )

    async def test_release_returns_connection(self, pg_pool, pg_conn):
        provider = Psycopg2SessionProvider(pg_pool)

        await provider.release(pg_conn)

        pg_pool.putconn.assert_called_once_with(pg_conn, None, False)

    async def test_broken_release_closes_connection(self, pg_pool, pg_conn):
        provider = Psycopg2SessionProvider(pg_pool)

        await provider.release(pg_conn, broken=True)

        pg_pool.putconn.assert_called_once_with(pg_conn, None, True)

    async def test_closed_connection_is_discarded(self, pg_pool, pg_conn):
        pg_conn.closed = 2
        provider = Psycopg2SessionProvider(pg_pool)

        await provider.release(pg_conn)

        pg_pool.putconn.assert_called_once_with(pg_conn, None, True)

    async def test_exhausted_pool_raises_acquisition_error(self, pg_pool):
        pg_pool.getconn.side_effect = psycopg2.pool.PoolError("connection pool exhausted")
        provider = Psycopg2SessionProvider(pg_pool)

        with pytest.raises(SessionAcquisitionError) as exc_info:
            await provider.acquire()

        assert exc_info.value.provider_name == "psycopg2"
        assert isinstance(exc_info.value.__cause__, psycopg2.pool.PoolError)

    async def test_failed_session_setup_discards_connection(self, pg_pool, pg_conn):
        pg_conn.set_session.side_effect = psycopg2.OperationalError("server closed the connection")
        provider = Psycopg2SessionProvider(pg_pool)

        with pytest.raises(SessionAcquisitionError):
            await provider.acquire()

        pg_pool.putconn.assert_called_once_with(pg_conn, close=True)

    async def test_without_isolation_level(self, pg_pool, pg_conn):
        provider = Psycopg2SessionProvider(pg_pool, isolation_level=None)

        await provider.acquire()

        pg_conn.set_session.assert_not_called()

    def test_close_tolerates_closed_pool(self, pg_pool):
        pg_pool.closeall.side_effect = psycopg2.pool.PoolError("connection pool is closed")

        Psycopg2SessionProvider(pg_pool).close()


# --- SQLAlchemy ---

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'txretry.db'}",
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE counters (name TEXT PRIMARY KEY, value INTEGER NOT NULL)"))
        conn.execute(text("INSERT INTO counters VALUES ('hits', 0)"))
    yield engine
    engine.dispose()


@pytest.fixture
def sa_provider(engine):
    return SqlAlchemySessionProvider(engine)


def bump(conn):
    with conn.begin():
        current = conn.execute(text("SELECT value FROM counters WHERE name = 'hits'")).scalar_one()
        conn.execute(text("UPDATE counters SET value = :v WHERE name = 'hits'"), {"v": current + 1})
    return current + 1


class TestSqlAlchemyProvider:
    async def test_acquire_and_release(self, sa_provider, engine):
        conn = await sa_provider.acquire()

        assert conn.execute(text("SELECT 1")).scalar_one() == 1

        await sa_provider.release(conn)

        assert conn.closed
        assert engine.pool.checkedout() == 0

    async def test_run_sync_executes_in_thread(self, sa_provider):
        conn = await sa_provider.acquire()
        try:
            assert await run_sync(bump)(conn) == 1
        finally:
            await sa_provider.release(conn)

    def test_broken_connection_is_invalidated(self):
        connection = Mock()

        SqlAlchemySessionProvider._close(connection, broken=True)

        connection.invalidate.assert_called_once_with()
        connection.close.assert_called_once_with()

    def test_healthy_connection_is_not_invalidated(self):
        connection = Mock()

        SqlAlchemySessionProvider._close(connection, broken=False)

        connection.invalidate.assert_not_called()
        connection.close.assert_called_once_with()

    async def test_unreachable_database_raises_acquisition_error(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'nope.db'}")
        provider = SqlAlchemySessionProvider(engine)

        with pytest.raises(SessionAcquisitionError) as exc_info:
            await provider.acquire()

        assert exc_info.value.provider_name == "sqlalchemy"


class TestExecutorOverSqlAlchemy:
    @pytest.fixture
    def executor(self, sa_provider):
        return RetryExecutor(
            sa_provider,
            BackoffConfig(max_attempts=3, base_delay=0.0, max_delay=0.0),
            classifier=default_classifier.with_broken_types(*SQLALCHEMY_BROKEN_TYPES),
            sleep=RecordingSleep(),
        )

    async def test_commits_through_engine(self, executor, engine):
        result = await executor.run(run_sync(bump))

        assert isinstance(result, Success)
        assert result.value == 1
        assert engine.pool.checkedout() == 0

    async def test_constraint_violation_is_fatal(self, executor, engine):
        def insert_duplicate(conn):
            with conn.begin():
                conn.execute(text("INSERT INTO counters VALUES ('hits', 1)"))

        result = await executor.run(run_sync(insert_duplicate))

        assert result.kind is FailureKind.fatal
        assert result.attempt_count == 1
        assert isinstance(result.last_error.cause, IntegrityError)
        assert engine.pool.checkedout() == 0

    async def test_cancelled_run_waits_for_worker_before_release(self, executor, engine):
        started = threading.Event()
        proceed = threading.Event()
        seen = {}

        def blocking(conn):
            started.set()
            proceed.wait(5)
            seen["closed"] = conn.closed
            return conn.execute(text("SELECT 1")).scalar_one()

        task = asyncio.create_task(executor.run(run_sync(blocking)))
        await asyncio.to_thread(started.wait, 5)
        task.cancel()
        await asyncio.sleep(0.05)

        # the worker still owns the connection
        assert not task.done()
        assert engine.pool.checkedout() == 1

        proceed.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert seen == {"closed": False}
        assert engine.pool.checkedout() == 0


class TestPsycopg2Ledger:
    @pytest.fixture
    def ledger_conn(self):
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value.fetchone.return_value = (
            "5f0c6f1e-0000-4000-8000-000000000001",
        )
        return conn

    @pytest.fixture
    def ledger_pool(self, ledger_conn):
        pool = Mock()
        pool.getconn.return_value = ledger_conn
        return pool

    async def test_setup_creates_account_and_returns_connection(self, ledger_pool, ledger_conn):
        ledger = Psycopg2Ledger(ledger_pool)

        account_id = await ledger.setup()

        assert account_id == "5f0c6f1e-0000-4000-8000-000000000001"
        cur = ledger_conn.cursor.return_value.__enter__.return_value
        statements = [c.args[0] for c in cur.execute.call_args_list]
        assert statements[0].startswith("CREATE TABLE IF NOT EXISTS accounts")
        assert statements[1].startswith("INSERT INTO accounts")
        ledger_pool.putconn.assert_called_once_with(ledger_conn)

    def test_deposit_requires_setup(self, ledger_pool):
        with pytest.raises(RuntimeError):
            Psycopg2Ledger(ledger_pool).deposit(Decimal("75.00"))

    async def test_deposit_reads_then_writes_in_one_transaction(self, ledger_pool, ledger_conn):
        ledger = Psycopg2Ledger(ledger_pool)
        ledger.account_id = "acct-1"
        conn = MagicMock()
        cur = conn.cursor.return_value.__enter__.return_value
        cur.fetchone.return_value = (Decimal("10.00"),)

        new_balance = await ledger.deposit(Decimal("75.00"))(conn)

        assert new_balance == Decimal("85.00")
        select, update = cur.execute.call_args_list
        assert select.args == ("SELECT balance FROM accounts WHERE account_id = %s", ("acct-1",))
        assert update.args[1] == (Decimal("85.00"), "acct-1")
        conn.__enter__.assert_called_once_with()
        conn.__exit__.assert_called_once()


class TestInMemorySession:
    async def test_session_unusable_after_release(self):
        provider = InMemorySessionProvider(InMemoryVersionedStore())
        session = await provider.acquire()
        await provider.release(session)

        with pytest.raises(SessionClosedError):
            await session.begin()

    async def test_double_release_is_rejected(self):
        provider = InMemorySessionProvider(InMemoryVersionedStore())
        session = await provider.acquire()
        await provider.release(session)

        with pytest.raises(RuntimeError):
            await provider.release(session)

    async def test_put_requires_transaction(self):
        provider = InMemorySessionProvider(InMemoryVersionedStore())
        session = await provider.acquire()

        with pytest.raises(RuntimeError):
            await session.put("k", 1)

    async def test_rollback_discards_writes(self):
        store = InMemoryVersionedStore({"k": 1})
        session = await InMemorySessionProvider(store).acquire()

        await session.begin()
        await session.put("k", 2)
        assert await session.get("k") == 2
        await session.rollback()

        assert store.get("k") == 1
        assert store.commits == 0
