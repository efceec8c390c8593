"""Hot-account contention scenario.

A merchant account receives many concurrent deposits; every deposit reads
the balance, adds the amount and writes it back inside one transaction.
Under optimistic concurrency only one deposit per round commits, the others
are aborted with 40001 and retried as a whole by the executor. The scenario
reports whether every deposit landed exactly once.

More concurrent writers on the same row means more aborted work per round,
so throughput drops as concurrency grows; `compare_concurrency` makes that
visible instead of hiding it.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, TypeVar

import psycopg2.pool
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from txretry.adapters.session_provider_inmemory import InMemorySession, InMemoryVersionedStore
from txretry.adapters.sync_unit_of_work import run_sync
from txretry.core.interfaces.retry import RetryPort
from txretry.core.interfaces.session_provider import UnitOfWork
from txretry.core.models.result import Cancelled, Success, TerminalFailure

T = TypeVar("T")

_CREATE_ACCOUNTS = (
    "CREATE TABLE IF NOT EXISTS accounts ("
    " account_id UUID PRIMARY KEY DEFAULT gen_random_uuid(),"
    " customer_name TEXT NOT NULL,"
    " balance DECIMAL(15,2) NOT NULL DEFAULT 0.00,"
    " updated_at TIMESTAMPTZ NOT NULL DEFAULT now())"
)


class HotAccountReport(BaseModel):
    deposits: int
    concurrency: Optional[int] = None
    succeeded: int
    failed: int
    cancelled: int
    retries: int
    elapsed_seconds: float
    final_balance: Decimal
    expected_balance: Decimal

    @property
    def correct(self) -> bool:
        return self.final_balance == self.expected_balance

    @property
    def throughput(self) -> float:
        """Committed deposits per second."""
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.succeeded / self.elapsed_seconds


class AccountLedger(ABC):
    """Backend-specific pieces of the scenario."""

    @abstractmethod
    def deposit(self, amount: Decimal) -> UnitOfWork:
        """Return a unit of work doing one read-modify-write deposit."""

    @abstractmethod
    async def balance(self) -> Decimal:
        """Read the committed balance outside of the executor."""

    @abstractmethod
    async def reset(self) -> None:
        """Set the balance back to zero."""


class InMemoryLedger(AccountLedger):
    def __init__(self, store: InMemoryVersionedStore, account_id: Optional[str] = None) -> None:
        self.store = store
        self.account_id = account_id or f"account:{uuid.uuid4()}"
        self.store.put(self.account_id, Decimal("0.00"))

    def deposit(self, amount: Decimal) -> UnitOfWork:
        account_id = self.account_id

        async def unit_of_work(session: InMemorySession) -> Decimal:
            await session.begin()
            current = await session.get(account_id, Decimal("0.00"))
            await session.put(account_id, current + amount)
            await session.commit()
            return current + amount

        return unit_of_work

    async def balance(self) -> Decimal:
        return self.store.get(self.account_id, Decimal("0.00"))

    async def reset(self) -> None:
        self.store.put(self.account_id, Decimal("0.00"))


class SqlLedger(AccountLedger):
    """Ledger on a PostgreSQL-wire database (CockroachDB, PostgreSQL)."""

    def __init__(self, engine: Engine, customer_name: str = "Acme Corp Merchant") -> None:
        self.engine = engine
        self.customer_name = customer_name
        self.account_id: Optional[str] = None

    def _setup(self) -> str:
        with self.engine.begin() as conn:
            conn.execute(text(_CREATE_ACCOUNTS))
            return str(
                conn.execute(
                    text(
                        "INSERT INTO accounts (customer_name, balance) "
                        "VALUES (:name, 0.00) RETURNING account_id"
                    ),
                    {"name": self.customer_name},
                ).scalar_one()
            )

    async def setup(self) -> str:
        self.account_id = await asyncio.to_thread(self._setup)
        return self.account_id

    def deposit(self, amount: Decimal) -> UnitOfWork:
        account_id = self.account_id
        if account_id is None:
            raise RuntimeError("call setup() before building deposits")

        def deposit_once(conn: Connection) -> Decimal:
            with conn.begin():
                current = conn.execute(
                    text("SELECT balance FROM accounts WHERE account_id = :id"),
                    {"id": account_id},
                ).scalar_one()
                new_balance = Decimal(current) + amount
                conn.execute(
                    text(
                        "UPDATE accounts SET balance = :balance, updated_at = now() "
                        "WHERE account_id = :id"
                    ),
                    {"balance": new_balance, "id": account_id},
                )
            return new_balance

        return run_sync(deposit_once)

    def _scalar(self, statement: str) -> Decimal:
        with self.engine.connect() as conn:
            return Decimal(conn.execute(text(statement), {"id": self.account_id}).scalar_one())

    async def balance(self) -> Decimal:
        return await asyncio.to_thread(
            self._scalar, "SELECT balance FROM accounts WHERE account_id = :id"
        )

    def _reset(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("UPDATE accounts SET balance = 0.00 WHERE account_id = :id"),
                {"id": self.account_id},
            )

    async def reset(self) -> None:
        await asyncio.to_thread(self._reset)


class Psycopg2Ledger(AccountLedger):
    """Ledger on raw psycopg2 connections from a pool."""

    def __init__(
        self,
        pool: psycopg2.pool.AbstractConnectionPool,
        customer_name: str = "Acme Corp Merchant",
    ) -> None:
        self.pool = pool
        self.customer_name = customer_name
        self.account_id: Optional[str] = None

    def _with_connection(self, fn: Callable[[PgCursor], T]) -> T:
        conn = self.pool.getconn()
        try:
            # commits on success, rolls back on error
            with conn:
                with conn.cursor() as cur:
                    return fn(cur)
        finally:
            self.pool.putconn(conn)

    def _setup(self, cur: PgCursor) -> str:
        cur.execute(_CREATE_ACCOUNTS)
        cur.execute(
            "INSERT INTO accounts (customer_name, balance) VALUES (%s, 0.00) RETURNING account_id",
            (self.customer_name,),
        )
        return str(cur.fetchone()[0])

    async def setup(self) -> str:
        self.account_id = await asyncio.to_thread(self._with_connection, self._setup)
        return self.account_id

    def deposit(self, amount: Decimal) -> UnitOfWork:
        account_id = self.account_id
        if account_id is None:
            raise RuntimeError("call setup() before building deposits")

        def deposit_once(conn: PgConnection) -> Decimal:
            with conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT balance FROM accounts WHERE account_id = %s", (account_id,))
                    new_balance = Decimal(cur.fetchone()[0]) + amount
                    cur.execute(
                        "UPDATE accounts SET balance = %s, updated_at = now() WHERE account_id = %s",
                        (new_balance, account_id),
                    )
            return new_balance

        return run_sync(deposit_once)

    def _balance(self, cur: PgCursor) -> Decimal:
        cur.execute("SELECT balance FROM accounts WHERE account_id = %s", (self.account_id,))
        return Decimal(cur.fetchone()[0])

    async def balance(self) -> Decimal:
        return await asyncio.to_thread(self._with_connection, self._balance)

    def _reset(self, cur: PgCursor) -> None:
        cur.execute("UPDATE accounts SET balance = 0.00 WHERE account_id = %s", (self.account_id,))

    async def reset(self) -> None:
        await asyncio.to_thread(self._with_connection, self._reset)


async def run_hot_account(
    executor: RetryPort,
    ledger: AccountLedger,
    deposits: int = 10,
    amount: Decimal = Decimal("75.00"),
    concurrency: Optional[int] = None,
) -> HotAccountReport:
    """Fire `deposits` concurrent deposits at one account and verify the total.

    All deposits are released at once through a start gate for maximum
    contention; `concurrency` optionally caps how many run at a time.
    """
    start_gate = asyncio.Event()
    limiter = asyncio.Semaphore(concurrency) if concurrency else None
    deposit = ledger.deposit(amount)

    async def one_deposit():
        await start_gate.wait()
        if limiter is None:
            return await executor.run(deposit)
        async with limiter:
            return await executor.run(deposit)

    tasks = [asyncio.create_task(one_deposit()) for _ in range(deposits)]
    started = time.perf_counter()
    start_gate.set()
    results = await asyncio.gather(*tasks)
    elapsed = time.perf_counter() - started

    return HotAccountReport(
        deposits=deposits,
        concurrency=concurrency,
        succeeded=sum(1 for r in results if isinstance(r, Success)),
        failed=sum(1 for r in results if isinstance(r, TerminalFailure)),
        cancelled=sum(1 for r in results if isinstance(r, Cancelled)),
        retries=sum(r.retries for r in results),
        elapsed_seconds=elapsed,
        final_balance=await ledger.balance(),
        expected_balance=amount * deposits,
    )


async def compare_concurrency(
    executor: RetryPort,
    ledger: AccountLedger,
    levels: Iterable[int] = (3, 6),
    deposits: int = 10,
    amount: Decimal = Decimal("75.00"),
) -> List[HotAccountReport]:
    """Run the scenario once per concurrency level on a freshly reset balance."""
    reports = []
    for level in levels:
        await ledger.reset()
        reports.append(
            await run_hot_account(executor, ledger, deposits, amount, concurrency=level)
        )
    return reports
