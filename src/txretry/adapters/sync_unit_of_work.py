"""Bridge for blocking units of work (DBAPI and SQLAlchemy connections).

The blocking function runs in a worker thread. A thread cannot be
interrupted, so when the awaiting task is cancelled the bridge still waits
for the function to return before letting the cancellation through: the
executor releases the session only after that, and no thread is left using
a connection its provider already closed.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from txretry.core.interfaces.session_provider import UnitOfWork

T = TypeVar("T")


def run_sync(fn: Callable[[Any], T]) -> UnitOfWork:
    """Adapt a blocking unit of work to the async executor signature.

    `fn` receives the attempt's session and owns begin/commit, e.g.
    `with connection.begin(): ...` for SQLAlchemy or `with conn:` for psycopg2.
    """

    async def unit_of_work(session: Any) -> T:
        worker = asyncio.ensure_future(asyncio.to_thread(fn, session))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            # asyncio.wait never cancels the awaited worker itself
            while not worker.done():
                try:
                    await asyncio.wait({worker})
                except asyncio.CancelledError:
                    continue
            if not worker.cancelled():
                # the session outcome is moot; only mark it as retrieved
                worker.exception()
            raise

    unit_of_work.__name__ = getattr(fn, "__name__", "unit_of_work")
    return unit_of_work
