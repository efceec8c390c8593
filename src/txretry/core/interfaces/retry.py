import asyncio
from typing import Any, Optional, Protocol

from txretry.core.interfaces.session_provider import UnitOfWork
from txretry.core.models.result import ExecutionResult


class RetryPort(Protocol):
    """Abstract whole-transaction retry interface.

    Implementations run a unit of work on a fresh session per attempt and
    retry the entire unit when the database reports a serialization
    conflict. The contract keeps callers decoupled from the scheduling
    library (tenacity).
    """
    async def run(
        self,
        unit_of_work: UnitOfWork,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:  # pragma: no cover - protocol
        """Execute a unit of work with retry semantics.

        Args:
            unit_of_work: Async callable receiving the session of one attempt.
            cancel_event: Optional event; once set no further attempt is issued.
        Returns:
            Success, TerminalFailure or Cancelled, always with the attempt history.
        """
        ...

    async def run_or_raise(
        self,
        unit_of_work: UnitOfWork,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:  # pragma: no cover - protocol
        """Like `run`, but return the value or raise a TransactionRetryError."""
        ...
