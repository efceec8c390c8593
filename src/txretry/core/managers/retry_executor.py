"""RetryExecutor: runs a unit of work and retries the whole transaction.

Lifecycle of one `run` call:
1. Acquire a fresh session from the provider (failure -> resource_broken,
   the unit of work is not invoked).
2. Invoke the unit of work; it owns begin/commit/rollback on that session.
3. Release the session on every path (flagged broken when the failure says so).
4. Classify a failure; fatal ends the run at once, retryable/broken kinds
   consult the attempt budget, then back off and start over at 1.
5. Return exactly one verdict: Success, TerminalFailure or Cancelled.

Scheduling (stop/wait/sleep) is delegated to tenacity's AsyncRetrying with
callables bound to per-run state; the executor instance itself only holds
read-only collaborators, so one instance can serve many concurrent runs.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception

from txretry.core.config import BackoffConfig
from txretry.core.exceptions import (
    SessionAcquisitionError,
    TransactionCancelledError,
    terminal_failure_error,
)
from txretry.core.interfaces.observers import AttemptEvent, AttemptObserver
from txretry.core.interfaces.session_provider import SessionProviderPort, UnitOfWork
from txretry.core.logging_config import execution_id_var
from txretry.core.managers.attempt_budget import AttemptBudget
from txretry.core.managers.backoff import BackoffPolicy
from txretry.core.managers.error_classifier import ErrorClassifier, default_classifier
from txretry.core.models.attempt import Attempt, AttemptHistory, ErrorKind, ErrorRecord
from txretry.core.models.result import (
    Cancelled,
    ExecutionResult,
    FailureKind,
    StopReason,
    Success,
    TerminalFailure,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _BackoffInterrupted(Exception):
    """Cancellation observed while waiting between attempts."""


class _RunState:
    """Mutable bookkeeping of a single run; never shared between runs."""

    def __init__(self, cancel_event: Optional[asyncio.Event]) -> None:
        self.execution_id = uuid.uuid4().hex[:12]
        self.history = AttemptHistory()
        self.cancel_event = cancel_event
        self.pending_delay = 0.0
        self.stop_reason: Optional[StopReason] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class RetryExecutor:
    """Whole-transaction retry coordinator (implements RetryPort).

    Attributes:
        config: Immutable backoff/budget configuration shared by all runs
    """

    def __init__(
        self,
        provider: SessionProviderPort,
        config: BackoffConfig,
        classifier: Optional[ErrorClassifier] = None,
        observers: Optional[list[AttemptObserver]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._provider = provider
        self.config = config
        self._classifier = classifier or default_classifier
        self._observers = observers or []
        self._sleep = sleep
        self._clock = clock
        self._budget = AttemptBudget(config)
        self._backoff = BackoffPolicy(config, rng)

    async def run(
        self,
        unit_of_work: UnitOfWork,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """Primary entrypoint: run `unit_of_work` until a verdict is reached.

        Errors raised by the unit of work or the provider never escape; they
        are folded into the returned verdict. `asyncio.CancelledError` (task
        cancellation) does escape, after the held session has been released.
        """
        state = _RunState(cancel_event)
        token = execution_id_var.set(state.execution_id)
        try:
            result = await self._run(unit_of_work, state)
            await self._notify_finished(state, result)
            return result
        finally:
            execution_id_var.reset(token)

    async def run_or_raise(
        self,
        unit_of_work: UnitOfWork,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Return the unit of work's value or raise a TransactionRetryError."""
        result = await self.run(unit_of_work, cancel_event=cancel_event)
        if isinstance(result, Success):
            return result.value
        if isinstance(result, Cancelled):
            raise TransactionCancelledError(result)
        raise terminal_failure_error(result) from result.last_error.cause

    async def _run(self, unit_of_work: UnitOfWork, state: _RunState) -> ExecutionResult:
        retrying = AsyncRetrying(
            retry=retry_if_exception(lambda exc: self._should_retry(state, exc)),
            stop=lambda retry_state: self._should_stop(state),
            wait=lambda retry_state: self._next_delay(state),
            sleep=lambda delay: self._backoff_sleep(state, delay),
            reraise=True,
        )
        value: Any = None
        try:
            async for attempt in retrying:
                if state.cancelled:
                    return self._cancelled(state)
                with attempt:
                    value = await self._attempt(unit_of_work, state)
        except _BackoffInterrupted:
            return self._cancelled(state)
        except Exception as exc:
            record = state.history.last_error
            if record is None or record.cause is not exc:
                raise
            result = self._terminal_failure(state, record)
            await self._notify_attempt(state, state.history[-1], delay=None)
            return result

        await self._notify_attempt(state, state.history[-1], delay=None)
        return Success(value=value, attempts=state.history.snapshot())

    async def _attempt(self, unit_of_work: UnitOfWork, state: _RunState) -> Any:
        index = len(state.history)
        started_at = self._clock()
        backoff, state.pending_delay = state.pending_delay, 0.0

        try:
            session = await self._acquire()
        except Exception as exc:
            self._record_failure(state, index, started_at, backoff, exc)
            raise

        broken = False
        try:
            value = await unit_of_work(session)
        except Exception as exc:
            record = self._record_failure(state, index, started_at, backoff, exc)
            broken = record.kind is ErrorKind.resource_broken
            raise
        except BaseException:
            # interrupted mid-transaction; the session state is unknown
            broken = True
            raise
        finally:
            await self._release(session, broken)

        state.history.append(Attempt(index=index, started_at=started_at, backoff=backoff))
        return value

    async def _acquire(self) -> Any:
        try:
            return await self._provider.acquire()
        except SessionAcquisitionError:
            raise
        except Exception as exc:
            name = getattr(self._provider, "name", type(self._provider).__name__)
            raise SessionAcquisitionError(
                f"Session acquisition failed: {exc}", provider_name=name
            ) from exc

    async def _release(self, session: Any, broken: bool) -> None:
        try:
            await self._provider.release(session, broken=broken)
        except Exception as exc:
            logger.warning(
                f"[executor:release] session release failed provider={type(self._provider).__name__} "
                f"broken={broken} error={exc}"
            )

    def _record_failure(
        self,
        state: _RunState,
        index: int,
        started_at: datetime,
        backoff: float,
        exc: BaseException,
    ) -> ErrorRecord:
        record = self._classifier.classify(exc)
        state.history.append(
            Attempt(index=index, started_at=started_at, backoff=backoff, error=record)
        )
        return record

    def _should_retry(self, state: _RunState, exc: BaseException) -> bool:
        record = state.history.last_error
        if not isinstance(exc, Exception) or record is None or record.cause is not exc:
            return False
        return record.is_retryable

    def _should_stop(self, state: _RunState) -> bool:
        state.stop_reason = self._budget.stop_reason(state.history, self._clock())
        return state.stop_reason is not None

    def _next_delay(self, state: _RunState) -> float:
        # index of the retry about to be scheduled: 0 before the second attempt
        state.pending_delay = self._backoff.delay_for(len(state.history) - 1)
        return state.pending_delay

    async def _backoff_sleep(self, state: _RunState, delay: float) -> None:
        if state.cancelled:
            # no wait happens, so none is reported
            await self._notify_attempt(state, state.history[-1], delay=None)
            raise _BackoffInterrupted()
        await self._notify_attempt(state, state.history[-1], delay=float(delay))
        if state.cancel_event is None:
            await self._sleep(float(delay))
            return

        sleeper = asyncio.ensure_future(self._sleep(float(delay)))
        waiter = asyncio.ensure_future(state.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            pending = [task for task in (sleeper, waiter) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if waiter in done:
            raise _BackoffInterrupted()
        sleeper.result()

    def _terminal_failure(self, state: _RunState, record: ErrorRecord) -> TerminalFailure:
        if record.kind is ErrorKind.fatal:
            return TerminalFailure(
                kind=FailureKind.fatal,
                last_error=record,
                attempts=state.history.snapshot(),
            )
        return TerminalFailure(
            kind=FailureKind.budget_exhausted,
            last_error=record,
            stop_reason=state.stop_reason,
            attempts=state.history.snapshot(),
        )

    def _cancelled(self, state: _RunState) -> Cancelled:
        return Cancelled(
            last_error=state.history.last_error,
            attempts=state.history.snapshot(),
        )

    async def _notify_attempt(
        self, state: _RunState, attempt: Attempt, delay: Optional[float]
    ) -> None:
        """Notify all observers about one classified attempt."""
        event = AttemptEvent(
            execution_id=state.execution_id,
            index=attempt.index,
            classification=attempt.error.kind if attempt.error else None,
            delay=delay,
            message=attempt.error.message if attempt.error else None,
        )
        for observer in self._observers:
            try:
                await observer.on_attempt(event)
            except Exception as exc:
                logger.error(
                    f"[observer:error] on_attempt failed observer={type(observer).__name__} "
                    f"execution_id={state.execution_id} error={exc}"
                )

    async def _notify_finished(self, state: _RunState, result: ExecutionResult) -> None:
        """Notify all observers about the verdict of a run."""
        for observer in self._observers:
            try:
                await observer.on_finished(state.execution_id, result)
            except Exception as exc:
                logger.error(
                    f"[observer:error] on_finished failed observer={type(observer).__name__} "
                    f"execution_id={state.execution_id} error={exc}"
                )
