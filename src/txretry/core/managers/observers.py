"""Concrete observer implementations for retry executor attempts.

This module provides the observability collaborators of RetryExecutor:
- Log lines per attempt and per verdict
- In-process counters for retries, classifications and verdicts
"""

import logging
from collections import Counter

from txretry.core.interfaces.observers import AttemptEvent
from txretry.core.models.result import Cancelled, ExecutionResult, Success, TerminalFailure


logger = logging.getLogger(__name__)


class LoggingAttemptObserver:
    """Writes attempt and verdict lines to the module logger.

    Successful attempts are logged at DEBUG, scheduled retries at INFO and
    terminal verdicts at WARNING.
    """

    async def on_attempt(self, event: AttemptEvent) -> None:
        if event.classification is None:
            logger.debug(f"[attempt:ok] execution_id={event.execution_id} index={event.index}")
            return
        if event.delay is not None:
            logger.info(
                f"[attempt:retry] execution_id={event.execution_id} index={event.index} "
                f"kind={event.classification} delay={event.delay:.3f}s error={event.message}"
            )
        else:
            logger.debug(
                f"[attempt:final] execution_id={event.execution_id} index={event.index} "
                f"kind={event.classification} error={event.message}"
            )

    async def on_finished(self, execution_id: str, result: ExecutionResult) -> None:
        if isinstance(result, Success):
            logger.debug(
                f"[run:success] execution_id={execution_id} attempts={result.attempt_count}"
            )
        elif isinstance(result, TerminalFailure):
            logger.warning(
                f"[run:failed] execution_id={execution_id} kind={result.kind} "
                f"attempts={result.attempt_count} stop_reason={result.stop_reason} "
                f"data_unmodified={result.data_unmodified} error={result.last_error.message}"
            )
        elif isinstance(result, Cancelled):
            logger.warning(
                f"[run:cancelled] execution_id={execution_id} attempts={result.attempt_count}"
            )


class RetryStatisticsObserver:
    """Counts attempts, retries and verdicts across every observed run.

    All updates happen on the event loop thread, so plain counters suffice.
    """

    def __init__(self) -> None:
        self.attempts = 0
        self.retries = 0
        self.classifications: Counter = Counter()
        self.outcomes: Counter = Counter()

    async def on_attempt(self, event: AttemptEvent) -> None:
        self.attempts += 1
        if event.classification is not None:
            self.classifications[event.classification] += 1
        if event.delay is not None:
            self.retries += 1

    async def on_finished(self, execution_id: str, result: ExecutionResult) -> None:
        key = result.outcome
        if isinstance(result, TerminalFailure):
            key = f"{result.outcome}:{result.kind}"
        self.outcomes[key] += 1

    def snapshot(self) -> dict:
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "classifications": {str(k): v for k, v in self.classifications.items()},
            "outcomes": dict(self.outcomes),
        }
