"""Observer protocol for retry executor attempts.

Observers are the observability collaborators of RetryExecutor: the
executor does not decide what is user-visible, it only reports one event
per attempt and the final verdict of every run.
"""

from typing import Optional, Protocol

from pydantic import BaseModel

from txretry.core.models.attempt import ErrorKind
from txretry.core.models.result import ExecutionResult


class AttemptEvent(BaseModel):
    """Emitted once per attempt.

    Attributes:
        execution_id: Id of the run the attempt belongs to
        index: Zero-based attempt index
        classification: Error kind, None when the attempt succeeded
        delay: Backoff computed before the next attempt, None when no retry follows
        message: Error message of a failed attempt
    """

    execution_id: str
    index: int
    classification: Optional[ErrorKind] = None
    delay: Optional[float] = None
    message: Optional[str] = None

    model_config = {"frozen": True}


class AttemptObserver(Protocol):
    """Observer protocol for attempt outcomes.

    Implementations should be stateless or safe to call from many
    concurrently running executions.
    """

    async def on_attempt(self, event: AttemptEvent) -> None:
        """Called after every attempt has been classified.

        Args:
            event: Attempt index, classification and computed delay
        """
        ...

    async def on_finished(self, execution_id: str, result: ExecutionResult) -> None:
        """Called once per run with its verdict.

        Args:
            execution_id: Id of the finished run
            result: Success, TerminalFailure or Cancelled
        """
        ...
