from typing import Optional, Tuple

from txretry.core.models.attempt import Attempt
from txretry.core.models.result import Cancelled, FailureKind, TerminalFailure


class TransactionRetryError(Exception):
    """Base exception for retry executor verdicts raised to callers.

    Attributes:
        message: Human-readable error description
        diagnostic: Technical diagnostic information for debugging
        attempts: Attempt history of the run that produced the error
    """
    def __init__(
        self,
        message: str,
        diagnostic: Optional[str] = None,
        attempts: Tuple[Attempt, ...] = (),
    ):
        self.message = message
        self.diagnostic = diagnostic
        self.attempts = attempts
        super().__init__(message)


class SessionAcquisitionError(Exception):
    """Raised by session providers when no usable session can be handed out.

    Always classified as a broken resource: the next attempt asks for a
    brand-new session.
    """
    def __init__(self, message: str, provider_name: Optional[str] = None):
        self.message = message
        self.provider_name = provider_name
        super().__init__(message)


class TerminalFailureError(TransactionRetryError):
    """Raised by `run_or_raise` when a run ends in a TerminalFailure.

    Attributes:
        result: The TerminalFailure verdict
    """
    def __init__(self, result: TerminalFailure):
        self.result = result
        last = result.last_error
        message = (
            f"Transaction failed ({result.kind}) after {result.attempt_count} attempt(s): "
            f"{last.message}"
        )
        diagnostic = f"kind={last.kind} sqlstate={last.sqlstate} stop_reason={result.stop_reason}"
        super().__init__(message=message, diagnostic=diagnostic, attempts=result.attempts)

    @property
    def data_unmodified(self) -> bool:
        return self.result.data_unmodified


class FatalTransactionError(TerminalFailureError):
    """Non-retryable error; the unit of work ran exactly once."""


class RetryBudgetExhaustedError(TerminalFailureError):
    """Retryable error persisted past the configured attempt/elapsed limits."""


class TransactionCancelledError(TransactionRetryError):
    """Raised by `run_or_raise` when the caller cancelled the run."""
    def __init__(self, result: Cancelled):
        self.result = result
        message = f"Transaction cancelled after {result.attempt_count} attempt(s)"
        super().__init__(message=message, attempts=result.attempts)


def terminal_failure_error(result: TerminalFailure) -> TerminalFailureError:
    """Map a TerminalFailure to its exception class."""
    if result.kind is FailureKind.fatal:
        return FatalTransactionError(result)
    return RetryBudgetExhaustedError(result)
