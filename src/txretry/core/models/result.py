from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal, Optional, Tuple, Union

from pydantic import BaseModel

from txretry.core.models.attempt import Attempt, ErrorRecord


class FailureKind(StrEnum):
    fatal = "fatal"
    budget_exhausted = "budget_exhausted"


class StopReason(StrEnum):
    """Why the attempt budget refused another attempt."""

    max_attempts = "max_attempts"
    max_elapsed = "max_elapsed"
    max_broken_attempts = "max_broken_attempts"


class _Verdict(BaseModel):
    attempts: Tuple[Attempt, ...]

    model_config = {
        "frozen": True,
        "arbitrary_types_allowed": True,
    }

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def retries(self) -> int:
        return max(len(self.attempts) - 1, 0)

    @property
    def total_backoff(self) -> float:
        return sum(a.backoff for a in self.attempts)


class Success(_Verdict):
    outcome: Literal["success"] = "success"
    value: Any = None


class TerminalFailure(_Verdict):
    """Run ended without committing.

    Fatal errors are never retried; budget exhaustion means a retryable
    error outlived the configured limits. Either way the unit-of-work
    contract guarantees nothing was committed, hence `data_unmodified`.
    """

    outcome: Literal["terminal_failure"] = "terminal_failure"
    kind: FailureKind
    last_error: ErrorRecord
    stop_reason: Optional[StopReason] = None

    @property
    def data_unmodified(self) -> bool:
        return True


class Cancelled(_Verdict):
    outcome: Literal["cancelled"] = "cancelled"
    last_error: Optional[ErrorRecord] = None


ExecutionResult = Union[Success, TerminalFailure, Cancelled]
