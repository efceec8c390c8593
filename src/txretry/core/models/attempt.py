from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field


class ErrorKind(StrEnum):
    retryable = "retryable"  # serialization conflict, transaction left no effect
    resource_broken = "resource_broken"  # session/connection unusable
    fatal = "fatal"


class ErrorRecord(BaseModel):
    """Classified view of a raw error raised by a session or unit of work.

    `cause` is the original exception object; `message` is kept for
    diagnostics only and never drives classification.
    """

    kind: ErrorKind
    message: str
    cause: BaseException
    sqlstate: Optional[str] = None

    model_config = {
        "frozen": True,
        "arbitrary_types_allowed": True,
    }

    @property
    def is_retryable(self) -> bool:
        return self.kind is not ErrorKind.fatal


class Attempt(BaseModel):
    """One loop iteration of a RetryExecutor run.

    Notes:
    - `index` is zero-based.
    - `backoff` is the delay (seconds) waited before this attempt was issued;
      always 0.0 for the first attempt.
    - `error` is None for the attempt that succeeded.
    """

    index: int = Field(ge=0)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    backoff: float = Field(default=0.0, ge=0)
    error: Optional[ErrorRecord] = None

    model_config = {"frozen": True}

    @property
    def succeeded(self) -> bool:
        return self.error is None


class AttemptHistory:
    """Append-only sequence of attempts scoped to a single run."""

    def __init__(self) -> None:
        self._attempts: List[Attempt] = []

    def append(self, attempt: Attempt) -> None:
        if attempt.index != len(self._attempts):
            raise ValueError(
                f"attempt index {attempt.index} out of order (expected {len(self._attempts)})"
            )
        self._attempts.append(attempt)

    def __len__(self) -> int:
        return len(self._attempts)

    def __iter__(self) -> Iterator[Attempt]:
        return iter(self._attempts)

    def __getitem__(self, index: int) -> Attempt:
        return self._attempts[index]

    def __bool__(self) -> bool:
        return bool(self._attempts)

    @property
    def first_started_at(self) -> Optional[datetime]:
        return self._attempts[0].started_at if self._attempts else None

    @property
    def last_error(self) -> Optional[ErrorRecord]:
        return self._attempts[-1].error if self._attempts else None

    def count(self, kind: ErrorKind) -> int:
        return sum(1 for a in self._attempts if a.error is not None and a.error.kind is kind)

    def snapshot(self) -> Tuple[Attempt, ...]:
        return tuple(self._attempts)
