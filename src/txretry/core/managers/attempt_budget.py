"""AttemptBudget: decides whether a failed run may issue another attempt.

Only consulted for retryable and broken-session failures; fatal errors end
a run before the budget is looked at.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from txretry.core.config import BackoffConfig
from txretry.core.models.attempt import AttemptHistory, ErrorKind
from txretry.core.models.result import StopReason


def stop_reason(
    history: AttemptHistory,
    config: BackoffConfig,
    now: datetime,
) -> Optional[StopReason]:
    """Return why no further attempt is allowed, or None to continue."""
    if len(history) >= config.max_attempts:
        return StopReason.max_attempts
    if (
        config.max_broken_attempts is not None
        and history.count(ErrorKind.resource_broken) >= config.max_broken_attempts
    ):
        return StopReason.max_broken_attempts
    if config.max_elapsed is not None and history:
        elapsed = (now - history.first_started_at).total_seconds()
        if elapsed > config.max_elapsed:
            return StopReason.max_elapsed
    return None


def should_continue(history: AttemptHistory, config: BackoffConfig, now: datetime) -> bool:
    return stop_reason(history, config, now) is None


class AttemptBudget:
    """Budget bound to one configuration; holds no per-run state."""

    def __init__(self, config: BackoffConfig) -> None:
        self.config = config

    def stop_reason(self, history: AttemptHistory, now: datetime) -> Optional[StopReason]:
        return stop_reason(history, self.config, now)

    def should_continue(self, history: AttemptHistory, now: datetime) -> bool:
        return self.stop_reason(history, now) is None
