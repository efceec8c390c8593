"""BackoffPolicy: exponential backoff with full jitter and a ceiling.

`delay_for(i)` is the wait before the retry with zero-based ordinal `i`,
i.e. the first retry (second attempt) waits around `base_delay`, the second
retry around `base_delay * multiplier`, and so on. Jitter samples uniformly
from `[d*(1-j), d*(1+j)]` so that executors that lost the same conflict do
not wake up in lockstep.
"""

from __future__ import annotations

import math
import random
import sys
from typing import Iterator, Optional

from txretry.core.config import BackoffConfig

# largest x with math.exp(x) finite, with some margin
_MAX_EXPONENT = math.log(sys.float_info.max) - 1.0


def expected_delay(attempt_index: int, config: BackoffConfig) -> float:
    """Un-jittered delay for `attempt_index`, capped at `max_delay`.

    The exponent is evaluated in log space so huge indices clamp to
    `max_delay` instead of overflowing.
    """
    if attempt_index < 0:
        raise ValueError(f"attempt_index must be >= 0, got {attempt_index}")
    if config.base_delay <= 0:
        return 0.0
    if config.multiplier == 1.0 or attempt_index == 0:
        return min(config.max_delay, config.base_delay)
    growth = attempt_index * math.log(config.multiplier)
    log_delay = math.log(config.base_delay) + growth
    if log_delay >= math.log(config.max_delay):
        return config.max_delay
    if growth < _MAX_EXPONENT:
        return min(config.max_delay, config.base_delay * config.multiplier ** attempt_index)
    # multiplier ** attempt_index alone is not representable, the product is
    return min(config.max_delay, math.exp(log_delay))


def delay_for(
    attempt_index: int,
    config: BackoffConfig,
    rng: Optional[random.Random] = None,
) -> float:
    """Jittered delay in seconds for `attempt_index`, within [0, max_delay]."""
    delay = expected_delay(attempt_index, config)
    if config.jitter_factor == 0 or delay == 0:
        return delay
    low = delay * (1.0 - config.jitter_factor)
    high = min(delay * (1.0 + config.jitter_factor), sys.float_info.max)
    sample = (rng or random).uniform(low, high)
    return min(config.max_delay, max(0.0, sample))


class BackoffPolicy:
    """Binds a BackoffConfig to a random source.

    One instance may be shared by concurrent runs: it holds no per-run state.
    """

    def __init__(self, config: BackoffConfig, rng: Optional[random.Random] = None) -> None:
        self.config = config
        self._rng = rng

    def delay_for(self, attempt_index: int) -> float:
        return delay_for(attempt_index, self.config, self._rng)

    def delays(self) -> Iterator[float]:
        """Yield the waits for every retry the budget could ever allow."""
        for index in range(self.config.max_attempts - 1):
            yield self.delay_for(index)
