"""Configuration models for the retry executor.

BackoffConfig is constructed once (usually from TxRetrySettings in the
composition root) and handed to every RetryExecutor explicitly. Tests build
their own instances with tiny delays.
"""

from typing import Optional
from pydantic import BaseModel, Field, model_validator


class BackoffConfig(BaseModel):
    """Retry budget and backoff schedule for one executor.

    Attributes:
        base_delay: Delay in seconds before the first retry (before jitter)
        multiplier: Growth factor applied per retry
        jitter_factor: Relative spread of the uniform jitter window
        max_delay: Ceiling in seconds for any single wait
        max_attempts: Maximum number of attempts, the first one included
        max_elapsed: Optional wall-clock ceiling in seconds measured from the first attempt
        max_broken_attempts: Optional extra cap on attempts that failed with a broken session
    """

    base_delay: float = Field(
        default=0.05,
        ge=0,
        allow_inf_nan=False,
        description="Base delay in seconds for exponential backoff"
    )

    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        allow_inf_nan=False,
        description="Exponential growth factor between consecutive retries"
    )

    jitter_factor: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Delay is sampled uniformly from [d*(1-j), d*(1+j)]"
    )

    max_delay: float = Field(
        default=5.0,
        ge=0,
        allow_inf_nan=False,
        description="Upper bound in seconds for a single backoff wait"
    )

    max_attempts: int = Field(
        default=15,
        ge=1,
        description="Maximum attempts per logical transaction (first attempt included)"
    )

    max_elapsed: Optional[float] = Field(
        default=None,
        gt=0,
        allow_inf_nan=False,
        description="Overall wall-clock ceiling in seconds (None for no limit)"
    )

    max_broken_attempts: Optional[int] = Field(
        default=None,
        ge=1,
        description="Separate cap for broken-session failures; shares max_attempts when None"
    )

    model_config = {
        "frozen": True,
        "extra": "forbid",
    }

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "BackoffConfig":
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )
        return self

    @classmethod
    def from_app_settings(cls, settings) -> "BackoffConfig":
        """Factory method to construct config from TxRetrySettings instance.

        Args:
            settings: TxRetrySettings instance from core.settings

        Returns:
            BackoffConfig with values from app settings
        """
        return cls(
            base_delay=settings.TXRETRY_BASE_DELAY,
            multiplier=settings.TXRETRY_MULTIPLIER,
            jitter_factor=settings.TXRETRY_JITTER_FACTOR,
            max_delay=settings.TXRETRY_MAX_DELAY,
            max_attempts=settings.TXRETRY_MAX_ATTEMPTS,
            max_elapsed=settings.TXRETRY_MAX_ELAPSED,
            max_broken_attempts=settings.TXRETRY_MAX_BROKEN_ATTEMPTS,
        )
